"""wp-spin - local WordPress environments with automatic ports and custom domains"""
from __future__ import annotations

__version__ = "0.2.0"

from .domain_router import DomainRouter  # noqa: E402
from .port_prober import PortProber  # noqa: E402
from .port_registry import PortRegistry  # noqa: E402
from .site_directory import SiteDirectory  # noqa: E402
from .stack_controller import StackController  # noqa: E402

__all__: list[str] = [
    "DomainRouter",
    "PortProber",
    "PortRegistry",
    "SiteDirectory",
    "StackController",
]
