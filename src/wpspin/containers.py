"""Container roles and the engine's view of a project's containers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

__all__ = [
    "ContainerRole",
    "ContainerInfo",
    "PublishedPort",
    "classify_container",
]


class ContainerRole(str, Enum):
    PRIMARY = "primary"
    DATABASE = "database"
    ADMIN_UI = "admin_ui"
    AUXILIARY = "auxiliary"
    UNKNOWN = "unknown"


# Checked in order; the first matching substring decides the role.
_ROLE_MARKERS: Tuple[Tuple[ContainerRole, Tuple[str, ...]], ...] = (
    (ContainerRole.ADMIN_UI, ("phpmyadmin", "adminer")),
    (ContainerRole.DATABASE, ("mysql", "mariadb", "postgres")),
    (ContainerRole.PRIMARY, ("wordpress",)),
    (ContainerRole.AUXILIARY, ("mailhog", "mailpit", "redis", "memcached")),
)

# Conventional service names too short to use as substrings
_EXACT_NAMES = {"db": ContainerRole.DATABASE, "database": ContainerRole.DATABASE}

_REPLICA_SUFFIX = re.compile(r"[-_]\d+$")


def _service_part(name: str, project_name: Optional[str]) -> str:
    """Strip the compose project prefix and replica index from *name*."""
    service = name.lower().lstrip("/")
    if project_name:
        prefix = project_name.lower()
        for sep in ("-", "_"):
            if service.startswith(prefix + sep):
                service = service[len(prefix) + 1:]
                break
    return _REPLICA_SUFFIX.sub("", service)


def classify_container(name: str, project_name: Optional[str] = None) -> ContainerRole:
    """Decide a container's role from its name.

    The project prefix is removed first so a project called e.g.
    ``mysql-blog`` does not turn every container into a database.
    """
    service = _service_part(name, project_name)
    if service in _EXACT_NAMES:
        return _EXACT_NAMES[service]
    for role, markers in _ROLE_MARKERS:
        if any(marker in service for marker in markers):
            return role
    return ContainerRole.UNKNOWN


@dataclass(frozen=True)
class PublishedPort:
    host_port: int
    container_port: int
    protocol: str = "tcp"
    host_ip: str = "0.0.0.0"


@dataclass
class ContainerInfo:
    name: str
    status: str
    ports: List[PublishedPort] = field(default_factory=list)
    service: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def host_ports(self) -> List[int]:
        return sorted({p.host_port for p in self.ports})

    @classmethod
    def from_container(cls, container: Any) -> "ContainerInfo":
        """Build from a *docker-py* ``Container`` object."""
        attrs: Dict[str, Any] = container.attrs or {}
        bindings = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
        ports: List[PublishedPort] = []
        seen = set()
        for spec, hosts in bindings.items():
            if not hosts:
                continue
            container_port, _, protocol = spec.partition("/")
            for host in hosts:
                host_port = host.get("HostPort")
                if not host_port or not str(host_port).isdigit():
                    continue
                # IPv4 and IPv6 bindings of the same port collapse into one
                marker = (int(host_port), int(container_port), protocol or "tcp")
                if marker in seen:
                    continue
                seen.add(marker)
                ports.append(
                    PublishedPort(
                        host_port=int(host_port),
                        container_port=int(container_port),
                        protocol=protocol or "tcp",
                        host_ip=host.get("HostIp") or "0.0.0.0",
                    )
                )
        labels = getattr(container, "labels", None) or {}
        return cls(
            name=container.name,
            status=container.status,
            ports=sorted(ports, key=lambda p: (p.host_port, p.container_port)),
            service=labels.get("com.docker.compose.service"),
        )
