"""Named aliases for project directories (``~/.wp-spin/sites.json``).

The file holds ``{"sites": [{"name", "path", "createdAt", ...}]}``. Extra
keys at either level belong to other tools or older versions and are carried
through untouched.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .compose_file import find_compose_file
from .exceptions import ConfigError
from .json_store import JsonStore

logger = logging.getLogger("wpspin.site_directory")

__all__ = ["SiteAlias", "SiteDirectory"]

_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True)
class SiteAlias:
    name: str
    path: str
    created_at: Optional[str] = None

    @property
    def exists(self) -> bool:
        return Path(self.path).is_dir()


def _canonical(path: str | Path) -> str:
    return str(Path(path).expanduser().resolve())


def _site_list(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    sites = data.get("sites")
    if not isinstance(sites, list):
        sites = []
        data["sites"] = sites
    return sites


class SiteDirectory:
    def __init__(self, path: Path, lock_timeout: float = 10.0) -> None:
        self.store = JsonStore(path, lock_timeout)

    @staticmethod
    def _alias(entry: Any) -> Optional[SiteAlias]:
        if not isinstance(entry, dict):
            return None
        name, path = entry.get("name"), entry.get("path")
        if not isinstance(name, str) or not isinstance(path, str):
            return None
        return SiteAlias(name=name, path=path, created_at=entry.get("createdAt"))

    def sites(self) -> List[SiteAlias]:
        raw = self.store.read().get("sites")
        found = [self._alias(e) for e in raw] if isinstance(raw, list) else []
        return [s for s in found if s is not None]

    def get(self, name: str) -> Optional[SiteAlias]:
        return next((s for s in self.sites() if s.name == name), None)

    def get_by_path(self, path: str | Path) -> Optional[SiteAlias]:
        """First alias registered for *path*."""
        target = _canonical(path)
        return next((s for s in self.sites() if s.path == target), None)

    def aliases_for(self, path: str | Path) -> List[str]:
        target = _canonical(path)
        return [s.name for s in self.sites() if s.path == target]

    def add(self, name: str, path: str | Path) -> SiteAlias:
        if not _NAME.match(name):
            raise ConfigError(
                f"Invalid site name {name!r}: use letters, digits, '.', '_' or '-'", {"name": name}
            )
        target = _canonical(path)

        def change(data: Dict[str, Any]) -> SiteAlias:
            sites = _site_list(data)
            if any(isinstance(e, dict) and e.get("name") == name for e in sites):
                raise ConfigError(f"Site name {name!r} is already registered", {"name": name})
            entry = {"name": name, "path": target, "createdAt": datetime.now(timezone.utc).isoformat()}
            sites.append(entry)
            return SiteAlias(name=name, path=target, created_at=entry["createdAt"])

        alias = self.store.mutate(change)
        logger.info(f"📌 Registered site {name} -> {target}")
        return alias

    def update(self, name: str, path: str | Path) -> bool:
        target = _canonical(path)

        def change(data: Dict[str, Any]) -> bool:
            for entry in _site_list(data):
                if isinstance(entry, dict) and entry.get("name") == name:
                    entry["path"] = target
                    return True
            return False

        return self.store.mutate(change)

    def remove(self, name: str) -> bool:
        def change(data: Dict[str, Any]) -> bool:
            sites = _site_list(data)
            kept = [e for e in sites if not (isinstance(e, dict) and e.get("name") == name)]
            data["sites"] = kept
            return len(kept) != len(sites)

        removed = self.store.mutate(change)
        if removed:
            logger.info(f"🧹 Removed site {name}")
        return removed

    def prune(self) -> List[str]:
        """Drop every site whose directory is gone; returns the removed names."""

        def change(data: Dict[str, Any]) -> List[str]:
            kept, gone = [], []
            for entry in _site_list(data):
                alias = self._alias(entry)
                if alias is not None and not alias.exists:
                    gone.append(alias.name)
                else:
                    kept.append(entry)
            data["sites"] = kept
            return gone

        return self.store.mutate(change)

    def resolve(self, name_or_path: str | Path) -> Path:
        """Project root for a registered name or a directory path."""
        alias = self.get(str(name_or_path))
        if alias is not None:
            root = Path(alias.path)
            if not root.is_dir():
                raise ConfigError(
                    f"Site {alias.name!r} points to a missing directory: {alias.path}",
                    {"name": alias.name, "project_path": alias.path},
                )
        else:
            root = Path(name_or_path).expanduser()
            if not root.is_dir():
                raise ConfigError(
                    f"{name_or_path} is neither a registered site nor a directory",
                    {"site": str(name_or_path)},
                )
            root = root.resolve()
        if find_compose_file(root) is None:
            raise ConfigError(
                f"{root} is not a wp-spin project (no compose file)", {"project_path": str(root)}
            )
        return root
