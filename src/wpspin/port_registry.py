"""Persisted port registry used by wp-spin.

Maps an allocation key (a hostname, or a canonical project path optionally
suffixed with ``#<service>``) to a host TCP port. The JSON document is the
durable source of truth and is shared by every concurrently running
invocation, so every mutation happens under the store's exclusive lock.

Candidate ports are scanned upwards from the preferred port and the lowest
free one wins.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import NoPortAvailable, PortBindConflict, ProbeUnavailable
from .json_store import JsonStore
from .port_prober import PortProber

logger = logging.getLogger("wpspin.port_registry")

__all__ = [
    "PortAllocation",
    "PortRegistry",
    "project_key",
]

MAX_PORT = 65535


def project_key(project_root: str | Path, service: Optional[str] = None) -> str:
    """Allocation key for a project (and optionally one of its services)."""
    root = str(Path(project_root).expanduser().resolve())
    return f"{root}#{service}" if service else root


def _default_project_path(key: str) -> str:
    path = key.split("#", 1)[0]
    return path if os.path.isabs(path) else ""


@dataclass(frozen=True)
class PortAllocation:
    key: str
    port: int
    project_path: str = ""
    created_at: Optional[str] = None

    @property
    def is_stale(self) -> bool:
        """``True`` when the owning project directory has been removed."""
        return bool(self.project_path) and not Path(self.project_path).exists()


class PortRegistry:
    """Allocate, look up and release host ports by key.

    Parameters
    ----------
    path:
        Location of the JSON registry file.
    prober:
        Used to check each candidate port against the live host.
    scan_window:
        How many consecutive candidates to try before giving up.
    """

    def __init__(
        self,
        path: Path,
        prober: Optional[PortProber] = None,
        scan_window: int = 1000,
        lock_timeout: float = 10.0,
    ) -> None:
        if scan_window < 1:
            raise ValueError("scan_window must be positive")
        self.store = JsonStore(path, lock_timeout)
        self.prober = prober or PortProber()
        self.scan_window = scan_window
        logger.debug(f"🔌 PortRegistry at {path} (window {scan_window})")

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    @staticmethod
    def _entry(key: str, value: Any) -> Optional[PortAllocation]:
        if not isinstance(value, dict):
            return None
        port = value.get("port")
        if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= MAX_PORT:
            return None
        return PortAllocation(
            key=key,
            port=port,
            project_path=str(value.get("projectPath") or ""),
            created_at=value.get("createdAt"),
        )

    @classmethod
    def _entries(cls, data: Dict[str, Any]) -> Dict[str, PortAllocation]:
        entries: Dict[str, PortAllocation] = {}
        for key, value in data.items():
            entry = cls._entry(key, value)
            if entry is None:
                logger.warning(f"⚠️  Ignoring malformed registry entry {key!r}")
                continue
            entries[key] = entry
        return entries

    def _scan(self, data: Dict[str, Any], key: str, preferred_port: int, exclude: Iterable[int]) -> int:
        """Return the lowest usable port at or above *preferred_port*."""
        if not 1 <= preferred_port <= MAX_PORT:
            raise ValueError(f"Port out of range: {preferred_port}")

        taken = {entry.port for other, entry in self._entries(data).items() if other != key}
        skipped = set(exclude)
        last = min(preferred_port + self.scan_window - 1, MAX_PORT)

        for port in range(preferred_port, last + 1):
            if port in taken or port in skipped:
                continue
            try:
                if self.prober.is_in_use(port):
                    continue
            except ProbeUnavailable as e:
                logger.warning(f"⚠️  Skipping port {port}: {e.message}")
                continue
            return port

        raise NoPortAvailable(
            f"No free port available in range {preferred_port}-{last}",
            {"key": key, "preferred_port": preferred_port},
        )

    @staticmethod
    def _record(data: Dict[str, Any], key: str, port: int, project_path: Optional[str | Path]) -> None:
        entry = dict(data.get(key) or {}) if isinstance(data.get(key), dict) else {}
        entry["port"] = port
        entry["projectPath"] = (
            str(Path(project_path).expanduser().resolve()) if project_path else _default_project_path(key)
        )
        entry["createdAt"] = datetime.now(timezone.utc).isoformat()
        data[key] = entry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def allocate(
        self,
        key: str,
        preferred_port: int,
        project_path: Optional[str | Path] = None,
        exclude: Iterable[int] = (),
    ) -> int:
        """Return the port for *key*, reserving a free one on first use.

        Library entry point for callers that do not care which port they
        get. The stack controller does not use it: compose files declare
        their ports, so it pins those with :meth:`assign` and moves them with
        :meth:`reallocate` instead.
        """

        def change(data: Dict[str, Any]) -> int:
            existing = self._entry(key, data.get(key))
            if existing is not None:
                return existing.port
            port = self._scan(data, key, preferred_port, exclude)
            self._record(data, key, port, project_path)
            logger.info(f"🔌 Allocated port {port} for {key}")
            return port

        return self.store.mutate(change)

    def reallocate(
        self,
        key: str,
        preferred_port: int,
        project_path: Optional[str | Path] = None,
        exclude: Iterable[int] = (),
    ) -> int:
        """Replace the port of *key* with a freshly scanned one.

        This is the conflict-resolution path: the previous port is dropped
        before scanning, so it is only handed back when it is the lowest
        free candidate and not excluded. The old allocation survives if the
        scan fails.
        """

        def change(data: Dict[str, Any]) -> int:
            previous = self._entry(key, data.get(key))
            port = self._scan(data, key, preferred_port, exclude)
            if project_path is None and previous is not None and previous.project_path:
                self._record(data, key, port, previous.project_path)
            else:
                self._record(data, key, port, project_path)
            if previous is None or previous.port != port:
                logger.info(f"🔁 Reallocated {key}: {previous.port if previous else '-'} -> {port}")
            return port

        return self.store.mutate(change)

    def assign(self, key: str, port: int, project_path: Optional[str | Path] = None) -> None:
        """Pin *key* to a port chosen elsewhere (e.g. an explicit domain bind).

        Refuses a port held by another live allocation; a stale holder is
        evicted.
        """

        def change(data: Dict[str, Any]) -> None:
            if not 1 <= port <= MAX_PORT:
                raise ValueError(f"Port out of range: {port}")
            for other, entry in self._entries(data).items():
                if other == key or entry.port != port:
                    continue
                if not entry.is_stale:
                    raise PortBindConflict(
                        f"Port {port} is already allocated to {other}",
                        port=port,
                        details={"key": key, "owner": other},
                    )
                del data[other]
                logger.info(f"🧹 Evicted stale allocation {other} holding port {port}")
            current = self._entry(key, data.get(key))
            if current is not None and current.port == port:
                return
            self._record(data, key, port, project_path or (current.project_path if current else None))
            logger.info(f"📌 Assigned port {port} to {key}")

        self.store.mutate(change)

    def release(self, key: str) -> bool:
        """Drop the allocation for *key*; returns whether one existed."""

        def change(data: Dict[str, Any]) -> bool:
            if data.pop(key, None) is None:
                return False
            logger.info(f"🧹 Released port allocation for {key}")
            return True

        return self.store.mutate(change)

    def lookup(self, key: str) -> Optional[int]:
        entry = self._entry(key, self.store.read().get(key))
        return entry.port if entry else None

    def owner_of(self, port: int) -> Optional[str]:
        """Return the key currently holding *port*, if any."""
        for key, entry in self._entries(self.store.read()).items():
            if entry.port == port:
                return key
        return None

    def allocations(self) -> List[PortAllocation]:
        return sorted(self._entries(self.store.read()).values(), key=lambda a: (a.port, a.key))

    def garbage_collect(self) -> List[str]:
        """Release every allocation whose project directory no longer exists."""

        def change(data: Dict[str, Any]) -> List[str]:
            stale = [key for key, entry in self._entries(data).items() if entry.is_stale]
            for key in stale:
                del data[key]
                logger.info(f"🧹 Released stale allocation {key}")
            return stale

        return self.store.mutate(change)

    def acknowledge_corruption(self) -> List[Path]:
        return self.store.acknowledge_corruption()
