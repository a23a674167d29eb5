"""File-backed JSON repository shared by the registries.

All mutation goes through :meth:`JsonStore.mutate`, which runs the
load → lock → modify → save → unlock cycle on the whole document. A file
that cannot be parsed is never overwritten: it is renamed aside to
``<name>.corrupt-<timestamp>``, reads see an empty document and writes are
refused until the corruption is acknowledged. The refusal lasts as long as
a backup without a ``.ack`` marker sits next to the store, so it survives
across invocations.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from .exceptions import RegistryCorrupt
from .locking import FileLock, locked

logger = logging.getLogger("wpspin.json_store")

__all__ = ["JsonStore"]

T = TypeVar("T")

_ACK_SUFFIX = ".ack"


class JsonStore:
    """A JSON object persisted at *path*."""

    def __init__(self, path: Path, lock_timeout: float = 10.0) -> None:
        self.path = Path(path)
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse(self) -> Optional[Dict[str, Any]]:
        """Return the document, ``{}`` when missing, ``None`` when corrupt."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _quarantine(self) -> None:
        """Move the unparsable file out of the way (caller holds the lock)."""
        stamp = time.strftime("%Y%m%d-%H%M%S")
        backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        counter = 1
        while backup.exists():
            backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}-{counter}")
            counter += 1
        os.replace(self.path, backup)
        logger.error(f"❌ Corrupt store {self.path} moved aside to {backup}")

    def _load_locked(self) -> Dict[str, Any]:
        data = self._parse()
        if data is None:
            self._quarantine()
            return {}
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                json.dump(data, fp, indent=2)
                fp.write("\n")
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _pending_backups(self) -> List[Path]:
        if not self.path.parent.is_dir():
            return []
        return sorted(
            backup
            for backup in self.path.parent.glob(f"{self.path.name}.corrupt-*")
            if not backup.name.endswith(_ACK_SUFFIX)
            and not backup.with_name(backup.name + _ACK_SUFFIX).exists()
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def corrupt_backup(self) -> Optional[Path]:
        """Most recent unacknowledged backup of a corrupt document."""
        pending = self._pending_backups()
        return pending[-1] if pending else None

    @property
    def is_corrupt(self) -> bool:
        return self.corrupt_backup is not None

    def acknowledge_corruption(self) -> List[Path]:
        """Allow writes again; returns the backups that were acknowledged."""
        with self.lock():
            pending = self._pending_backups()
            for backup in pending:
                backup.with_name(backup.name + _ACK_SUFFIX).touch()
                logger.warning(f"⚠️  Corruption of {self.path} acknowledged (backup: {backup})")
        return pending

    def lock(self) -> FileLock:
        """The store's exclusive lock, for transactions spanning other files."""
        return FileLock(self.path, self.lock_timeout)

    def read(self) -> Dict[str, Any]:
        """Return a snapshot of the document without taking the lock."""
        data = self._parse()
        if data is not None:
            return data
        with locked(self.path, self.lock_timeout):
            return self._load_locked()

    def ensure_writable(self) -> Dict[str, Any]:
        """Load the document and refuse if a corruption is unacknowledged.

        The caller must hold :meth:`lock`.
        """
        data = self._load_locked()
        backup = self.corrupt_backup
        if backup is not None:
            raise RegistryCorrupt(
                f"Refusing to write {self.path}: previous contents were corrupt",
                {
                    "path": str(self.path),
                    "backup": str(backup),
                    "hint": "Inspect the backup, then run 'wp-spin ack-corrupt'",
                },
            )
        return data

    def mutate_held(self, change: Callable[[Dict[str, Any]], T]) -> T:
        """Like :meth:`mutate` for a caller already holding :meth:`lock`."""
        data = self.ensure_writable()
        result = change(data)
        self._save(data)
        return result

    def mutate(self, change: Callable[[Dict[str, Any]], T]) -> T:
        """Apply *change* to the document under the exclusive lock and save it."""
        with self.lock():
            return self.mutate_held(change)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the lock and fail early when writes would be refused."""
        with self.lock():
            self.ensure_writable()
            yield
