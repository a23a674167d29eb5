"""Exclusive advisory file locks for the on-disk stores.

Uses ``fcntl.flock()`` on Unix and ``msvcrt.locking()`` on Windows. The lock
lives in a sibling ``<store>.lock`` file so the store itself can be replaced
atomically while the lock is held.
"""

from __future__ import annotations

import logging
import os
import platform
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .exceptions import LockTimeout

logger = logging.getLogger("wpspin.locking")

__all__ = ["FileLock", "locked"]


class FileLock:
    """Blocking exclusive lock on ``<path>.lock`` with a timeout."""

    _POLL_INTERVAL = 0.05

    def __init__(self, path: Path, timeout: float = 10.0) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.timeout = timeout
        self._fd: Optional[int] = None

    def _try_lock(self, fd: int) -> bool:
        if platform.system() == "Windows":
            import msvcrt

            try:
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
            except OSError:
                return False
            return True

        import fcntl

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    def _unlock(self, fd: int) -> None:
        if platform.system() == "Windows":
            import msvcrt

            os.lseek(fd, 0, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        else:
            import fcntl

            fcntl.flock(fd, fcntl.LOCK_UN)

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR, 0o600)
        deadline = time.monotonic() + self.timeout
        while not self._try_lock(fd):
            if time.monotonic() >= deadline:
                os.close(fd)
                raise LockTimeout(
                    f"Timed out after {self.timeout}s waiting for lock on {self.path}",
                    {"path": str(self.path)},
                )
            time.sleep(self._POLL_INTERVAL)
        self._fd = fd
        logger.debug(f"🔒 Acquired lock {self.lock_path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            self._unlock(self._fd)
        finally:
            os.close(self._fd)
            self._fd = None
            logger.debug(f"🔓 Released lock {self.lock_path}")

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


@contextmanager
def locked(path: Path, timeout: float = 10.0) -> Iterator[FileLock]:
    """Hold the exclusive lock for *path* for the duration of the block."""
    lock = FileLock(path, timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
