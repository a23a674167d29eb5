from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Iterable, Optional

__all__ = ["HostsManager", "default_hosts_file"]

logger = logging.getLogger("wpspin.hosts_manager")


def default_hosts_file() -> Path:
    if os.name == "nt":
        return Path(os.environ.get("SystemRoot", r"C:\Windows")) / "System32" / "drivers" / "etc" / "hosts"
    return Path("/etc/hosts")


class HostsManager:
    """Safely manage hosts-file entries for wp-spin domains.

    Keeps every bound hostname in a block between markers to avoid clobbering
    user edits. The block is rewritten wholesale from the current bindings.
    """

    marker_start = "# BEGIN WP-SPIN HOSTS"
    marker_end = "# END WP-SPIN HOSTS"

    def __init__(self, hosts_file: Optional[Path] = None, use_sudo: Optional[bool] = None) -> None:
        self.hosts_file = Path(hosts_file) if hosts_file else default_hosts_file()
        if use_sudo is None:
            use_sudo = os.name != "nt" and hasattr(os, "geteuid") and os.geteuid() != 0
        self.use_sudo = use_sudo

    def build_block(self, hostnames: Iterable[str], ip: str = "127.0.0.1") -> str:
        names = sorted(set(hostnames))
        if not names:
            return ""
        lines = [self.marker_start]
        lines += [f"{ip}\t{name}" for name in names]
        lines.append(self.marker_end)
        return "\n".join(lines) + "\n"

    def strip_block(self, content: str) -> str:
        kept = []
        inside = False
        for line in content.splitlines(keepends=True):
            stripped = line.strip()
            if stripped == self.marker_start:
                inside = True
                continue
            if stripped == self.marker_end:
                inside = False
                continue
            if not inside:
                kept.append(line)
        text = "".join(kept)
        if text and not text.endswith("\n"):
            text += "\n"
        return text

    def render(self, current: str, hostnames: Iterable[str]) -> str:
        return self.strip_block(current) + self.build_block(hostnames)

    def _write(self, content: str) -> None:
        if not self.use_sudo:
            self.hosts_file.write_text(content, encoding="utf-8")
            return
        fd, tmp_name = tempfile.mkstemp(prefix="wp-spin-hosts.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fp.write(content)
            subprocess.run(["sudo", "cp", tmp_name, str(self.hosts_file)], check=True)
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    def apply(self, hostnames: Iterable[str]) -> None:
        """Replace the wp-spin block with one line per hostname."""
        current = self.hosts_file.read_text(encoding="utf-8") if self.hosts_file.exists() else ""
        updated = self.render(current, hostnames)
        if updated == current:
            return
        self._write(updated)
        logger.info(f"📝 Updated {self.hosts_file}")

    def remove(self) -> None:
        self.apply(())
