"""Host TCP port probing.

The socket table is read through *psutil*. Where that needs privileges the
host does not grant (macOS without root raises ``AccessDenied``) the prober
falls back to the platform tools ``ss``, ``netstat`` and ``lsof``.
"""

from __future__ import annotations

import logging
import platform
import subprocess
from typing import Callable, List, Optional, Set

import psutil

from .exceptions import ProbeUnavailable

logger = logging.getLogger("wpspin.port_prober")

__all__ = ["PortProber"]

_TOOL_TIMEOUT = 5


def _port_of(address: str) -> Optional[int]:
    """Extract the port from ``127.0.0.1:80``, ``[::]:80`` or ``*:80``."""
    _, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        return None
    return int(port)


class PortProber:
    """Answer "is this TCP port bound on the host right now"."""

    def _listening_ports(self) -> Set[int]:
        ports: Set[int] = set()
        for conn in psutil.net_connections(kind="tcp"):
            if conn.laddr and conn.status == psutil.CONN_LISTEN:
                ports.add(conn.laddr.port)
        return ports

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=_TOOL_TIMEOUT)

    # Tool fallbacks return None when the tool could not answer.

    def _probe_ss(self, port: int) -> Optional[bool]:
        p = self._run(["ss", "-Hltn"])
        if p.returncode != 0:
            return None
        for line in p.stdout.splitlines():
            fields = line.split()
            if len(fields) >= 4 and _port_of(fields[3]) == port:
                return True
        return False

    def _probe_netstat(self, port: int) -> Optional[bool]:
        windows = platform.system() == "Windows"
        p = self._run(["netstat", "-ano", "-p", "TCP"] if windows else ["netstat", "-tln"])
        if p.returncode != 0:
            return None
        for line in p.stdout.splitlines():
            fields = line.split()
            if windows:
                if len(fields) >= 4 and fields[3] == "LISTENING" and _port_of(fields[1]) == port:
                    return True
            elif len(fields) >= 6 and fields[5] == "LISTEN" and _port_of(fields[3]) == port:
                return True
        return False

    def _probe_lsof(self, port: int) -> Optional[bool]:
        p = self._run(["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN"])
        if p.returncode == 0:
            return bool(p.stdout.strip())
        # lsof exits 1 with no output when nothing matches
        if p.returncode == 1 and not p.stderr.strip():
            return False
        return None

    def _probe_with_tools(self, port: int) -> bool:
        probes: List[Callable[[int], Optional[bool]]] = [self._probe_ss, self._probe_netstat, self._probe_lsof]
        if platform.system() == "Windows":
            probes = [self._probe_netstat]

        failures: List[str] = []
        for probe in probes:
            try:
                answer = probe(port)
            except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired) as e:
                failures.append(f"{probe.__name__}: {e}")
                continue
            if answer is not None:
                return answer
            failures.append(f"{probe.__name__}: unusable output")

        raise ProbeUnavailable(
            f"Cannot determine whether port {port} is in use",
            {"port": port, "attempts": "; ".join(failures)},
        )

    def is_in_use(self, port: int) -> bool:
        """Return ``True`` if something listens on TCP *port*."""
        if not 1 <= port <= 65535:
            raise ValueError(f"Port out of range: {port}")
        try:
            in_use = port in self._listening_ports()
        except psutil.AccessDenied:
            logger.debug("Socket table not readable, falling back to host tools")
            in_use = self._probe_with_tools(port)
        logger.debug(f"🔌 Port {port} {'in use' if in_use else 'free'}")
        return in_use
