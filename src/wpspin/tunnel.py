"""Public sharing of a local site through an ngrok tunnel."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from typing import Any, Dict, Iterable, List, Optional

import requests

from .exceptions import PrerequisiteMissing, TunnelError

logger = logging.getLogger("wpspin.tunnel")

__all__ = ["TunnelManager"]


class TunnelManager:
    """Start, inspect and stop ngrok through its CLI and local API."""

    def __init__(
        self,
        api_url: str = "http://127.0.0.1:4040/api/tunnels",
        session: Optional[requests.Session] = None,
        executable: str = "ngrok",
        start_timeout: float = 20.0,
        poll_interval: float = 0.5,
    ) -> None:
        self.api_url = api_url
        self.session = session or requests.Session()
        self.executable = executable
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self._process: Optional[subprocess.Popen] = None

    def _tunnels(self) -> Optional[List[Dict[str, Any]]]:
        """Tunnels reported by the local API, ``None`` when it is not answering."""
        try:
            response = self.session.get(self.api_url, timeout=2)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.debug(f"ngrok API not available: {e}")
            return None
        tunnels = data.get("tunnels") if isinstance(data, dict) else None
        return tunnels if isinstance(tunnels, list) else []

    def is_running(self) -> bool:
        return self._tunnels() is not None

    def build_command(
        self,
        port: int,
        domain: Optional[str] = None,
        auth_token: Optional[str] = None,
        cidr_allow: Iterable[str] = (),
        cidr_deny: Iterable[str] = (),
    ) -> List[str]:
        cmd = [self.executable, "http", str(port)]
        if auth_token:
            cmd += ["--authtoken", auth_token]
        if domain:
            cmd += ["--domain", domain]
        allow, deny = list(cidr_allow), list(cidr_deny)
        if allow:
            cmd += ["--allow-cidr", ",".join(allow)]
        if deny:
            cmd += ["--deny-cidr", ",".join(deny)]
        return cmd

    def public_url(self, port: Optional[int] = None) -> Optional[str]:
        """Public URL of the tunnel forwarding to *port* (any tunnel if omitted).

        An https URL is preferred when ngrok reports both schemes.
        """
        urls = []
        for tunnel in self._tunnels() or []:
            url = tunnel.get("public_url")
            if not url:
                continue
            addr = str((tunnel.get("config") or {}).get("addr", ""))
            if port is not None and addr.rsplit(":", 1)[-1] != str(port):
                continue
            urls.append(url)
        urls.sort(key=lambda u: not u.startswith("https://"))
        return urls[0] if urls else None

    def start(
        self,
        port: int,
        domain: Optional[str] = None,
        auth_token: Optional[str] = None,
        cidr_allow: Iterable[str] = (),
        cidr_deny: Iterable[str] = (),
    ) -> str:
        if self.is_running():
            raise TunnelError(
                "An ngrok tunnel is already running",
                {"hint": "Run 'wp-spin unshare' first or inspect http://localhost:4040"},
            )
        if shutil.which(self.executable) is None:
            raise PrerequisiteMissing(
                "ngrok is not installed.", {"hint": "Install it from https://ngrok.com/download"}
            )

        cmd = self.build_command(port, domain, auth_token, cidr_allow, cidr_deny)
        logger.info(f"🌍 Creating ngrok tunnel to http://localhost:{port}...")
        self._process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

        deadline = time.monotonic() + self.start_timeout
        while time.monotonic() < deadline:
            code = self._process.poll()
            if code is not None:
                self._process = None
                raise TunnelError(f"ngrok exited with code {code}", {"port": port})
            url = self.public_url(port)
            if url:
                logger.info(f"✅ Tunnel ready: {url}")
                return url
            time.sleep(self.poll_interval)

        self._process.terminate()
        self._process = None
        raise TunnelError(
            f"ngrok did not report a public URL within {self.start_timeout:g}s", {"port": port}
        )

    def stop(self) -> bool:
        """Stop ngrok; returns ``False`` when nothing was running."""
        if self._process is not None:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
            self._process = None
            logger.info("🛑 ngrok stopped")
            return True

        if not self.is_running():
            return False
        if os.name == "nt":
            cmd = ["taskkill", "/F", "/IM", "ngrok.exe"]
        else:
            cmd = ["pkill", "-f", "ngrok"]
        subprocess.run(cmd, capture_output=True, check=False)
        time.sleep(self.poll_interval)
        if self.is_running():
            raise TunnelError("Could not stop the running ngrok process", {"command": " ".join(cmd)})
        logger.info("🛑 ngrok stopped")
        return True
