"""Locally trusted TLS certificates for custom domains, issued with mkcert."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Tuple

from .exceptions import ErrorHandler, PrerequisiteMissing

logger = logging.getLogger("wpspin.certificates")

__all__ = ["CertificateIssuer"]


class CertificateIssuer:
    """Certificate and key paths are derived from the hostname alone."""

    def __init__(self, certs_dir: Path, timeout: float = 60.0) -> None:
        self.certs_dir = Path(certs_dir)
        self.timeout = timeout
        self.error_handler = ErrorHandler(logger)

    def cert_path(self, hostname: str) -> Path:
        return self.certs_dir / f"{hostname}.pem"

    def key_path(self, hostname: str) -> Path:
        return self.certs_dir / f"{hostname}-key.pem"

    def has_certificate(self, hostname: str) -> bool:
        return self.cert_path(hostname).is_file() and self.key_path(hostname).is_file()

    def ensure(self, hostname: str) -> Tuple[Path, Path]:
        """Return ``(cert, key)``, issuing them first if either is missing."""
        cert, key = self.cert_path(hostname), self.key_path(hostname)
        if self.has_certificate(hostname):
            return cert, key

        if shutil.which("mkcert") is None:
            raise PrerequisiteMissing(
                "mkcert is required for HTTPS domains but was not found.",
                {"hostname": hostname, "hint": "Install mkcert and run 'mkcert -install' once"},
            )

        self.certs_dir.mkdir(parents=True, exist_ok=True)
        cmd = ["mkcert", "-cert-file", str(cert), "-key-file", str(key), hostname]
        logger.info(f"🔐 Issuing certificate for {hostname}")
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=self.timeout)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            self.error_handler.handle_subprocess_error(cmd, e, f"certificate issuance for {hostname}")

        if os.name != "nt":
            key.chmod(0o600)
        logger.info(f"✅ Certificate ready: {cert}")
        return cert, key
