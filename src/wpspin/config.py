"""Runtime settings for wp-spin.

Settings come from ``WP_SPIN_*`` environment variables. A
``config.env`` file inside the configuration directory is read first with
*python-dotenv*; real environment variables always win over it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

from .exceptions import ConfigError

logger = logging.getLogger("wpspin.config")

__all__ = ["Settings", "load_settings"]

_ENV_PREFIX = "WP_SPIN_"


def default_config_dir() -> Path:
    """Return ``~/.wp-spin`` unless ``WP_SPIN_HOME`` points elsewhere."""
    override = os.environ.get("WP_SPIN_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".wp-spin"


@dataclass
class Settings:
    config_dir: Path = field(default_factory=default_config_dir)
    scan_window: int = 1000
    bind_retries: int = 3
    lock_timeout: float = 10.0
    min_disk_gb: float = 1.0
    min_memory_gb: float = 2.0
    proxy_container: str = "wp-spin-nginx-proxy"
    proxy_image: str = "nginx:stable"
    ngrok_api_url: str = "http://127.0.0.1:4040/api/tunnels"

    # Derived locations ---------------------------------------------------

    @property
    def port_registry_file(self) -> Path:
        return self.config_dir / "port-mapping.json"

    @property
    def sites_file(self) -> Path:
        return self.config_dir / "sites.json"

    @property
    def proxy_dir(self) -> Path:
        return self.config_dir / "nginx-proxy"

    @property
    def bindings_file(self) -> Path:
        return self.proxy_dir / "port-map.json"

    @property
    def proxy_conf_dir(self) -> Path:
        return self.proxy_dir / "conf.d"

    @property
    def certs_dir(self) -> Path:
        return self.proxy_dir / "certs"

    @property
    def locks_dir(self) -> Path:
        return self.config_dir / "locks"

    @property
    def log_file(self) -> Path:
        return self.config_dir / "logs" / "wp-spin.log"


def _as_int(name: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise ConfigError(f"Invalid integer for {name}: {value!r}", {"setting": name}) from e
    if number < 1:
        raise ConfigError(f"{name} must be positive, got {number}", {"setting": name})
    return number


def _as_float(name: str, value: str) -> float:
    try:
        number = float(value)
    except ValueError as e:
        raise ConfigError(f"Invalid number for {name}: {value!r}", {"setting": name}) from e
    if number < 0:
        raise ConfigError(f"{name} must not be negative, got {number}", {"setting": name})
    return number


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``config.env`` and the environment."""
    env = dict(os.environ if environ is None else environ)

    home = env.get("WP_SPIN_HOME")
    config_dir = Path(home).expanduser() if home else Path.home() / ".wp-spin"

    values: Dict[str, str] = {}
    env_file = config_dir / "config.env"
    if env_file.exists():
        logger.debug(f"📄 Reading settings from {env_file}")
        values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    values.update({k: v for k, v in env.items() if k.startswith(_ENV_PREFIX)})

    settings = Settings(config_dir=config_dir)

    if "WP_SPIN_SCAN_WINDOW" in values:
        settings.scan_window = _as_int("WP_SPIN_SCAN_WINDOW", values["WP_SPIN_SCAN_WINDOW"])
    if "WP_SPIN_BIND_RETRIES" in values:
        settings.bind_retries = _as_int("WP_SPIN_BIND_RETRIES", values["WP_SPIN_BIND_RETRIES"])
    if "WP_SPIN_LOCK_TIMEOUT" in values:
        settings.lock_timeout = _as_float("WP_SPIN_LOCK_TIMEOUT", values["WP_SPIN_LOCK_TIMEOUT"])
    if "WP_SPIN_MIN_DISK_GB" in values:
        settings.min_disk_gb = _as_float("WP_SPIN_MIN_DISK_GB", values["WP_SPIN_MIN_DISK_GB"])
    if "WP_SPIN_MIN_MEMORY_GB" in values:
        settings.min_memory_gb = _as_float("WP_SPIN_MIN_MEMORY_GB", values["WP_SPIN_MIN_MEMORY_GB"])
    if values.get("WP_SPIN_PROXY_CONTAINER"):
        settings.proxy_container = values["WP_SPIN_PROXY_CONTAINER"]
    if values.get("WP_SPIN_PROXY_IMAGE"):
        settings.proxy_image = values["WP_SPIN_PROXY_IMAGE"]
    if values.get("WP_SPIN_NGROK_API_URL"):
        settings.ngrok_api_url = values["WP_SPIN_NGROK_API_URL"]

    return settings
