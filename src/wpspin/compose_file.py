"""Read and rewrite published ports in a project's compose file."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .config import default_config_dir
from .exceptions import ConfigError, ErrorHandler
from .locking import locked

logger = logging.getLogger("wpspin.compose_file")

__all__ = ["ComposeFile", "COMPOSE_FILENAMES", "find_compose_file", "parse_host_port"]

COMPOSE_FILENAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")


def find_compose_file(project_root: Path) -> Optional[Path]:
    for name in COMPOSE_FILENAMES:
        candidate = Path(project_root) / name
        if candidate.is_file():
            return candidate
    return None


def parse_host_port(entry: Any) -> Optional[int]:
    """Return the fixed host port of a compose ``ports`` entry, if any.

    Handles the short syntax (``"8080:80"``, ``"127.0.0.1:8080:80/tcp"``)
    and the long syntax (``{"published": 8080, "target": 80}``). Entries
    without a fixed host port (container-only ports, ranges) yield ``None``.
    """
    if isinstance(entry, Mapping):
        published = entry.get("published")
        if isinstance(published, int) and not isinstance(published, bool):
            return published
        if isinstance(published, str) and published.isdigit():
            return int(published)
        return None
    if not isinstance(entry, str):
        return None
    mapping = entry.strip().split("/", 1)[0]
    parts = mapping.rsplit(":", 2)
    if len(parts) < 2:
        return None
    host = parts[-2]
    return int(host) if host.isdigit() else None


def _replace_host_port(entry: Any, old: int, new: int) -> Tuple[Any, bool]:
    if parse_host_port(entry) != old:
        return entry, False
    if isinstance(entry, Mapping):
        updated = dict(entry)
        updated["published"] = str(new) if isinstance(entry.get("published"), str) else new
        return updated, True
    mapping, slash, protocol = entry.strip().partition("/")
    parts = mapping.rsplit(":", 2)
    parts[-2] = str(new)
    return ":".join(parts) + slash + protocol, True


class ComposeFile:
    """A compose YAML document on disk."""

    def __init__(self, path: Path, lock_timeout: float = 10.0, lock_dir: Optional[Path] = None) -> None:
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self.lock_dir = Path(lock_dir) if lock_dir else default_config_dir() / "locks"
        self.error_handler = ErrorHandler(logger)

    @property
    def lock_target(self) -> Path:
        """Lock location for this file, kept out of the project directory."""
        digest = hashlib.sha1(str(self.path.resolve()).encode("utf-8")).hexdigest()[:12]
        return self.lock_dir / f"{digest}-{self.path.name}"

    def load(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as fp:
                data = yaml.safe_load(fp)
        except FileNotFoundError:
            raise ConfigError(f"Compose file not found: {self.path}", {"path": str(self.path)})
        except yaml.YAMLError as e:
            self.error_handler.log_and_raise(
                ConfigError, f"Invalid YAML in compose file: {self.path}", e, {"path": str(self.path)}
            )
        if not isinstance(data, dict):
            raise ConfigError(f"Compose file has no top-level mapping: {self.path}", {"path": str(self.path)})
        return data

    def services(self) -> Dict[str, Any]:
        """Return the *services* mapping from the compose YAML."""
        services = self.load().get("services") or {}
        if not isinstance(services, dict):
            raise ConfigError(f"'services' is not a mapping in {self.path}", {"path": str(self.path)})
        return services

    def declared_ports(self) -> Dict[str, List[int]]:
        """Fixed host ports per service, in declaration order."""
        declared: Dict[str, List[int]] = {}
        for name, service in self.services().items():
            entries = (service or {}).get("ports") or []
            ports = [p for p in (parse_host_port(e) for e in entries) if p is not None]
            if ports:
                declared[name] = ports
        return declared

    def rewrite_ports(self, changes: Mapping[str, Mapping[int, int]]) -> int:
        """Replace host ports in place: ``{service: {old: new}}``.

        Returns the number of entries rewritten. The read-modify-write runs
        under a lock in *lock_dir* and the result is swapped in atomically.
        """
        if not changes:
            return 0
        with locked(self.lock_target, self.lock_timeout):
            data = self.load()
            services = data.get("services") or {}
            rewritten = 0
            for service, mapping in changes.items():
                svc = services.get(service)
                if not isinstance(svc, dict) or not svc.get("ports"):
                    logger.warning(f"⚠️  Service {service!r} has no ports to rewrite in {self.path}")
                    continue
                entries = list(svc["ports"])
                for i, entry in enumerate(entries):
                    old = parse_host_port(entry)
                    if old is None or old not in mapping:
                        continue
                    entries[i], changed = _replace_host_port(entry, old, mapping[old])
                    if changed:
                        rewritten += 1
                        logger.info(f"✏️  {service}: host port {old} -> {mapping[old]}")
                svc["ports"] = entries
            if rewritten:
                self._write(data)
            return rewritten

    def _write(self, data: Dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                yaml.safe_dump(data, fp, default_flow_style=False, sort_keys=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
