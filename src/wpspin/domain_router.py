"""Custom hostnames routed through the reverse proxy to registry ports.

A bind or unbind touches two stores: the proxy config directory and the
binding record file. The proxy config is always written first and the record
second, both under the binding store's lock. After a crash between the two
the config directory is the one to believe; :meth:`DomainRouter.reconcile`
re-derives the records from it.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .certificates import CertificateIssuer
from .exceptions import (
    DomainValidationError,
    PortBindConflict,
    RouteActivationFailed,
    WpSpinError,
)
from .hosts_manager import HostsManager
from .json_store import JsonStore
from .nginx_proxy import NginxProxy
from .port_registry import PortRegistry

logger = logging.getLogger("wpspin.domain_router")

__all__ = ["DomainBinding", "DomainRouter", "validate_hostname"]

_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def validate_hostname(hostname: str) -> str:
    """Return the normalized hostname or raise :class:`DomainValidationError`."""
    if not isinstance(hostname, str):
        raise DomainValidationError(f"Invalid hostname: {hostname!r}", {"hostname": hostname})
    name = hostname.strip().lower().rstrip(".")
    if not name or len(name) > 253:
        raise DomainValidationError(f"Invalid hostname length: {hostname!r}", {"hostname": hostname})
    for label in name.split("."):
        if not _LABEL.match(label):
            raise DomainValidationError(
                f"Invalid hostname {hostname!r}: bad label {label!r}", {"hostname": hostname}
            )
    return name


@dataclass(frozen=True)
class DomainBinding:
    hostname: str
    port: int
    tls_enabled: bool = False
    certificate_ref: Optional[str] = None
    project_path: str = ""


class DomainRouter:
    """Maps hostnames to ports and keeps the proxy in step with that map."""

    def __init__(
        self,
        bindings_file: Path,
        registry: PortRegistry,
        proxy: NginxProxy,
        certificates: CertificateIssuer,
        hosts: Optional[HostsManager] = None,
        lock_timeout: float = 10.0,
    ) -> None:
        self.store = JsonStore(bindings_file, lock_timeout)
        self.registry = registry
        self.proxy = proxy
        self.certificates = certificates
        self.hosts = hosts

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _binding(self, hostname: str, value: Any) -> Optional[DomainBinding]:
        # Older files stored the bare port number
        if isinstance(value, int) and not isinstance(value, bool):
            value = {"port": value}
        if not isinstance(value, dict):
            return None
        port = value.get("port")
        if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
            return None
        tls = bool(value.get("tls", False))
        return DomainBinding(
            hostname=hostname,
            port=port,
            tls_enabled=tls,
            certificate_ref=str(self.certificates.cert_path(hostname)) if tls else None,
            project_path=str(value.get("projectPath") or ""),
        )

    def _all(self, data: Dict[str, Any]) -> Dict[str, DomainBinding]:
        found = {}
        for hostname, value in data.items():
            binding = self._binding(hostname, value)
            if binding is None:
                logger.warning(f"⚠️  Ignoring malformed domain binding {hostname!r}")
                continue
            found[hostname] = binding
        return found

    def _sync_allocation(self, hostname: str, port: int, project_path: str) -> None:
        """Make the registry entry for *hostname* hold *port*."""
        owner = self.registry.owner_of(port)
        if owner and owner != hostname and project_path and owner.split("#", 1)[0] == project_path:
            # The project's own service key hands its port over to the hostname
            self.registry.release(owner)
        try:
            self.registry.assign(hostname, port, project_path or None)
        except PortBindConflict as e:
            logger.warning(f"⚠️  {e.message}; hostname {hostname} keeps no registry allocation")
            self.registry.release(hostname)

    def _release_allocation(self, hostname: str, port: int, remaining: Dict[str, DomainBinding]) -> None:
        if any(b.port == port for b in remaining.values()):
            return
        if self.registry.lookup(hostname) == port:
            self.registry.release(hostname)

    def _update_hosts(self) -> None:
        if self.hosts is None:
            return
        try:
            self.hosts.apply(b.hostname for b in self.bindings())
        except (OSError, subprocess.CalledProcessError) as e:
            logger.warning(f"⚠️  Could not update {self.hosts.hosts_file}: {e}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def bind(
        self,
        hostname: str,
        port: int,
        tls_requested: bool = False,
        project_path: Optional[str | Path] = None,
    ) -> DomainBinding:
        """Route *hostname* to *port*, replacing any earlier route for it."""
        host = validate_hostname(hostname)
        if not 1 <= port <= 65535:
            raise ValueError(f"Port out of range: {port}")
        path = str(Path(project_path).expanduser().resolve()) if project_path else ""

        if tls_requested:
            self.certificates.ensure(host)

        def change(data: Dict[str, Any]) -> Dict[str, Any]:
            record = dict(data[host]) if isinstance(data.get(host), dict) else {}
            record["port"] = port
            record["projectPath"] = path or record.get("projectPath", "")
            record["tls"] = tls_requested
            data[host] = record
            return record

        # Config, reload and record form one transaction under the store lock
        with self.store.transaction():
            previous = self.proxy.write_config(host, port, tls_requested)
            try:
                self.proxy.reload()
            except WpSpinError as e:
                self.proxy.restore_config(host, previous)
                if isinstance(e, RouteActivationFailed):
                    raise
                raise RouteActivationFailed(
                    f"Could not activate route {host} -> {port}: {e.message}",
                    {"hostname": host, "port": port, **e.details},
                ) from e
            record = self.store.mutate_held(change)
        binding = DomainBinding(
            hostname=host,
            port=port,
            tls_enabled=tls_requested,
            certificate_ref=str(self.certificates.cert_path(host)) if tls_requested else None,
            project_path=record["projectPath"],
        )
        self._sync_allocation(host, port, binding.project_path)
        self._update_hosts()
        logger.info(f"🌐 {host} -> 127.0.0.1:{port}{' (https)' if tls_requested else ''}")
        return binding

    def unbind(self, hostname: str) -> bool:
        """Remove the route for *hostname*; returns whether one existed."""
        host = validate_hostname(hostname)
        with self.store.transaction():
            previous = self.proxy.remove_config(host)
            if previous is not None and self.proxy.is_running():
                try:
                    self.proxy.reload()
                except WpSpinError:
                    self.proxy.restore_config(host, previous)
                    raise
            removed = self.store.mutate_held(lambda data: self._binding(host, data.pop(host, None)))
        if removed is not None:
            self._release_allocation(host, removed.port, self._all(self.store.read()))
        if previous is None and removed is None:
            return False
        self._update_hosts()
        logger.info(f"🧹 Unbound {host}")
        return True

    def route_for(self, hostname: str) -> Optional[int]:
        binding = self._binding(hostname, self.store.read().get(hostname))
        return binding.port if binding else None

    def bindings(self) -> List[DomainBinding]:
        return sorted(self._all(self.store.read()).values(), key=lambda b: b.hostname)

    def reconcile(self) -> Dict[str, List[str]]:
        """Rebuild the binding records from the proxy config directory."""
        report: Dict[str, List[str]] = {"added": [], "updated": [], "removed": []}

        def change(data: Dict[str, Any]) -> Dict[str, DomainBinding]:
            current = self._all(data)
            removed = {}
            for host, route in routes.items():
                binding = current.get(host)
                if binding is None:
                    data[host] = {"port": route["port"], "projectPath": "", "tls": route["tls"]}
                    report["added"].append(host)
                elif binding.port != route["port"] or binding.tls_enabled != route["tls"]:
                    record = dict(data[host]) if isinstance(data[host], dict) else {}
                    record.update(port=route["port"], tls=route["tls"])
                    record.setdefault("projectPath", "")
                    data[host] = record
                    report["updated"].append(host)
            for host in list(data):
                if host not in routes:
                    if host in current:
                        removed[host] = current[host]
                    del data[host]
                    report["removed"].append(host)
            return removed

        with self.store.lock():
            routes = self.proxy.configured_routes()
            removed = self.store.mutate_held(change)
        remaining = self._all(self.store.read())
        for host, binding in removed.items():
            self._release_allocation(host, binding.port, remaining)
        for binding in remaining.values():
            if self.registry.lookup(binding.hostname) != binding.port:
                self._sync_allocation(binding.hostname, binding.port, binding.project_path)
        if any(report.values()):
            self._update_hosts()
            logger.info(
                f"🔧 Reconciled bindings: +{len(report['added'])} ~{len(report['updated'])} -{len(report['removed'])}"
            )
        return report

    def prune(self) -> List[str]:
        """Unbind every hostname whose owning project directory is gone."""
        pruned = []
        for binding in self.bindings():
            if not binding.project_path or Path(binding.project_path).exists():
                continue
            if self.unbind(binding.hostname):
                logger.info(f"🧹 Pruned {binding.hostname}: {binding.project_path} no longer exists")
                pruned.append(binding.hostname)
        return pruned
