"""Lifecycle of one project's container stack.

The controller never caches engine state: every operation starts by asking
the engine what is running. Its own ``state`` only tracks the transition in
progress so an interrupted or failed operation is visibly ``DEGRADED``.

State machine::

    STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED
    any     -> DEGRADED  (failure mid-operation)
    DEGRADED -> STARTING | STOPPING
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from .compose_file import ComposeFile
from .config import Settings
from .containers import ContainerInfo, ContainerRole, classify_container
from .docker_manager import DockerManager
from .exceptions import (
    NoPortAvailable,
    PortBindConflict,
    ProbeUnavailable,
    StackStateError,
    WpSpinError,
)
from .port_registry import PortAllocation, PortRegistry, project_key
from .preflight import PreflightChecker

logger = logging.getLogger("wpspin.stack_controller")

__all__ = ["StackController", "StackDescriptor", "StackStatus"]

OutputSink = Callable[[str], None]


class StackStatus(str, Enum):
    UNKNOWN = "unknown"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    DEGRADED = "degraded"


_TRANSITIONS: Dict[StackStatus, Set[StackStatus]] = {
    StackStatus.UNKNOWN: {StackStatus.STARTING, StackStatus.STOPPING},
    StackStatus.STOPPED: {StackStatus.STARTING},
    StackStatus.STARTING: {StackStatus.RUNNING},
    StackStatus.RUNNING: {StackStatus.STOPPING},
    StackStatus.STOPPING: {StackStatus.STOPPED},
    StackStatus.DEGRADED: {StackStatus.STARTING, StackStatus.STOPPING},
}


@dataclass
class StackDescriptor:
    project_root: Path
    service_names: List[str]
    declared_ports: Dict[str, List[int]]
    status: StackStatus
    containers: List[ContainerInfo] = field(default_factory=list)
    ports_by_role: Dict[ContainerRole, List[int]] = field(default_factory=dict)

    def ports_for(self, role: ContainerRole) -> List[int]:
        return self.ports_by_role.get(role, [])

    @property
    def primary_port(self) -> Optional[int]:
        ports = self.ports_for(ContainerRole.PRIMARY)
        return ports[0] if ports else None


class StackController:
    """Start, stop and inspect the compose stack rooted at *project_root*."""

    def __init__(
        self,
        project_root: Path,
        registry: PortRegistry,
        docker_manager: Optional[DockerManager] = None,
        preflight: Optional[PreflightChecker] = None,
        hostname: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.project_root = Path(project_root).expanduser().resolve()
        self.settings = settings or Settings()
        self.registry = registry
        self.docker = docker_manager or DockerManager(self.project_root)
        self.compose = ComposeFile(
            self.docker.compose_file, self.settings.lock_timeout, lock_dir=self.settings.locks_dir
        )
        self.preflight = preflight or PreflightChecker(
            self.project_root,
            min_disk_gb=self.settings.min_disk_gb,
            min_memory_gb=self.settings.min_memory_gb,
            prober=registry.prober,
        )
        self.hostname = hostname
        self.state = StackStatus.UNKNOWN

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, target: StackStatus) -> None:
        if target != StackStatus.DEGRADED and target not in _TRANSITIONS[self.state]:
            raise StackStateError(
                f"Cannot go from {self.state.value} to {target.value}",
                {"project_path": str(self.project_root)},
            )
        logger.debug(f"{self.state.value} -> {target.value}")
        self.state = target

    def allocation_key(self, service: str, index: int = 0) -> str:
        """Registry key for the *index*-th declared host port of *service*."""
        if index == 0 and self.hostname and classify_container(service) == ContainerRole.PRIMARY:
            return self.hostname
        name = service if index == 0 else f"{service}-{index}"
        return project_key(self.project_root, name)

    def _holder(self, key: str, port: int) -> Optional[PortAllocation]:
        """Another live allocation holding *port*, if any."""
        for allocation in self.registry.allocations():
            if allocation.port == port and allocation.key != key and not allocation.is_stale:
                return allocation
        return None

    def _is_occupied(self, key: str, port: int) -> bool:
        holder = self._holder(key, port)
        # A hostname key of this same project counts as ours
        if holder is not None and holder.project_path != str(self.project_root):
            return True
        try:
            return self.registry.prober.is_in_use(port)
        except ProbeUnavailable:
            logger.warning(f"⚠️  Could not probe port {port}; treating it as occupied")
            return True

    def _service_for_port(self, port: int) -> Optional[Tuple[str, int]]:
        for service, ports in self.compose.declared_ports().items():
            if port in ports:
                return service, ports.index(port)
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def verify_prerequisites(self, check_resources: bool = False) -> None:
        self.preflight.verify(check_resources=check_resources)

    def reconcile_ports(
        self, declared_ports: Optional[Mapping[str, List[int]]] = None
    ) -> Dict[str, Tuple[int, int]]:
        """Make sure every declared host port is ours to use.

        Ports published by this project's own containers are kept as they
        are. Any other declared port that is registered to someone else or
        bound on the host is replaced by a fresh allocation and the compose
        file is rewritten. Returns ``{service: (old, new)}`` for every change.
        """
        declared = dict(declared_ports) if declared_ports is not None else self.compose.declared_ports()
        own: Set[int] = set()
        for container in self.docker.containers():
            own.update(container.host_ports)

        claimed: Set[int] = set()
        rewrites: Dict[str, Dict[int, int]] = {}
        changes: Dict[str, Tuple[int, int]] = {}

        for service, ports in declared.items():
            for index, port in enumerate(ports):
                key = self.allocation_key(service, index)
                if port in own or (port not in claimed and not self._is_occupied(key, port)):
                    if self._holder(key, port) is None:
                        try:
                            self.registry.assign(key, port, self.project_root)
                        except PortBindConflict as e:
                            logger.warning(f"⚠️  {e.message}")
                    claimed.add(port)
                    continue

                new = self.registry.reallocate(key, port, self.project_root, exclude=claimed | {port})
                claimed.add(new)
                rewrites.setdefault(service, {})[port] = new
                changes[service if index == 0 else f"{service}-{index}"] = (port, new)
                logger.info(f"🔀 {service}: port {port} is taken, using {new}")

        if rewrites:
            self.compose.rewrite_ports(rewrites)
        return changes

    def _start(self, on_output: Optional[OutputSink]) -> None:
        excluded: Set[int] = set()
        attempts = self.settings.bind_retries
        for attempt in range(1, attempts + 1):
            try:
                self.docker.up(on_output=on_output)
                return
            except PortBindConflict as e:
                if e.port is None:
                    raise
                excluded.add(e.port)
                logger.warning(f"⚠️  Attempt {attempt}/{attempts}: port {e.port} was taken at bind time")
                if attempt == attempts:
                    break
                found = self._service_for_port(e.port)
                if found is None:
                    raise
                service, index = found
                new = self.registry.reallocate(
                    self.allocation_key(service, index), e.port, self.project_root, exclude=excluded
                )
                self.compose.rewrite_ports({service: {e.port: new}})
        raise NoPortAvailable(
            f"Could not bind host ports after {attempts} attempts",
            {"project_path": str(self.project_root), "ports": sorted(excluded)},
        )

    def apply(self, operation: str, on_output: Optional[OutputSink] = None) -> StackDescriptor:
        """Run ``start``, ``stop`` or ``restart`` and return the new status."""
        if operation not in ("start", "stop", "restart"):
            raise ValueError(f"Unknown stack operation: {operation}")

        self.state = self.status().status
        if operation == "start" and self.state == StackStatus.RUNNING:
            logger.info("✅ Stack is already running")
            return self.status()
        if operation == "stop" and self.state == StackStatus.STOPPED:
            logger.info("Stack is already stopped")
            return self.status()
        if operation == "restart" and self.state not in (StackStatus.RUNNING, StackStatus.DEGRADED):
            raise StackStateError(
                "Stack is not running; start it instead of restarting",
                {"project_path": str(self.project_root), "status": self.state.value},
            )

        try:
            if operation in ("stop", "restart"):
                self._transition(StackStatus.STOPPING)
                logger.info("🛑 Stopping stack...")
                self.docker.down(on_output=on_output)
                self._transition(StackStatus.STOPPED)
            if operation in ("start", "restart"):
                self._transition(StackStatus.STARTING)
                logger.info("🚀 Starting stack...")
                self._start(on_output)
                self._transition(StackStatus.RUNNING)
        except KeyboardInterrupt:
            self._transition(StackStatus.DEGRADED)
            raise
        except WpSpinError:
            self._transition(StackStatus.DEGRADED)
            raise

        return self.status()

    def status(self) -> StackDescriptor:
        containers = self.docker.containers()
        ports_by_role: Dict[ContainerRole, List[int]] = {}
        for container in containers:
            if container.service:
                role = classify_container(container.service)
            else:
                role = classify_container(container.name, self.docker.project_name)
            ports = ports_by_role.setdefault(role, [])
            ports.extend(p for p in container.host_ports if p not in ports)

        running = [c for c in containers if c.is_running]
        if not containers or not running:
            status = StackStatus.STOPPED
        elif len(running) == len(containers):
            status = StackStatus.RUNNING
        else:
            status = StackStatus.DEGRADED

        return StackDescriptor(
            project_root=self.project_root,
            service_names=list(self.compose.services()),
            declared_ports=self.compose.declared_ports(),
            status=status,
            containers=containers,
            ports_by_role=ports_by_role,
        )
