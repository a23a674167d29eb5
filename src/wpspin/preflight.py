from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import psutil

from .docker_manager import detect_compose_command
from .exceptions import (
    PrerequisiteMissing,
    PrerequisiteNotRunning,
    ProbeUnavailable,
    ResourceInsufficient,
    WpSpinError,
)
from .port_prober import PortProber

__all__ = ["PreflightChecker", "PreflightReport"]

logger = logging.getLogger("wpspin.preflight")

_GIB = 1024 ** 3


@dataclass
class PreflightReport:
    ok: bool
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def pretty(self) -> str:
        lines: List[str] = []
        if self.errors:
            lines.append("[red]Errors:[/red]")
            lines += [f"  - {e}" for e in self.errors]
        if self.warnings:
            lines.append("[yellow]Warnings:[/yellow]")
            lines += [f"  - {w}" for w in self.warnings]
        if self.suggestions:
            lines.append("[cyan]Suggestions:[/cyan]")
            lines += [f"  - {s}" for s in self.suggestions]
        if not (self.errors or self.warnings or self.suggestions):
            lines.append("All preflight checks passed.")
        return "\n".join(lines)


def _existing_ancestor(path: Path) -> Path:
    current = Path(path).resolve()
    while not current.exists() and current != current.parent:
        current = current.parent
    return current


class PreflightChecker:
    """Host prerequisite checks run before touching a stack.

    The checks run in a fixed order because each one assumes the previous
    ones passed: there is no point asking the daemon anything when the
    ``docker`` binary is missing.
    """

    def __init__(
        self,
        project_dir: Path,
        min_disk_gb: float = 1.0,
        min_memory_gb: float = 2.0,
        prober: Optional[PortProber] = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.min_disk_gb = min_disk_gb
        self.min_memory_gb = min_memory_gb
        self.prober = prober or PortProber()
        logger.debug("PreflightChecker initialized")

    # Individual checks ------------------------------------------------

    def check_engine_installed(self) -> None:
        if shutil.which("docker") is None:
            raise PrerequisiteMissing(
                "Docker is not installed on your system.",
                {"hint": "Install Docker from https://www.docker.com/get-started"},
            )

    def check_engine_running(self) -> None:
        try:
            p = subprocess.run(["docker", "info"], capture_output=True, text=True, check=False, timeout=20)
        except subprocess.TimeoutExpired as e:
            raise PrerequisiteNotRunning(
                "Docker daemon did not answer within 20s.", {"hint": "Restart Docker and try again"}
            ) from e
        if p.returncode != 0:
            raise PrerequisiteNotRunning(
                "Docker daemon is not running on your system.",
                {"hint": "Start Docker (Docker Desktop or the docker service) and try again",
                 "stderr": p.stderr.strip()},
            )

    def check_compose_installed(self) -> None:
        detect_compose_command()

    def check_disk_space(self) -> None:
        target = _existing_ancestor(self.project_dir)
        free_gb = shutil.disk_usage(target).free / _GIB
        if free_gb < self.min_disk_gb:
            raise ResourceInsufficient(
                f"Less than {self.min_disk_gb:g}GB of disk space available ({free_gb:.2f}GB free).",
                {"project_path": str(self.project_dir), "hint": "Free up some disk space and try again"},
            )

    def check_memory(self) -> None:
        total_gb = psutil.virtual_memory().total / _GIB
        if total_gb < self.min_memory_gb:
            raise ResourceInsufficient(
                f"Less than {self.min_memory_gb:g}GB of RAM available ({total_gb:.2f}GB total).",
                {"hint": "Close other applications or add memory to the Docker VM"},
            )

    def _checks(self, check_resources: bool) -> List[Tuple[str, Callable[[], None]]]:
        checks: List[Tuple[str, Callable[[], None]]] = [
            ("engine binary", self.check_engine_installed),
            ("engine daemon", self.check_engine_running),
            ("compose tool", self.check_compose_installed),
        ]
        if check_resources:
            checks += [
                ("disk space", self.check_disk_space),
                ("memory", self.check_memory),
            ]
        return checks

    # Entry points -------------------------------------------------------

    def verify(self, check_resources: bool = False) -> None:
        """Run every check in order and raise the first failure."""
        for name, check in self._checks(check_resources):
            logger.debug(f"Checking {name}...")
            check()
        logger.info("✅ Prerequisites satisfied")

    def run(self, check_resources: bool = True) -> PreflightReport:
        """Collect every finding into a report instead of raising."""
        errors: List[str] = []
        warnings: List[str] = []
        suggestions: List[str] = []

        logger.info("Running preflight checks...")
        for name, check in self._checks(check_resources):
            try:
                check()
            except WpSpinError as e:
                errors.append(e.message)
                if e.details.get("hint"):
                    suggestions.append(e.details["hint"])
                # Later tool checks depend on earlier ones; resource checks do not
                if isinstance(e, (PrerequisiteMissing, PrerequisiteNotRunning)):
                    break

        for port in (80, 443):
            try:
                in_use = self.prober.is_in_use(port)
            except ProbeUnavailable:
                warnings.append("Port usage could not be checked (no readable socket table, ss, netstat or lsof).")
                suggestions.append("Install 'ss' (iproute2) or 'lsof' to enable port diagnostics.")
                break
            if in_use:
                warnings.append(f"Port {port} appears to be in use.")
                suggestions.append(
                    f"Custom domains need port {port}; this is expected if the wp-spin proxy is already running."
                )

        logger.info("Preflight checks completed.")
        return PreflightReport(ok=not errors, warnings=warnings, errors=errors, suggestions=suggestions)
