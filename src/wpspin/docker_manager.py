"""Wrapper around the compose CLI and Docker SDK used by wp-spin.

Lifecycle operations go through the compose CLI (``docker compose`` or the
standalone ``docker-compose``) because that is what the project's compose
file is written for. Container listing uses *docker-py*, which returns
structured name/status/port data instead of text to scrape.
"""
from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable, List, Optional

import docker
from docker.errors import DockerException

from .compose_file import find_compose_file
from .containers import ContainerInfo
from .exceptions import (
    ConfigError,
    ErrorHandler,
    PortBindConflict,
    PrerequisiteMissing,
    PrerequisiteNotRunning,
    StackOperationFailed,
)

logger = logging.getLogger("wpspin.docker_manager")

__all__ = ["DockerManager", "compose_project_name", "detect_bind_conflict"]

OutputSink = Callable[[str], None]

_BIND_CONFLICT = re.compile(
    r"(?:Bind for|listen tcp[46]?|exposing port TCP)\s+\[?[0-9a-fA-F.:]*\]?:(\d+)"
    r".*?(?:port is already allocated|address already in use|Only one usage)",
    re.IGNORECASE,
)
_INVALID_PROJECT_CHARS = re.compile(r"[^a-z0-9_-]")


def compose_project_name(project_dir: Path) -> str:
    """Compose's default project name for *project_dir*."""
    name = _INVALID_PROJECT_CHARS.sub("", Path(project_dir).name.lower())
    return name.lstrip("-_")


def detect_bind_conflict(output: str) -> Optional[int]:
    """Return the host port the engine failed to bind, if the output says so."""
    match = _BIND_CONFLICT.search(output)
    return int(match.group(1)) if match else None


def detect_compose_command() -> List[str]:
    """Detect available compose command."""
    if shutil.which("docker"):
        try:
            subprocess.run(
                ["docker", "compose", "version"], check=True, capture_output=True, timeout=15
            )
            return ["docker", "compose"]
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
            logger.debug("'docker compose' plugin not usable, trying docker-compose")
    if shutil.which("docker-compose"):
        return ["docker-compose"]
    raise PrerequisiteMissing(
        "Neither 'docker compose' nor 'docker-compose' is available. Please install Docker Compose.",
        {"hint": "https://docs.docker.com/compose/install/"},
    )


class DockerManager:
    """Orchestrate the compose lifecycle of one project."""

    def __init__(
        self,
        project_dir: Path,
        compose_file: Optional[Path] = None,
        client: Any = None,
        compose_command: Optional[List[str]] = None,
    ) -> None:
        self.error_handler = ErrorHandler(logger)
        self.project_dir = Path(project_dir).resolve()
        found = compose_file or find_compose_file(self.project_dir)
        if found is None:
            raise ConfigError(
                f"No compose file found in {self.project_dir}", {"project_path": str(self.project_dir)}
            )
        self.compose_file = Path(found)
        self.project_name = compose_project_name(self.project_dir)
        if not self.project_name:
            raise ConfigError(
                f"Cannot derive a compose project name from {self.project_dir}",
                {"project_path": str(self.project_dir)},
            )
        self._client = client
        self._compose_base = compose_command

        logger.debug("🐳 DockerManager initialized")
        logger.debug(f"📄 Compose file: {self.compose_file}")
        logger.debug(f"📁 Project directory: {self.project_dir}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                self.error_handler.log_and_raise(
                    PrerequisiteNotRunning, "Cannot connect to the Docker daemon", e
                )
        return self._client

    @property
    def compose_base(self) -> List[str]:
        if self._compose_base is None:
            self._compose_base = detect_compose_command()
            logger.info(f"🔧 Using compose command: {' '.join(self._compose_base)}")
        return self._compose_base

    def _compose_cmd(self, *args: str) -> List[str]:
        return [
            *self.compose_base,
            "-f",
            str(self.compose_file),
            "-p",
            self.project_name,
            *args,
        ]

    def run_compose(self, *args: str, on_output: Optional[OutputSink] = None) -> str:
        """Run a compose subcommand, streaming its combined output.

        Output is passed through line by line and otherwise only inspected
        for a host-port bind failure.
        """
        cmd = self._compose_cmd(*args)
        logger.debug(f"🔨 Running command: {' '.join(cmd)}")
        captured: List[str] = []
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=self.project_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise PrerequisiteMissing(
                f"Compose executable not found: {cmd[0]}", {"command": " ".join(cmd)}
            ) from e

        with proc.stdout:  # type: ignore[union-attr]
            for line in proc.stdout:
                captured.append(line)
                if on_output is not None:
                    on_output(line.rstrip("\n"))
        returncode = proc.wait()
        output = "".join(captured)

        if returncode != 0:
            details = {
                "command": " ".join(cmd),
                "returncode": returncode,
                "project_path": str(self.project_dir),
            }
            port = detect_bind_conflict(output)
            if port is not None:
                logger.warning(f"⚠️  Engine could not bind host port {port}")
                raise PortBindConflict(f"Host port {port} is already in use", port=port, details=details)
            logger.error(f"❌ compose {args[0]} failed with exit code {returncode}")
            raise StackOperationFailed(
                f"docker compose {args[0]} failed (exit code {returncode})", output=output, details=details
            )

        logger.debug(f"✅ Command completed successfully: compose {args[0]}")
        return output

    # ------------------------------------------------------------------
    # Compose wrappers
    # ------------------------------------------------------------------

    def up(self, on_output: Optional[OutputSink] = None) -> str:
        return self.run_compose("up", "-d", on_output=on_output)

    def down(self, *, remove_volumes: bool = False, on_output: Optional[OutputSink] = None) -> str:
        args = ["down", "-v"] if remove_volumes else ["down"]
        return self.run_compose(*args, on_output=on_output)

    def logs(self, service: Optional[str] = None, *, follow: bool = True) -> None:
        cmd = self._compose_cmd("logs")
        if follow:
            cmd.append("-f")
        if service:
            cmd.append(service)
        subprocess.run(cmd, cwd=self.project_dir)  # noqa: S603 – CLI pass-through

    # ------------------------------------------------------------------
    # Engine queries
    # ------------------------------------------------------------------

    def _belongs_to_project(self, container: Any) -> bool:
        labels = getattr(container, "labels", None) or {}
        if labels.get("com.docker.compose.project") == self.project_name:
            return True
        name = container.name.lower()
        return name.startswith(self.project_name + "-") or name.startswith(self.project_name + "_")

    def containers(self) -> List[ContainerInfo]:
        """All containers (running or not) belonging to this project."""
        try:
            found = self.client.containers.list(all=True, filters={"name": self.project_name})
        except DockerException as e:
            self.error_handler.log_and_raise(
                PrerequisiteNotRunning,
                "Failed to list containers from the Docker daemon",
                e,
                {"project_path": str(self.project_dir)},
            )
        return [ContainerInfo.from_container(c) for c in found if self._belongs_to_project(c)]
