"""Pytest configuration and reusable fixtures for wp-spin tests."""
from __future__ import annotations

import shutil
import sys
import tempfile
from pathlib import Path
from types import GeneratorType
from typing import Iterable, Optional
from unittest.mock import Mock, patch

import docker
import pytest

# ---------------------------------------------------------------------------
# Test path setup – make sure `src/` is importable when tests are invoked from
# the project root (e.g. on CI) or inside an isolated filesystem.
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"

if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from wpspin.config import Settings  # noqa: E402
from wpspin.exceptions import ProbeUnavailable  # noqa: E402


COMPOSE_YAML = """\
services:
  wordpress:
    image: wordpress:latest
    ports:
      - "8080:80"
  db:
    image: mysql:8.0
    ports:
      - "3306:3306"
  phpmyadmin:
    image: phpmyadmin:latest
    ports:
      - "8081:80"
"""


class FakeProber:
    """Port prober answering from a fixed set of busy ports."""

    def __init__(self, busy: Iterable[int] = (), unavailable: Iterable[int] = ()) -> None:
        self.busy = set(busy)
        self.unavailable = set(unavailable)
        self.calls: list[int] = []

    def is_in_use(self, port: int) -> bool:
        self.calls.append(port)
        if port in self.unavailable:
            raise ProbeUnavailable(f"cannot probe {port}", {"port": port})
        return port in self.busy


def make_container(
    name: str,
    status: str = "running",
    ports: Optional[dict] = None,
    service: Optional[str] = None,
    project: Optional[str] = None,
) -> Mock:
    """A stand-in for a docker-py ``Container``.

    *ports* maps ``"80/tcp"`` to a host port number.
    """
    bindings = {
        spec: [{"HostIp": "0.0.0.0", "HostPort": str(host)}, {"HostIp": "::", "HostPort": str(host)}]
        for spec, host in (ports or {}).items()
    }
    labels = {}
    if service:
        labels["com.docker.compose.service"] = service
    if project:
        labels["com.docker.compose.project"] = project
    container = Mock()
    container.name = name
    container.status = status
    container.labels = labels
    container.attrs = {"NetworkSettings": {"Ports": bindings}}
    return container


# ---------------------------------------------------------------------------
# Generic fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def temp_dir() -> GeneratorType[Path, None, None]:
    """Return a temporary directory path that is cleaned up afterwards."""
    tmp_path = Path(tempfile.mkdtemp())
    try:
        yield tmp_path
    finally:
        shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a throwaway config directory."""
    return Settings(config_dir=tmp_path / ".wp-spin", lock_timeout=2.0)


@pytest.fixture()
def fake_prober() -> FakeProber:
    return FakeProber()


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    """A WordPress project directory with a compose file."""
    root = tmp_path / "myblog"
    root.mkdir()
    (root / "docker-compose.yml").write_text(COMPOSE_YAML, encoding="utf-8")
    return root


@pytest.fixture()
def mock_docker_client() -> GeneratorType[Mock, None, None]:
    """Patch ``docker.from_env`` so no real Docker daemon is required."""
    with patch("docker.from_env") as patched:
        client = Mock(spec=docker.DockerClient)
        client.containers = Mock()
        patched.return_value = client
        yield client


@pytest.fixture()
def prober_factory():
    return FakeProber


@pytest.fixture()
def container_factory():
    return make_container
