import io
from pathlib import Path
from unittest.mock import Mock

import pytest
from docker.errors import DockerException

from wpspin.docker_manager import DockerManager, compose_project_name, detect_bind_conflict
from wpspin.exceptions import (
    ConfigError,
    PortBindConflict,
    PrerequisiteMissing,
    PrerequisiteNotRunning,
    StackOperationFailed,
)

pytestmark = pytest.mark.unit


class FakePopen:
    """Minimal ``subprocess.Popen`` replacement streaming canned output."""

    def __init__(self, output: str, returncode: int) -> None:
        self.stdout = io.StringIO(output)
        self._returncode = returncode

    def wait(self) -> int:
        return self._returncode


def _popen(monkeypatch, output: str = "", returncode: int = 0) -> list:
    calls: list = []

    def fake(cmd, **kwargs):
        calls.append(cmd)
        return FakePopen(output, returncode)

    monkeypatch.setattr("wpspin.docker_manager.subprocess.Popen", fake)
    return calls


@pytest.fixture()
def manager(project_dir: Path) -> DockerManager:
    return DockerManager(project_dir, client=Mock(), compose_command=["docker", "compose"])


def test_compose_project_name():
    assert compose_project_name(Path("/tmp/My Blog.site")) == "myblogsite"
    assert compose_project_name(Path("/tmp/_blog-1")) == "blog-1"


@pytest.mark.parametrize(
    "output, port",
    [
        ("Error: Bind for 0.0.0.0:8080 failed: port is already allocated", 8080),
        ("listen tcp 0.0.0.0:3306: bind: address already in use", 3306),
        ("Error starting userland proxy: listen tcp4 [::]:8081: bind: address already in use", 8081),
        ("some other failure", None),
    ],
)
def test_detect_bind_conflict(output, port):
    assert detect_bind_conflict(output) == port


def test_missing_compose_file_is_config_error(tmp_path: Path):
    with pytest.raises(ConfigError):
        DockerManager(tmp_path, client=Mock(), compose_command=["docker", "compose"])


def test_up_streams_output_and_builds_command(manager, monkeypatch):
    calls = _popen(monkeypatch, "Creating network\nStarted\n")
    lines: list[str] = []

    output = manager.up(on_output=lines.append)

    assert lines == ["Creating network", "Started"]
    assert "Started" in output
    assert calls[0] == [
        "docker", "compose", "-f", str(manager.compose_file), "-p", "myblog", "up", "-d",
    ]


def test_down_with_volumes(manager, monkeypatch):
    calls = _popen(monkeypatch)

    manager.down(remove_volumes=True)

    assert calls[0][-2:] == ["down", "-v"]
    assert not hasattr(manager, "restart")


def test_bind_failure_becomes_port_bind_conflict(manager, monkeypatch):
    _popen(monkeypatch, "Error response from daemon: Bind for 0.0.0.0:8080 failed: port is already allocated\n", 1)

    with pytest.raises(PortBindConflict) as exc:
        manager.up()
    assert exc.value.port == 8080


def test_other_failure_carries_output(manager, monkeypatch):
    _popen(monkeypatch, "no such image\n", 1)

    with pytest.raises(StackOperationFailed) as exc:
        manager.down()
    assert "no such image" in exc.value.output
    assert exc.value.details["returncode"] == 1


def test_missing_compose_binary(manager, monkeypatch):
    def fake(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr("wpspin.docker_manager.subprocess.Popen", fake)
    with pytest.raises(PrerequisiteMissing):
        manager.up()


def test_containers_filters_to_project(manager, container_factory):
    manager.client.containers.list.return_value = [
        container_factory("myblog-wordpress-1", ports={"80/tcp": 8080}, service="wordpress", project="myblog"),
        container_factory("myblog2-wordpress-1", ports={"80/tcp": 9080}, service="wordpress", project="myblog2"),
        container_factory("myblog_db_1", status="exited"),
    ]

    found = manager.containers()

    assert [c.name for c in found] == ["myblog-wordpress-1", "myblog_db_1"]
    manager.client.containers.list.assert_called_once_with(all=True, filters={"name": "myblog"})


def test_daemon_down_is_prerequisite_not_running(manager):
    manager.client.containers.list.side_effect = DockerException("connection refused")
    with pytest.raises(PrerequisiteNotRunning):
        manager.containers()


def test_client_created_lazily(project_dir, mock_docker_client):
    mgr = DockerManager(project_dir, compose_command=["docker", "compose"])
    assert mgr.client is mock_docker_client
