from unittest.mock import Mock

import pytest
import requests

from wpspin.exceptions import PrerequisiteMissing, TunnelError
from wpspin.tunnel import TunnelManager

pytestmark = pytest.mark.unit

TUNNELS = {
    "tunnels": [
        {"public_url": "http://abc.ngrok.app", "config": {"addr": "http://localhost:8080"}},
        {"public_url": "https://abc.ngrok.app", "config": {"addr": "http://localhost:8080"}},
        {"public_url": "https://other.ngrok.app", "config": {"addr": "http://localhost:9000"}},
    ]
}


def _response(payload):
    response = Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


@pytest.fixture()
def session() -> Mock:
    return Mock(spec=requests.Session)


@pytest.fixture()
def manager(session) -> TunnelManager:
    return TunnelManager(session=session, start_timeout=1.0, poll_interval=0)


def test_build_command(manager):
    cmd = manager.build_command(
        8080, domain="blog.ngrok.app", auth_token="tok", cidr_allow=["1.2.3.0/24", "10.0.0.0/8"]
    )
    assert cmd == [
        "ngrok", "http", "8080",
        "--authtoken", "tok",
        "--domain", "blog.ngrok.app",
        "--allow-cidr", "1.2.3.0/24,10.0.0.0/8",
    ]


def test_public_url_prefers_https_and_matches_port(manager, session):
    session.get.return_value = _response(TUNNELS)
    assert manager.public_url(8080) == "https://abc.ngrok.app"
    assert manager.public_url(9000) == "https://other.ngrok.app"
    assert manager.public_url(1234) is None


def test_api_down_means_not_running(manager, session):
    session.get.side_effect = requests.exceptions.ConnectionError("refused")
    assert manager.is_running() is False
    assert manager.public_url() is None


def test_start_refuses_when_already_running(manager, session):
    session.get.return_value = _response({"tunnels": []})
    with pytest.raises(TunnelError):
        manager.start(8080)


def test_start_requires_ngrok(manager, session, monkeypatch):
    session.get.side_effect = requests.exceptions.ConnectionError("refused")
    monkeypatch.setattr("wpspin.tunnel.shutil.which", lambda _: None)
    with pytest.raises(PrerequisiteMissing):
        manager.start(8080)


def test_start_waits_for_public_url(manager, session, monkeypatch):
    session.get.side_effect = [
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.ConnectionError("still booting"),
        _response(TUNNELS),
    ]
    process = Mock()
    process.poll.return_value = None
    popen = Mock(return_value=process)
    monkeypatch.setattr("wpspin.tunnel.shutil.which", lambda _: "/usr/bin/ngrok")
    monkeypatch.setattr("wpspin.tunnel.subprocess.Popen", popen)

    assert manager.start(8080) == "https://abc.ngrok.app"
    assert popen.call_args.args[0] == ["ngrok", "http", "8080"]


def test_start_reports_early_exit(manager, session, monkeypatch):
    session.get.side_effect = requests.exceptions.ConnectionError("refused")
    process = Mock()
    process.poll.return_value = 1
    monkeypatch.setattr("wpspin.tunnel.shutil.which", lambda _: "/usr/bin/ngrok")
    monkeypatch.setattr("wpspin.tunnel.subprocess.Popen", Mock(return_value=process))

    with pytest.raises(TunnelError) as exc:
        manager.start(8080)
    assert "code 1" in exc.value.message


def test_stop_when_nothing_runs(manager, session):
    session.get.side_effect = requests.exceptions.ConnectionError("refused")
    assert manager.stop() is False


def test_stop_external_process(manager, session, monkeypatch):
    session.get.side_effect = [_response({"tunnels": []}), requests.exceptions.ConnectionError("gone")]
    run = Mock()
    monkeypatch.setattr("wpspin.tunnel.subprocess.run", run)
    monkeypatch.setattr("wpspin.tunnel.os.name", "posix")

    assert manager.stop() is True
    assert run.call_args.args[0] == ["pkill", "-f", "ngrok"]


def test_stop_fails_loudly_when_ngrok_survives(manager, session, monkeypatch):
    session.get.return_value = _response({"tunnels": []})
    monkeypatch.setattr("wpspin.tunnel.subprocess.run", Mock())
    with pytest.raises(TunnelError):
        manager.stop()
