from collections import namedtuple

import psutil
import pytest

from wpspin.exceptions import ProbeUnavailable
from wpspin.port_prober import PortProber

pytestmark = pytest.mark.unit

Addr = namedtuple("Addr", "ip port")
Conn = namedtuple("Conn", "laddr status")


class DummyProc:
    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _deny(*_, **__):
    raise psutil.AccessDenied()


@pytest.fixture(autouse=True)
def _linux(monkeypatch):
    monkeypatch.setattr("wpspin.port_prober.platform.system", lambda: "Linux")


def test_listening_port_is_in_use(monkeypatch):
    conns = [
        Conn(Addr("0.0.0.0", 8080), psutil.CONN_LISTEN),
        Conn(Addr("127.0.0.1", 9000), psutil.CONN_ESTABLISHED),
    ]
    monkeypatch.setattr("wpspin.port_prober.psutil.net_connections", lambda kind: conns)

    prober = PortProber()
    assert prober.is_in_use(8080) is True
    # Established (client) sockets do not count as bound listeners
    assert prober.is_in_use(9000) is False
    assert prober.is_in_use(8081) is False


@pytest.mark.parametrize("port", [0, -1, 65536])
def test_out_of_range_port_rejected(port):
    with pytest.raises(ValueError):
        PortProber().is_in_use(port)


def test_falls_back_to_ss_when_socket_table_denied(monkeypatch):
    monkeypatch.setattr("wpspin.port_prober.psutil.net_connections", _deny)
    ss_out = (
        "LISTEN 0 4096 0.0.0.0:8080 0.0.0.0:*\n"
        "LISTEN 0 4096 [::]:3306 [::]:*\n"
    )

    def fake_run(args, *_, **__):
        assert args[0] == "ss"
        return DummyProc(0, ss_out)

    monkeypatch.setattr("wpspin.port_prober.subprocess.run", fake_run)
    prober = PortProber()
    assert prober.is_in_use(8080) is True
    assert prober.is_in_use(3306) is True
    assert prober.is_in_use(8081) is False


def test_falls_back_to_lsof_when_ss_and_netstat_missing(monkeypatch):
    monkeypatch.setattr("wpspin.port_prober.psutil.net_connections", _deny)

    def fake_run(args, *_, **__):
        if args[0] in {"ss", "netstat"}:
            raise FileNotFoundError()
        if args[2] == "-iTCP:8080":
            return DummyProc(0, "COMMAND PID USER\nnginx 12 root\n")
        return DummyProc(1, "", "")

    monkeypatch.setattr("wpspin.port_prober.subprocess.run", fake_run)
    prober = PortProber()
    assert prober.is_in_use(8080) is True
    assert prober.is_in_use(8081) is False


def test_probe_unavailable_when_no_tool_answers(monkeypatch):
    monkeypatch.setattr("wpspin.port_prober.psutil.net_connections", _deny)

    def fake_run(*_, **__):
        raise FileNotFoundError()

    monkeypatch.setattr("wpspin.port_prober.subprocess.run", fake_run)
    with pytest.raises(ProbeUnavailable) as exc:
        PortProber().is_in_use(8080)
    assert exc.value.details["port"] == 8080
