import json
import shutil
import threading
import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from wpspin.domain_router import DomainRouter, validate_hostname
from wpspin.exceptions import (
    DomainValidationError,
    PrerequisiteMissing,
    RegistryCorrupt,
    RouteActivationFailed,
)
from wpspin.nginx_proxy import NginxProxy
from wpspin.port_registry import PortRegistry, project_key

pytestmark = pytest.mark.unit


@pytest.fixture()
def registry(tmp_path: Path, fake_prober) -> PortRegistry:
    return PortRegistry(tmp_path / "ports.json", prober=fake_prober, lock_timeout=2.0)


@pytest.fixture()
def proxy(tmp_path: Path) -> NginxProxy:
    proxy = NginxProxy(tmp_path / "proxy", client=Mock())
    proxy.reload = Mock()
    proxy.is_running = Mock(return_value=True)
    return proxy


@pytest.fixture()
def certificates(tmp_path: Path) -> Mock:
    certs = Mock()
    certs.cert_path.side_effect = lambda host: tmp_path / "proxy" / "certs" / f"{host}.pem"
    return certs


@pytest.fixture()
def router(tmp_path: Path, registry, proxy, certificates) -> DomainRouter:
    return DomainRouter(tmp_path / "domains.json", registry, proxy, certificates, lock_timeout=2.0)


class TestValidation:
    @pytest.mark.parametrize("name, expected", [
        ("Blog.Test", "blog.test"),
        ("blog.test.", "blog.test"),
        ("my-site.local", "my-site.local"),
        ("localhost", "localhost"),
    ])
    def test_valid(self, name, expected):
        assert validate_hostname(name) == expected

    @pytest.mark.parametrize("name", [
        "", "-blog.test", "blog-.test", "blog..test", "bl_og.test", "a" * 64 + ".test", "x." * 127 + "test",
    ])
    def test_invalid(self, name):
        with pytest.raises(DomainValidationError):
            validate_hostname(name)

    def test_invalid_hostname_touches_nothing(self, router, proxy):
        with pytest.raises(DomainValidationError):
            router.bind("not a host", 8080)
        assert proxy.configured_routes() == {}
        assert router.bindings() == []

    def test_port_range(self, router):
        with pytest.raises(ValueError):
            router.bind("blog.test", 70000)


class TestBind:
    def test_bind_writes_config_then_record(self, router, proxy, registry, tmp_path):
        binding = router.bind("blog.test", 8080)

        assert binding.port == 8080 and not binding.tls_enabled
        assert proxy.configured_routes() == {"blog.test": {"port": 8080, "tls": False}}
        assert json.loads((tmp_path / "domains.json").read_text())["blog.test"]["port"] == 8080
        assert registry.lookup("blog.test") == 8080
        proxy.reload.assert_called_once()

    def test_rebind_leaves_single_route(self, router, proxy, registry):
        router.bind("blog.test", 8080)
        router.bind("blog.test", 9090)

        assert proxy.configured_routes() == {"blog.test": {"port": 9090, "tls": False}}
        assert [b.port for b in router.bindings()] == [9090]
        assert router.route_for("blog.test") == 9090
        assert registry.lookup("blog.test") == 9090

    def test_tls_issues_certificate(self, router, proxy, certificates):
        binding = router.bind("blog.test", 8080, tls_requested=True)

        certificates.ensure.assert_called_once_with("blog.test")
        assert binding.tls_enabled
        assert binding.certificate_ref.endswith("blog.test.pem")
        assert proxy.configured_routes()["blog.test"]["tls"] is True

    def test_missing_mkcert_aborts_before_config(self, router, proxy, certificates):
        certificates.ensure.side_effect = PrerequisiteMissing("mkcert missing")
        with pytest.raises(PrerequisiteMissing):
            router.bind("blog.test", 8080, tls_requested=True)
        assert proxy.configured_routes() == {}

    def test_reload_failure_restores_previous_route(self, router, proxy):
        router.bind("blog.test", 8080)
        proxy.reload.side_effect = RouteActivationFailed("nginx -t failed")

        with pytest.raises(RouteActivationFailed):
            router.bind("blog.test", 9090)

        assert proxy.configured_routes() == {"blog.test": {"port": 8080, "tls": False}}
        assert router.route_for("blog.test") == 8080

    def test_reload_failure_on_new_host_leaves_nothing(self, router, proxy):
        proxy.reload.side_effect = RouteActivationFailed("proxy down")
        with pytest.raises(RouteActivationFailed):
            router.bind("blog.test", 8080)
        assert proxy.configured_routes() == {}
        assert router.route_for("blog.test") is None

    def test_project_service_port_moves_to_hostname(self, router, registry, project_dir):
        key = project_key(project_dir, "wordpress")
        registry.assign(key, 8080, project_dir)

        router.bind("blog.test", 8080, project_path=project_dir)

        assert registry.lookup(key) is None
        assert registry.lookup("blog.test") == 8080
        assert router.bindings()[0].project_path == str(project_dir.resolve())

    def test_port_of_other_project_is_not_taken_over(self, router, registry, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        registry.assign(project_key(other, "wordpress"), 8080, other)

        router.bind("blog.test", 8080)

        assert registry.lookup("blog.test") is None
        assert registry.owner_of(8080) == project_key(other, "wordpress")
        assert router.route_for("blog.test") == 8080


    def test_concurrent_binds_keep_config_and_record_in_step(self, router, proxy):
        proxy.reload.side_effect = lambda: time.sleep(0.3)
        errors = []

        def bind(port, delay):
            time.sleep(delay)
            try:
                router.bind("blog.test", port)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=bind, args=(8001, 0)),
            threading.Thread(target=bind, args=(8002, 0.1)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert proxy.configured_routes()["blog.test"]["port"] == router.route_for("blog.test") == 8002

    def test_corrupt_bindings_store_aborts_before_config(self, router, proxy, tmp_path):
        (tmp_path / "domains.json").write_text("{not json")

        with pytest.raises(RegistryCorrupt):
            router.bind("blog.test", 8080)

        assert proxy.configured_routes() == {}
        proxy.reload.assert_not_called()


class TestUnbind:
    def test_unbind_removes_everything(self, router, proxy, registry):
        router.bind("blog.test", 8080)

        assert router.unbind("blog.test") is True

        assert proxy.configured_routes() == {}
        assert router.bindings() == []
        assert registry.lookup("blog.test") is None

    def test_unbind_unknown(self, router):
        assert router.unbind("nothing.test") is False

    def test_unbind_skips_reload_when_proxy_stopped(self, router, proxy):
        router.bind("blog.test", 8080)
        proxy.reload.reset_mock()
        proxy.is_running.return_value = False

        router.unbind("blog.test")

        proxy.reload.assert_not_called()

    def test_failed_reload_restores_config(self, router, proxy):
        router.bind("blog.test", 8080)
        proxy.reload.side_effect = RouteActivationFailed("boom")

        with pytest.raises(RouteActivationFailed):
            router.unbind("blog.test")

        assert proxy.configured_routes() == {"blog.test": {"port": 8080, "tls": False}}
        assert router.route_for("blog.test") == 8080


class TestReconcile:
    def test_config_directory_wins(self, router, proxy, registry, tmp_path):
        router.bind("keep.test", 8080)
        router.bind("stale.test", 8081)
        # Simulate a crash between config write and record write
        proxy.write_config("orphan.test", 8082)
        proxy.write_config("keep.test", 8090)
        proxy.remove_config("stale.test")

        report = router.reconcile()

        assert report == {"added": ["orphan.test"], "updated": ["keep.test"], "removed": ["stale.test"]}
        assert {b.hostname: b.port for b in router.bindings()} == {"keep.test": 8090, "orphan.test": 8082}
        assert registry.lookup("stale.test") is None
        assert registry.lookup("orphan.test") == 8082
        assert registry.lookup("keep.test") == 8090

    def test_legacy_bare_port_records_are_read(self, router, tmp_path):
        (tmp_path / "domains.json").write_text(json.dumps({"old.test": 8085}))
        assert router.route_for("old.test") == 8085


class TestPrune:
    def test_binding_of_removed_project_is_pruned(self, router, proxy, registry, project_dir):
        router.bind("blog.test", 8080, project_path=project_dir)
        router.bind("keep.test", 8081)
        shutil.rmtree(project_dir)

        assert router.prune() == ["blog.test"]

        assert [b.hostname for b in router.bindings()] == ["keep.test"]
        assert list(proxy.configured_routes()) == ["keep.test"]
        assert registry.lookup("blog.test") is None

    def test_existing_projects_are_kept(self, router, project_dir):
        router.bind("blog.test", 8080, project_path=project_dir)
        assert router.prune() == []
        assert router.route_for("blog.test") == 8080


def test_hosts_file_follows_bindings(tmp_path, registry, proxy, certificates):
    hosts = Mock()
    router = DomainRouter(tmp_path / "domains.json", registry, proxy, certificates, hosts=hosts)

    router.bind("blog.test", 8080)
    assert list(hosts.apply.call_args.args[0]) == ["blog.test"]

    hosts.apply.side_effect = PermissionError("denied")
    router.unbind("blog.test")
    assert router.bindings() == []
