"""The shared nginx reverse-proxy container behind custom domains.

Per-hostname server blocks live in ``conf.d/<hostname>.conf`` on the host
and are mounted read-only into the ``wp-spin-nginx-proxy`` container. The
config directory is the authority on which routes exist; the container is
only told to re-read it.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import docker
from docker.errors import DockerException, NotFound

from .exceptions import ErrorHandler, PrerequisiteNotRunning, RouteActivationFailed, handle_errors

logger = logging.getLogger("wpspin.nginx_proxy")

__all__ = ["NginxProxy", "NGINX_CONF"]

CONTAINER_CERTS_DIR = "/etc/nginx/certs"

NGINX_CONF = """\
events {
    worker_connections 1024;
}

http {
    include       /etc/nginx/mime.types;
    default_type  application/octet-stream;

    log_format  main  '$remote_addr - $remote_user [$time_local] "$request" '
                      '$status $body_bytes_sent "$http_referer" '
                      '"$http_user_agent" "$http_x_forwarded_for"';

    access_log  /var/log/nginx/access.log  main;
    error_log   /var/log/nginx/error.log;

    sendfile        on;
    keepalive_timeout  65;
    client_max_body_size 64m;

    include /etc/nginx/conf.d/*.conf;
}
"""

_HTTP_TEMPLATE = """\
server {{
    listen 80;
    server_name {hostname};

    location / {{
        proxy_pass http://host.docker.internal:{port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}
}}
"""

_TLS_TEMPLATE = """\
server {{
    listen 80;
    server_name {hostname};
    return 301 https://$server_name$request_uri;
}}

server {{
    listen 443 ssl;
    server_name {hostname};
    ssl_certificate {cert};
    ssl_certificate_key {key};
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_ciphers HIGH:!aNULL:!MD5;

    location / {{
        proxy_pass http://host.docker.internal:{port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto https;
        proxy_set_header X-Forwarded-Host $host;
        proxy_set_header X-Forwarded-Port 443;
    }}
}}
"""

_PROXY_PASS = re.compile(r"proxy_pass\s+http://host\.docker\.internal:(\d+)\s*;")
_TLS_LISTEN = re.compile(r"listen\s+443\s+ssl")


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            fp.write(content)
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class NginxProxy:
    """Config files plus the container that serves them."""

    def __init__(
        self,
        proxy_dir: Path,
        container_name: str = "wp-spin-nginx-proxy",
        image: str = "nginx:stable",
        client: Any = None,
    ) -> None:
        self.proxy_dir = Path(proxy_dir)
        self.conf_dir = self.proxy_dir / "conf.d"
        self.certs_dir = self.proxy_dir / "certs"
        self.nginx_conf = self.proxy_dir / "nginx.conf"
        self.container_name = container_name
        self.image = image
        self._client = client
        self.error_handler = ErrorHandler(logger)

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

    # ------------------------------------------------------------------
    # Config files
    # ------------------------------------------------------------------

    def config_path(self, hostname: str) -> Path:
        return self.conf_dir / f"{hostname}.conf"

    def render(self, hostname: str, port: int, tls: bool = False) -> str:
        if tls:
            return _TLS_TEMPLATE.format(
                hostname=hostname,
                port=port,
                cert=f"{CONTAINER_CERTS_DIR}/{hostname}.pem",
                key=f"{CONTAINER_CERTS_DIR}/{hostname}-key.pem",
            )
        return _HTTP_TEMPLATE.format(hostname=hostname, port=port)

    def read_config(self, hostname: str) -> Optional[str]:
        try:
            return self.config_path(hostname).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write_config(self, hostname: str, port: int, tls: bool = False) -> Optional[str]:
        """Replace the hostname's server block; returns the previous content."""
        previous = self.read_config(hostname)
        _atomic_write(self.config_path(hostname), self.render(hostname, port, tls))
        logger.debug(f"📝 Wrote proxy config for {hostname} -> {port}")
        return previous

    def remove_config(self, hostname: str) -> Optional[str]:
        """Delete the hostname's server block; returns what was there."""
        previous = self.read_config(hostname)
        self.config_path(hostname).unlink(missing_ok=True)
        return previous

    def restore_config(self, hostname: str, previous: Optional[str]) -> None:
        """Put back content returned by :meth:`write_config`/:meth:`remove_config`."""
        if previous is None:
            self.config_path(hostname).unlink(missing_ok=True)
        else:
            _atomic_write(self.config_path(hostname), previous)
        logger.info(f"↩️  Restored previous proxy config for {hostname}")

    def configured_routes(self) -> Dict[str, Dict[str, Any]]:
        """``{hostname: {"port": int, "tls": bool}}`` parsed from ``conf.d``."""
        routes: Dict[str, Dict[str, Any]] = {}
        if not self.conf_dir.is_dir():
            return routes
        for conf in sorted(self.conf_dir.glob("*.conf")):
            content = conf.read_text(encoding="utf-8")
            match = _PROXY_PASS.search(content)
            if not match:
                logger.warning(f"⚠️  No upstream port found in {conf}, ignoring")
                continue
            routes[conf.stem] = {"port": int(match.group(1)), "tls": bool(_TLS_LISTEN.search(content))}
        return routes

    @handle_errors(RouteActivationFailed, logger)
    def ensure_layout(self) -> None:
        self.conf_dir.mkdir(parents=True, exist_ok=True)
        self.certs_dir.mkdir(parents=True, exist_ok=True)
        if not self.nginx_conf.exists():
            _atomic_write(self.nginx_conf, NGINX_CONF)
            logger.info(f"📄 Created {self.nginx_conf}")

    # ------------------------------------------------------------------
    # Container
    # ------------------------------------------------------------------

    def _get_container(self) -> Optional[Any]:
        try:
            return self.client.containers.get(self.container_name)
        except NotFound:
            return None

    def is_running(self) -> bool:
        try:
            container = self._get_container()
        except (DockerException, PrerequisiteNotRunning):
            return False
        return container is not None and container.status == "running"

    def ensure_running(self) -> Any:
        """Start the proxy container, creating it on first use."""
        self.ensure_layout()
        try:
            container = self._get_container()
            if container is None:
                logger.info(f"🚀 Starting reverse proxy container {self.container_name}")
                return self.client.containers.run(
                    self.image,
                    name=self.container_name,
                    detach=True,
                    ports={"80/tcp": 80, "443/tcp": 443},
                    volumes={
                        str(self.nginx_conf): {"bind": "/etc/nginx/nginx.conf", "mode": "ro"},
                        str(self.conf_dir): {"bind": "/etc/nginx/conf.d", "mode": "ro"},
                        str(self.certs_dir): {"bind": CONTAINER_CERTS_DIR, "mode": "ro"},
                    },
                    extra_hosts={"host.docker.internal": "host-gateway"},
                    restart_policy={"Name": "unless-stopped"},
                )
            if container.status != "running":
                logger.info(f"▶️  Restarting reverse proxy container {self.container_name}")
                container.start()
            return container
        except DockerException as e:
            self.error_handler.log_and_raise(
                RouteActivationFailed,
                f"Could not start reverse proxy container {self.container_name}",
                e,
                {"container": self.container_name},
            )

    def _exec(self, container: Any, *cmd: str) -> str:
        try:
            result = container.exec_run(list(cmd))
        except DockerException as e:
            self.error_handler.log_and_raise(
                RouteActivationFailed, f"Failed to run {' '.join(cmd)} in {self.container_name}", e
            )
        output = result.output.decode("utf-8", "replace") if isinstance(result.output, bytes) else str(result.output or "")
        if result.exit_code != 0:
            logger.error(f"❌ {' '.join(cmd)} failed in {self.container_name}")
            raise RouteActivationFailed(
                f"Reverse proxy rejected the configuration ({' '.join(cmd)})",
                {"container": self.container_name, "output": output.strip()},
            )
        return output

    def reload(self) -> None:
        """Validate the config tree and reload nginx, starting it if needed."""
        container = self.ensure_running()
        self._exec(container, "nginx", "-t")
        self._exec(container, "nginx", "-s", "reload")
        logger.info("🔄 Reverse proxy reloaded")
