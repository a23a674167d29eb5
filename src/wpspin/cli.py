from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Optional, Tuple

import click
from rich.console import Console

from .certificates import CertificateIssuer
from .cli_helpers.display import (
    display_allocations,
    display_bindings,
    display_error,
    display_info,
    display_sites,
    display_stack_status,
    display_success,
    display_warning,
)
from .config import Settings, load_settings
from .domain_router import DomainRouter
from .exceptions import ConfigError, WpSpinError, format_error_message
from .hosts_manager import HostsManager
from .json_store import JsonStore
from .log_config import setup_logging
from .nginx_proxy import NginxProxy
from .port_registry import PortRegistry
from .preflight import PreflightChecker
from .site_directory import SiteDirectory
from .stack_controller import StackController
from .tunnel import TunnelManager

__all__ = ["cli"]

console = Console()
logger = logging.getLogger("wpspin.cli")


class WpSpinGroup(click.Group):
    """Turns every :class:`WpSpinError` into a red message and exit code 1."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except WpSpinError as e:
            logger.debug("Command failed", exc_info=True)
            display_error(format_error_message(e))
            hint = e.details.get("hint")
            if hint:
                display_error(f"Hint: {hint}")
            output = e.details.get("output") or getattr(e, "output", "")
            if output and ctx.obj and ctx.obj.get("verbose"):
                click.echo(output, err=True)
            sys.exit(1)


# ----------------------------------------------------------------------
# Builders shared by the commands
# ----------------------------------------------------------------------


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _registry(settings: Settings) -> PortRegistry:
    return PortRegistry(
        settings.port_registry_file,
        scan_window=settings.scan_window,
        lock_timeout=settings.lock_timeout,
    )


def _router(settings: Settings, registry: PortRegistry, manage_hosts: bool = False) -> DomainRouter:
    proxy = NginxProxy(settings.proxy_dir, settings.proxy_container, settings.proxy_image)
    return DomainRouter(
        settings.bindings_file,
        registry,
        proxy,
        CertificateIssuer(settings.certs_dir),
        hosts=HostsManager() if manage_hosts else None,
        lock_timeout=settings.lock_timeout,
    )


def _sites(settings: Settings) -> SiteDirectory:
    return SiteDirectory(settings.sites_file, settings.lock_timeout)


def _project_root(ctx: click.Context) -> Path:
    site = ctx.obj.get("site")
    return _sites(_settings(ctx)).resolve(site or Path.cwd())


def _controller(ctx: click.Context, hostname: Optional[str] = None) -> Tuple[StackController, PortRegistry]:
    settings = _settings(ctx)
    registry = _registry(settings)
    controller = StackController(_project_root(ctx), registry, hostname=hostname, settings=settings)
    return controller, registry


def _stream(line: str) -> None:
    click.echo(f"  {line}")


def _project_bindings(router: DomainRouter, root: Path):
    return [b for b in router.bindings() if b.project_path == str(root)]


# ----------------------------------------------------------------------
# Root group
# ----------------------------------------------------------------------


@click.group(cls=WpSpinGroup, context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--site",
    "-s",
    default=None,
    help="Registered site name or project directory. Defaults to the current directory.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging output.")
@click.pass_context
def cli(ctx: click.Context, site: Optional[str], verbose: bool) -> None:
    """wp-spin – local WordPress stacks with automatic ports and custom domains."""
    ctx.ensure_object(dict)
    settings = ctx.obj.get("settings") or load_settings()
    setup_logging(verbose, settings.log_file)
    logger.debug(f"🚀 wp-spin started - site: {site}, config: {settings.config_dir}")
    ctx.obj.update(settings=settings, site=site, verbose=verbose)


# ----------------------------------------------------------------------
# Stack lifecycle
# ----------------------------------------------------------------------


@cli.command()
@click.option("--hostname", "-d", default=None, help="Custom domain to route to WordPress (e.g. mysite.test).")
@click.option("--ssl", is_flag=True, help="Serve the custom domain over HTTPS (requires mkcert).")
@click.option("--manage-hosts", is_flag=True, help="Also write the domain into the hosts file (may need sudo).")
@click.pass_context
def start(ctx: click.Context, hostname: Optional[str], ssl: bool, manage_hosts: bool) -> None:
    """Start the WordPress environment."""
    if ssl and not hostname:
        raise click.UsageError("--ssl requires --hostname")
    controller, registry = _controller(ctx, hostname)

    console.print("[blue]Checking prerequisites…[/blue]")
    controller.verify_prerequisites()

    changes = controller.reconcile_ports()
    for service, (old, new) in changes.items():
        display_warning(f"Port {old} for {service} is in use, switched to {new}")

    console.print("[blue]Starting containers…[/blue]")
    descriptor = controller.apply("start", on_output=_stream)

    router = _router(_settings(ctx), registry, manage_hosts)
    if hostname:
        port = descriptor.primary_port or registry.lookup(hostname)
        if port is None:
            display_warning("No WordPress port found; domain was not configured.")
        else:
            router.bind(hostname, port, tls_requested=ssl, project_path=controller.project_root)
            display_success(f"Domain {hostname} -> localhost:{port}")

    display_success("WordPress environment started")
    display_stack_status(descriptor, _project_bindings(router, controller.project_root))


@cli.command()
@click.pass_context
def stop(ctx: click.Context) -> None:
    """Stop the WordPress environment."""
    controller, _ = _controller(ctx)
    controller.verify_prerequisites()
    controller.apply("stop", on_output=_stream)
    display_success("WordPress environment stopped")


@cli.command()
@click.pass_context
def restart(ctx: click.Context) -> None:
    """Restart the WordPress environment."""
    controller, registry = _controller(ctx)
    controller.verify_prerequisites()
    descriptor = controller.apply("restart", on_output=_stream)
    display_success("WordPress environment restarted")
    router = _router(_settings(ctx), registry)
    display_stack_status(descriptor, _project_bindings(router, controller.project_root))


@cli.command(name="status")
@click.pass_context
def status(ctx: click.Context) -> None:  # noqa: D401
    """Show the status of the WordPress environment."""
    controller, registry = _controller(ctx)
    controller.verify_prerequisites()
    descriptor = controller.status()
    router = _router(_settings(ctx), registry)
    display_stack_status(descriptor, _project_bindings(router, controller.project_root))


@cli.command()
@click.argument("service", required=False)
@click.option("--no-follow", is_flag=True, help="Print the current logs and exit.")
@click.pass_context
def logs(ctx: click.Context, service: Optional[str], no_follow: bool) -> None:
    """Show container logs (all services unless SERVICE is given)."""
    controller, _ = _controller(ctx)
    controller.docker.logs(service, follow=not no_follow)


@cli.command()
@click.pass_context
def doctor(ctx: click.Context) -> None:
    """Run all host checks and report every problem found."""
    settings = _settings(ctx)
    site = ctx.obj.get("site")
    root = _sites(settings).resolve(site) if site else Path.cwd()
    report = PreflightChecker(
        root, min_disk_gb=settings.min_disk_gb, min_memory_gb=settings.min_memory_gb
    ).run()
    console.print(report.pretty())
    if not report.ok:
        ctx.exit(1)


# ----------------------------------------------------------------------
# Domains
# ----------------------------------------------------------------------


@cli.group()
def domain() -> None:
    """Manage custom domains served by the reverse proxy."""


@domain.command(name="bind")
@click.argument("hostname")
@click.argument("port", type=click.IntRange(1, 65535))
@click.option("--ssl", is_flag=True, help="Serve over HTTPS (requires mkcert).")
@click.option("--manage-hosts", is_flag=True, help="Also write the domain into the hosts file.")
@click.option("--project", type=click.Path(file_okay=False), default=None, help="Owning project directory.")
@click.pass_context
def domain_bind(
    ctx: click.Context, hostname: str, port: int, ssl: bool, manage_hosts: bool, project: Optional[str]
) -> None:
    """Route HOSTNAME to localhost:PORT."""
    settings = _settings(ctx)
    router = _router(settings, _registry(settings), manage_hosts)
    binding = router.bind(hostname, port, tls_requested=ssl, project_path=project)
    scheme = "https" if binding.tls_enabled else "http"
    display_success(f"{scheme}://{binding.hostname} -> localhost:{binding.port}")


@domain.command(name="unbind")
@click.argument("hostname")
@click.option("--manage-hosts", is_flag=True, help="Also remove the domain from the hosts file.")
@click.pass_context
def domain_unbind(ctx: click.Context, hostname: str, manage_hosts: bool) -> None:
    """Remove the route for HOSTNAME."""
    settings = _settings(ctx)
    router = _router(settings, _registry(settings), manage_hosts)
    if router.unbind(hostname):
        display_success(f"Removed {hostname}")
    else:
        display_info(f"{hostname} was not bound")


@domain.command(name="list")
@click.pass_context
def domain_list(ctx: click.Context) -> None:
    """List custom domains."""
    settings = _settings(ctx)
    bindings = _router(settings, _registry(settings)).bindings()
    if not bindings:
        display_info("No custom domains configured")
        return
    display_bindings(bindings)


@domain.command(name="reconcile")
@click.pass_context
def domain_reconcile(ctx: click.Context) -> None:
    """Rebuild the domain records from the proxy configuration."""
    settings = _settings(ctx)
    report = _router(settings, _registry(settings)).reconcile()
    if not any(report.values()):
        display_success("Domain records already match the proxy configuration")
        return
    for action, hosts in report.items():
        for host in hosts:
            console.print(f"  {action}: {host}")


# ----------------------------------------------------------------------
# Ports
# ----------------------------------------------------------------------


@cli.group()
def ports() -> None:
    """Inspect and clean the port registry."""


@ports.command(name="list")
@click.pass_context
def ports_list(ctx: click.Context) -> None:
    """List port allocations."""
    allocations = _registry(_settings(ctx)).allocations()
    if not allocations:
        display_info("No ports allocated")
        return
    display_allocations(allocations)


@ports.command(name="gc")
@click.pass_context
def ports_gc(ctx: click.Context) -> None:
    """Release allocations and domains whose project directory no longer exists."""
    settings = _settings(ctx)
    registry = _registry(settings)
    pruned = _router(settings, registry).prune()
    released = registry.garbage_collect()
    if not (pruned or released):
        display_info("Nothing to release")
        return
    for host in pruned:
        console.print(f"  unbound: {host}")
    for key in released:
        console.print(f"  released: {key}")
    display_success(f"Released {len(released)} stale allocation(s), {len(pruned)} domain(s)")


@cli.command(name="ack-corrupt")
@click.pass_context
def ack_corrupt(ctx: click.Context) -> None:
    """Allow writes again after a corrupt store was moved aside."""
    settings = _settings(ctx)
    stores = [
        JsonStore(path, settings.lock_timeout)
        for path in (settings.port_registry_file, settings.bindings_file, settings.sites_file)
    ]
    acknowledged = [backup for store in stores for backup in store.acknowledge_corruption()]
    if not acknowledged:
        display_info("No corrupt stores to acknowledge")
        return
    for backup in acknowledged:
        console.print(f"  acknowledged: {backup}", soft_wrap=True)
    display_success("Writes are allowed again; the backups are kept for inspection")


# ----------------------------------------------------------------------
# Sites
# ----------------------------------------------------------------------


@cli.group()
def sites() -> None:
    """Manage named site aliases."""


@sites.command(name="list")
@click.pass_context
def sites_list(ctx: click.Context) -> None:
    """List registered sites."""
    found = _sites(_settings(ctx)).sites()
    if not found:
        display_info("No sites registered")
        return
    display_sites(found)


@sites.command(name="add")
@click.argument("name")
@click.argument("path", type=click.Path(file_okay=False), default=".")
@click.pass_context
def sites_add(ctx: click.Context, name: str, path: str) -> None:
    """Register PATH (default: current directory) under NAME."""
    directory = _sites(_settings(ctx))
    root = directory.resolve(path)
    alias = directory.add(name, root)
    display_success(f"Site {alias.name} -> {alias.path}")


@sites.command(name="remove")
@click.argument("name")
@click.pass_context
def sites_remove(ctx: click.Context, name: str) -> None:
    """Forget the site alias NAME (the directory is left alone)."""
    if not _sites(_settings(ctx)).remove(name):
        raise ConfigError(f"No site named {name!r}", {"name": name})
    display_success(f"Removed site {name}")


# ----------------------------------------------------------------------
# Sharing
# ----------------------------------------------------------------------


@cli.command()
@click.option("--port", "-p", type=click.IntRange(1, 65535), default=None, help="Local port (default: WordPress).")
@click.option("--domain", "domain_", default=None, help="Reserved ngrok domain.")
@click.option("--auth", envvar="NGROK_AUTH_TOKEN", default=None, help="ngrok auth token.")
@click.option("--cidr-allow", multiple=True, help="CIDR allowed to reach the tunnel (repeatable).")
@click.option("--cidr-deny", multiple=True, help="CIDR denied from the tunnel (repeatable).")
@click.pass_context
def share(
    ctx: click.Context,
    port: Optional[int],
    domain_: Optional[str],
    auth: Optional[str],
    cidr_allow: Tuple[str, ...],
    cidr_deny: Tuple[str, ...],
) -> None:
    """Share the site publicly through ngrok."""
    settings = _settings(ctx)
    if port is None:
        controller, _ = _controller(ctx)
        port = controller.status().primary_port
        if port is None:
            raise ConfigError("WordPress is not running; start it first or pass --port")
    url = TunnelManager(settings.ngrok_api_url).start(port, domain_, auth, cidr_allow, cidr_deny)
    display_success(f"Shared at {url}")


@cli.command()
@click.pass_context
def unshare(ctx: click.Context) -> None:
    """Stop sharing through ngrok."""
    if TunnelManager(_settings(ctx).ngrok_api_url).stop():
        display_success("Tunnel stopped")
    else:
        display_info("No active ngrok tunnel found")

