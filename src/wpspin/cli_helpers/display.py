"""
Display helper functions for the wp-spin CLI
"""

from typing import Iterable, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..containers import ContainerRole
from ..domain_router import DomainBinding
from ..port_registry import PortAllocation
from ..site_directory import SiteAlias
from ..stack_controller import StackDescriptor, StackStatus

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    StackStatus.RUNNING: "green",
    StackStatus.STOPPED: "dim",
    StackStatus.DEGRADED: "yellow",
}

_ROLE_LABELS = {
    ContainerRole.PRIMARY: "WordPress",
    ContainerRole.ADMIN_UI: "phpMyAdmin",
    ContainerRole.DATABASE: "Database",
    ContainerRole.AUXILIARY: "Auxiliary",
    ContainerRole.UNKNOWN: "Other",
}


def display_stack_status(descriptor: StackDescriptor, bindings: Optional[List[DomainBinding]] = None) -> None:
    """Pretty-print the containers of a stack and the URLs to reach it."""
    style = _STATUS_STYLE.get(descriptor.status, "white")
    console.print(f"\n[bold]{descriptor.project_root}[/bold]: [{style}]{descriptor.status.value}[/{style}]")

    if descriptor.containers:
        table = Table(title="Containers", header_style="bold magenta")
        table.add_column("Container", style="cyan", no_wrap=True)
        table.add_column("Service", style="blue")
        table.add_column("Status", style="green")
        table.add_column("Ports", style="yellow")
        for container in descriptor.containers:
            ports = ", ".join(f"{p.host_port}->{p.container_port}" for p in container.ports) or "-"
            table.add_row(container.name, container.service or "-", container.status, ports)
        console.print(table)

    if descriptor.status == StackStatus.STOPPED:
        return

    primary = descriptor.primary_port
    if primary:
        console.print(f"  WordPress:  [cyan]http://localhost:{primary}[/cyan]")
        console.print(f"  Admin:      [cyan]http://localhost:{primary}/wp-admin[/cyan]")
    for role in (ContainerRole.ADMIN_UI, ContainerRole.DATABASE):
        for port in descriptor.ports_for(role):
            label = f"{_ROLE_LABELS[role]}:"
            target = f"http://localhost:{port}" if role == ContainerRole.ADMIN_UI else f"localhost:{port}"
            console.print(f"  {label:<11} [cyan]{target}[/cyan]")
    for binding in bindings or []:
        scheme = "https" if binding.tls_enabled else "http"
        console.print(f"  Domain:     [cyan]{scheme}://{binding.hostname}[/cyan]")


def display_allocations(allocations: Iterable[PortAllocation]) -> None:
    table = Table(title="Port Allocations", header_style="bold magenta")
    table.add_column("Port", style="green", justify="right")
    table.add_column("Key", style="cyan")
    table.add_column("Project", style="yellow")
    table.add_column("Stale", style="red")
    for allocation in allocations:
        table.add_row(
            str(allocation.port),
            allocation.key,
            allocation.project_path or "-",
            "yes" if allocation.is_stale else "",
        )
    console.print(table)


def display_bindings(bindings: Iterable[DomainBinding]) -> None:
    table = Table(title="Domains", header_style="bold magenta")
    table.add_column("Hostname", style="cyan", no_wrap=True)
    table.add_column("Port", style="green", justify="right")
    table.add_column("TLS", style="blue")
    table.add_column("Project", style="yellow")
    for binding in bindings:
        table.add_row(
            binding.hostname,
            str(binding.port),
            "yes" if binding.tls_enabled else "no",
            binding.project_path or "-",
        )
    console.print(table)


def display_sites(sites: Iterable[SiteAlias]) -> None:
    table = Table(title="Sites", header_style="bold magenta")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Path", style="yellow")
    table.add_column("Created", style="dim")
    for site in sites:
        path = site.path if site.exists else f"{site.path} [red](missing)[/red]"
        table.add_row(site.name, path, site.created_at or "-")
    console.print(table)


def display_success(message: str):
    """Display success message"""
    console.print(f"[green]✅ {message}[/green]")


def display_warning(message: str):
    """Display warning message"""
    console.print(f"[yellow]⚠️  {message}[/yellow]")


def display_error(message: str):
    """Display error message on stderr"""
    err_console.print(f"[red]❌ {escape(message)}[/red]", soft_wrap=True)


def display_info(message: str):
    """Display info message"""
    console.print(f"[blue]ℹ️  {message}[/blue]")
