"""
Console output helpers for the CLI (rich).
"""

import json

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fcsaas.cli import config as cli_config

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "creating": "cyan",
    "running": "green",
    "paused": "yellow",
    "stopped": "dim",
    "failed": "red",
    "healthy": "green",
    "unhealthy": "red",
    "unknown": "dim",
}


def print_error(message: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def styled(value: str | None) -> str:
    if value is None:
        return "-"
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def wants_json() -> bool:
    return cli_config.OUTPUT_FORMAT == "json"


def print_json(data) -> None:
    console.print_json(json.dumps(data, default=str))


# =============================================================================
# Formatters
# =============================================================================


def format_tenant_table(tenants: list[dict]) -> Table:
    table = Table(title="Tenants", header_style="bold")
    table.add_column("Tenant")
    table.add_column("Tier")
    table.add_column("Status")
    table.add_column("Guest IP")
    table.add_column("Device")
    table.add_column("PID", justify="right")
    table.add_column("Pending")

    for t in tenants:
        table.add_row(
            t["tenant_id"],
            t["tier"],
            styled(t["status"]),
            t.get("guest_addr") or "-",
            t.get("device_name") or "-",
            str(t["pid"]) if t.get("pid") else "-",
            t.get("pending_action") or "",
        )
    return table


def format_tenant_detail(tenant: dict) -> Panel:
    subnet = tenant.get("subnet") or {}
    lines = [
        f"[bold]Tier:[/bold] {tenant['tier']}",
        f"[bold]Status:[/bold] {styled(tenant['status'])}",
        f"[bold]Subnet:[/bold] {subnet.get('network', '-')}",
        f"[bold]Gateway:[/bold] {subnet.get('gateway_addr', '-')}",
        f"[bold]Guest IP:[/bold] {tenant.get('guest_addr') or '-'}",
        f"[bold]Device:[/bold] {tenant.get('device_name') or '-'}",
        f"[bold]PID:[/bold] {tenant.get('pid') or '-'}",
        f"[bold]Env keys:[/bold] {', '.join(tenant.get('env_keys') or []) or '-'}",
        f"[bold]Created:[/bold] {tenant.get('created_at')}",
        f"[bold]Updated:[/bold] {tenant.get('updated_at')}",
    ]
    if tenant.get("restored_from"):
        lines.append(f"[bold]Restored from:[/bold] {tenant['restored_from']}")
    if tenant.get("pending_action"):
        lines.append(f"[bold]Pending:[/bold] {tenant['pending_action']}")
    if tenant.get("last_error"):
        lines.append(f"[bold red]Last error:[/bold red] {tenant['last_error']}")
    return Panel("\n".join(lines), title=f"Tenant {tenant['tenant_id']}", expand=False)


def format_health(health: dict) -> Panel:
    def metric(value, unit=""):
        return "-" if value is None else f"{value:g}{unit}"

    lines = [
        f"[bold]Health:[/bold] {styled(health['status'])}",
        f"[bold]Memory used:[/bold] {metric(health.get('memory_used_mb'), ' MB')}",
        f"[bold]Load:[/bold] {metric(health.get('load_average'))}",
        f"[bold]Disk used:[/bold] {metric(health.get('disk_used_mb'), ' MB')}",
        f"[bold]Uptime:[/bold] {metric(health.get('uptime_seconds'), 's')}",
        f"[bold]Failures:[/bold] {health.get('consecutive_failures', 0)}",
        f"[bold]Observed:[/bold] {health.get('observed_at') or '-'}",
    ]
    return Panel("\n".join(lines), title=f"Health {health['tenant_id']}", expand=False)


def format_snapshot_table(snapshots: list[dict]) -> Table:
    table = Table(title="Snapshots", header_style="bold")
    table.add_column("Snapshot")
    table.add_column("Tenant")
    table.add_column("Tier")
    table.add_column("Created")
    table.add_column("Size", justify="right")

    for s in snapshots:
        table.add_row(
            s["snapshot_id"],
            s["tenant_id"],
            s.get("tier", "-"),
            str(s["created_at"]),
            f"{s['size_bytes'] / (1024 * 1024):.1f} MiB",
        )
    return table
