"""Tenant management commands."""

from typing import Annotated

import typer

from fcsaas.cli import client
from fcsaas.cli.output import (
    console,
    format_health,
    format_tenant_detail,
    format_tenant_table,
    print_error,
    print_json,
    print_success,
    wants_json,
)
from fcsaas.models.enums import Tier

app = typer.Typer(help="Tenant management commands")


def parse_env(pairs: list[str] | None) -> dict[str, str]:
    """
    Parse ``KEY=VALUE`` options into a dict.

    Raises:
        typer.BadParameter: If an item has no ``=`` or an empty key.
    """
    env = {}
    for item in pairs or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got {item!r}")
        env[key] = value
    return env


def _show_tenant(tenant: dict) -> None:
    if wants_json():
        print_json(tenant)
    else:
        console.print(format_tenant_detail(tenant))


@app.command("list")
def list_tenants():
    """List tenants."""
    try:
        tenants = client.list_tenants()
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if wants_json():
        print_json(tenants)
        return
    if not tenants:
        console.print("[yellow]No tenants.[/yellow]")
        return
    console.print(format_tenant_table(tenants))


@app.command("get")
def get_tenant(
    tenant_id: Annotated[str, typer.Argument(help="Tenant ID")],
):
    """Show one tenant."""
    try:
        _show_tenant(client.get_tenant(tenant_id))
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("create")
def create_tenant(
    tenant_id: Annotated[str, typer.Argument(help="Tenant ID")],
    tier: Annotated[Tier, typer.Option("--tier", "-t", help="Resource tier")] = Tier.FREE,
    env: Annotated[
        list[str] | None,
        typer.Option("--env", "-e", help="Environment variable KEY=VALUE (repeatable)"),
    ] = None,
    restore_from: Annotated[
        str | None,
        typer.Option("--restore-from", help="Snapshot id or 'golden' to restore"),
    ] = None,
):
    """Create a tenant and boot its microVM."""
    env_vars = parse_env(env)
    try:
        with console.status(f"Creating tenant {tenant_id}..."):
            tenant = client.create_tenant(tenant_id, tier.value, env_vars, restore_from)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)

    print_success(f"Tenant {tenant_id} running at {tenant.get('guest_addr')}")
    _show_tenant(tenant)


@app.command("delete")
def delete_tenant(
    tenant_id: Annotated[str, typer.Argument(help="Tenant ID")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
):
    """Destroy a tenant and everything it owns."""
    if not yes:
        typer.confirm(f"Delete tenant {tenant_id} and its disks?", abort=True)
    try:
        client.delete_tenant(tenant_id)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Tenant {tenant_id} deleted")


def _action(tenant_id: str, action: str, from_snapshot: str | None = None) -> dict:
    try:
        with console.status(f"{action.capitalize()} {tenant_id}..."):
            return client.tenant_action(tenant_id, action, from_snapshot)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("start")
def start_tenant(
    tenant_id: Annotated[str, typer.Argument(help="Tenant ID")],
    from_snapshot: Annotated[
        str | None,
        typer.Option("--from-snapshot", "-s", help="Snapshot id, 'latest' or 'golden'"),
    ] = None,
):
    """Boot a stopped or failed tenant."""
    tenant = _action(tenant_id, "start", from_snapshot)
    print_success(f"Tenant {tenant_id} {tenant['status']}")


@app.command("stop")
def stop_tenant(tenant_id: Annotated[str, typer.Argument(help="Tenant ID")]):
    """Shut a tenant's guest down."""
    tenant = _action(tenant_id, "stop")
    print_success(f"Tenant {tenant_id} {tenant['status']}")


@app.command("pause")
def pause_tenant(tenant_id: Annotated[str, typer.Argument(help="Tenant ID")]):
    tenant = _action(tenant_id, "pause")
    print_success(f"Tenant {tenant_id} {tenant['status']}")


@app.command("resume")
def resume_tenant(tenant_id: Annotated[str, typer.Argument(help="Tenant ID")]):
    tenant = _action(tenant_id, "resume")
    print_success(f"Tenant {tenant_id} {tenant['status']}")


@app.command("snapshot")
def snapshot_tenant(tenant_id: Annotated[str, typer.Argument(help="Tenant ID")]):
    """Snapshot a paused tenant; it stays paused."""
    snapshot = _action(tenant_id, "snapshot")
    print_success(f"Snapshot {snapshot['snapshot_id']} captured for {tenant_id}")


@app.command("health")
def tenant_health(tenant_id: Annotated[str, typer.Argument(help="Tenant ID")]):
    """Show the latest health record of a tenant's guest."""
    try:
        health = client.get_health(tenant_id)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)
    if wants_json():
        print_json(health)
    else:
        console.print(format_health(health))


@app.command("env")
def set_env(
    tenant_id: Annotated[str, typer.Argument(help="Tenant ID")],
    env: Annotated[
        list[str] | None,
        typer.Argument(help="KEY=VALUE pairs replacing the current environment"),
    ] = None,
):
    """Replace a tenant's environment variables (applied on next boot)."""
    env_vars = parse_env(env)
    try:
        tenant = client.update_env(tenant_id, env_vars)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)
    keys = ", ".join(tenant.get("env_keys") or []) or "(none)"
    print_success(f"Environment of {tenant_id} updated: {keys}")
