"""Snapshot commands."""

from typing import Annotated

import typer

from fcsaas.cli import client
from fcsaas.cli.output import console, format_snapshot_table, print_error, print_success

app = typer.Typer(help="Snapshot commands")


@app.command("list")
def list_snapshots(tenant_id: Annotated[str, typer.Argument(help="Tenant ID")]):
    """List a tenant's snapshots (oldest first)."""
    try:
        snapshots = client.list_snapshots(tenant_id)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)
    if not snapshots:
        console.print(f"[yellow]No snapshots for {tenant_id}.[/yellow]")
        return
    console.print(format_snapshot_table(snapshots))


@app.command("promote")
def promote(snapshot_id: Annotated[str, typer.Argument(help="Snapshot ID")]):
    """
    Make a snapshot the golden snapshot.

    Fresh tenants of the same tier boot from it when USE_GOLDEN_SNAPSHOT
    is enabled on the control plane.
    """
    try:
        info = client.promote_snapshot(snapshot_id)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Snapshot {snapshot_id} promoted to golden (tier {info.get('tier')})")
