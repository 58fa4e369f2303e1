"""
fcsaas command line entry point.

Usage:
    fcsaas [OPTIONS] COMMAND [ARGS]...

Commands:
    serve     Run the control plane (admin API + tenant proxy)
    tenant    Tenant management
    snapshot  Snapshot management
    status    Control plane status
"""

from typing import Annotated

import typer

from fcsaas.cli import config as cli_config
from fcsaas.cli.commands import snapshot, tenant
from fcsaas.cli.output import console, print_error
from fcsaas.models.enums import LogLevel, NetworkBackend

app = typer.Typer(
    name="fcsaas",
    help="Multi-tenant Firecracker control plane",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.add_typer(tenant.app, name="tenant", help="Tenant management")
app.add_typer(snapshot.app, name="snapshot", help="Snapshot management")


@app.callback()
def main(
    host: Annotated[
        str | None,
        typer.Option("--host", "-H", help="Control plane address", envvar="FCSAAS_HOST"),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", "-P", help="Control plane port", envvar="FCSAAS_PORT"),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: table|json"),
    ] = "table",
):
    """Manage tenants of a firecracker-saas control plane."""
    if host:
        cli_config.HOST_ADDRESS = host
    if port:
        cli_config.HOST_PORT = port
    cli_config.OUTPUT_FORMAT = output_format


@app.command("serve")
def serve(
    bind: Annotated[str | None, typer.Option("--bind", help="Bind IP")] = None,
    listen_port: Annotated[
        int | None, typer.Option("--listen-port", help="Listener port")
    ] = None,
    subnet_pool: Annotated[
        str | None, typer.Option("--subnet-pool", help="Tenant subnet pool CIDR")
    ] = None,
    db_file: Annotated[str | None, typer.Option("--db", help="SQLite database file")] = None,
    network_backend: Annotated[
        NetworkBackend | None,
        typer.Option("--network-backend", help="linux or noop (no root needed)"),
    ] = None,
    log_level: Annotated[
        LogLevel | None, typer.Option("--log-level", help="Logging level")
    ] = None,
):
    """
    Run the control plane.

    Settings come from FCSAAS_* environment variables, then these options.
    """
    from fcsaas.host import app as host_app
    from fcsaas.host.config import apply_env_overrides, config

    try:
        apply_env_overrides(config)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(2)

    overrides = {
        "BIND_IP": bind,
        "BIND_PORT": listen_port,
        "SUBNET_POOL": subnet_pool,
        "DB_FILE": db_file,
        "NETWORK_BACKEND": network_backend,
        "LOG_LEVEL": log_level,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)

    try:
        config.get_subnet_pool()
    except ValueError as e:
        print_error(f"Invalid subnet pool: {e}")
        raise typer.Exit(2)

    host_app.run()


@app.command("status")
def status():
    """Show control plane status."""
    from fcsaas.cli import client

    try:
        info = client.get_status()
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)

    pool = info.get("subnet_pool", {})
    console.print(f"[bold]Control plane[/bold] v{info.get('version')} ({info.get('status')})")
    console.print(f"  Uptime:    {info.get('uptime_seconds', 0):.0f}s")
    console.print(f"  Tenants:   {info.get('tenants')} ({info.get('monitored')} monitored)")
    console.print(
        f"  Subnets:   {pool.get('used')}/{pool.get('capacity')} blocks of {pool.get('pool')}"
    )


@app.command("version")
def version():
    """Show version information."""
    from fcsaas import __version__

    console.print(f"fcsaas v{__version__}")


def run():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
