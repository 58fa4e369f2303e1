"""
firecracker-saas control plane FastAPI application.

This module wires the control plane together and provides the server
entry point. One listener serves both surfaces:

    - the administrative API (tenant CRUD, lifecycle actions, health,
      snapshots, /health and /metrics)
    - the tenant proxy: any request carrying ``x-tenant-id`` is routed to
      that tenant's guest by the ProxyRouter middleware

Startup opens the database, prepares host networking and recovers tenants
(adopting guests that survived a control plane restart). Shutdown stops
health monitoring and leaves guests running.
"""

import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fcsaas import __version__
from fcsaas.db.base import close_database, initialize_database
from fcsaas.exceptions import ControlPlaneError
from fcsaas.firecracker.process import FirecrackerLauncher
from fcsaas.host.config import HostConfig, config
from fcsaas.host.endpoints import system, tenants
from fcsaas.host.services.disks import TenantStorage
from fcsaas.host.services.health_monitor import HealthMonitor
from fcsaas.host.services.lifecycle import GuestLifecycleController
from fcsaas.host.services.network import (
    LinuxNetworkIsolation,
    NetworkIsolationManager,
    NoopNetworkIsolation,
)
from fcsaas.host.services.proxy import ProxyRouter
from fcsaas.host.services.registry import TenantRegistry
from fcsaas.host.services.snapshots import SnapshotCatalog
from fcsaas.host.services.subnet_allocator import SubnetAllocator
from fcsaas.host.state import HostServices, set_services
from fcsaas.models.enums import LogLevel, NetworkBackend
from fcsaas.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


# =============================================================================
# Service Construction
# =============================================================================


def build_network(cfg: HostConfig) -> NetworkIsolationManager:
    if cfg.NETWORK_BACKEND == NetworkBackend.NOOP:
        logger.warning("Network backend is noop: tenants get no TAP device or isolation")
        return NoopNetworkIsolation()
    return LinuxNetworkIsolation(uplink=cfg.UPLINK_INTERFACE)


def build_services(
    cfg: HostConfig | None = None,
    *,
    launcher: FirecrackerLauncher | None = None,
    client_factory=None,
    network: NetworkIsolationManager | None = None,
    storage: TenantStorage | None = None,
    health_transport: httpx.AsyncBaseTransport | None = None,
    proxy_transport: httpx.AsyncBaseTransport | None = None,
) -> HostServices:
    """
    Build the service graph from a config.

    Every collaborator can be replaced (tests pass fakes for the
    hypervisor, the network and the guests).

    Raises:
        ValueError: If SUBNET_POOL is not a usable CIDR.
    """
    cfg = cfg or config
    launcher = launcher or FirecrackerLauncher(cfg.FIRECRACKER_BIN)
    controller = GuestLifecycleController.from_config(
        cfg, launcher, client_factory=client_factory
    )
    monitor = HealthMonitor(
        interval=cfg.HEALTH_CHECK_INTERVAL_SECONDS,
        timeout=cfg.HEALTH_CHECK_TIMEOUT_SECONDS,
        failure_threshold=cfg.HEALTH_FAILURE_THRESHOLD,
        port=cfg.HEALTH_PORT,
        is_alive=controller.is_alive,
        transport=health_transport,
    )
    network = network or build_network(cfg)
    snapshots = SnapshotCatalog(cfg.SNAPSHOT_DIR)
    registry = TenantRegistry(
        config=cfg,
        allocator=SubnetAllocator(cfg.get_subnet_pool()),
        network=network,
        controller=controller,
        storage=storage or TenantStorage(cfg.DATA_DIR, cfg.ROOTFS_PATH),
        snapshots=snapshots,
        monitor=monitor,
    )
    proxy_client = httpx.AsyncClient(
        transport=proxy_transport,
        timeout=httpx.Timeout(
            cfg.PROXY_READ_TIMEOUT_SECONDS, connect=cfg.PROXY_CONNECT_TIMEOUT_SECONDS
        ),
        follow_redirects=False,
        trust_env=False,
    )
    return HostServices(
        config=cfg,
        registry=registry,
        network=network,
        monitor=monitor,
        snapshots=snapshots,
        proxy_client=proxy_client,
    )


# =============================================================================
# Lifecycle
# =============================================================================


async def start_services(services: HostServices) -> None:
    """Open the database, prepare networking and recover tenants."""
    cfg = services.config
    logger.info("Control plane starting up")
    logger.debug(f"Database file: {cfg.DB_FILE}")

    for directory in (cfg.DATA_DIR, cfg.SNAPSHOT_DIR, cfg.SOCKET_DIR):
        os.makedirs(directory, mode=0o700, exist_ok=True)

    initialize_database(cfg.DB_FILE)
    set_services(services)
    await services.network.initialize()
    await services.registry.recover()

    stats = services.registry.allocator.stats()
    logger.info(
        f"Control plane ready: {len(services.registry.list())} tenants, "
        f"subnet pool {stats['pool']} ({stats['used']}/{stats['capacity']} blocks used)"
    )


async def stop_services(services: HostServices) -> None:
    """Stop health monitoring and close clients; guests keep running."""
    logger.info("Control plane shutting down")
    await services.registry.shutdown()
    await services.proxy_client.aclose()
    close_database()
    set_services(None)
    logger.info("Control plane shut down complete")


# =============================================================================
# Application Setup
# =============================================================================


async def control_plane_error_handler(request: Request, exc: ControlPlaneError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(
        {"kind": "invalid_request", "message": problems or "Invalid request"},
        status_code=400,
    )


def create_app(services: HostServices | None = None) -> FastAPI:
    """
    Create the control plane application.

    Args:
        services: Prebuilt services (defaults to ``build_services(config)``).
    """
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await start_services(services)
        try:
            yield
        finally:
            await stop_services(services)

    app = FastAPI(
        title="firecracker-saas",
        description="Multi-tenant Firecracker microVM control plane",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.include_router(tenants.router, tags=["Tenants"])
    app.include_router(system.router, tags=["System"])

    app.add_exception_handler(ControlPlaneError, control_plane_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Outermost: tenant traffic never reaches the admin routes
    app.add_middleware(ProxyRouter, services=services)
    return app


# =============================================================================
# Server Entry Points
# =============================================================================


def run():
    """Run the control plane using uvicorn."""
    import uvicorn

    # Configure logging before starting uvicorn
    configure_logging(config.LOG_LEVEL, config.LOG_FILE)

    uvicorn_level_map = {
        LogLevel.FULL: "debug",
        LogLevel.DEBUG: "debug",
        LogLevel.INFO: "info",
        LogLevel.WARNING: "warning",
    }
    uvicorn_level = uvicorn_level_map.get(config.LOG_LEVEL, "info")

    logger.info(f"Starting control plane on {config.BIND_IP}:{config.BIND_PORT}")

    uvicorn.run(
        create_app(),
        host=config.BIND_IP,
        port=config.BIND_PORT,
        log_level=uvicorn_level,
        log_config=None,  # Disable uvicorn's default logging config (use loguru)
    )


if __name__ == "__main__":
    run()
