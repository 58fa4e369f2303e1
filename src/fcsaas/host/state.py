"""
Shared state accessors for host modules.

Avoids circular imports between host/app.py and host/endpoints/*.
The app module builds the services during initialization; endpoint
modules read them via the getters.
"""

from dataclasses import dataclass

import httpx

from fcsaas.host.config import HostConfig
from fcsaas.host.services.health_monitor import HealthMonitor
from fcsaas.host.services.network import NetworkIsolationManager
from fcsaas.host.services.registry import TenantRegistry
from fcsaas.host.services.snapshots import SnapshotCatalog


@dataclass
class HostServices:
    """The control plane's long-lived service objects."""

    config: HostConfig
    registry: TenantRegistry
    network: NetworkIsolationManager
    monitor: HealthMonitor
    snapshots: SnapshotCatalog
    proxy_client: httpx.AsyncClient


_services: HostServices | None = None


def set_services(services: HostServices | None) -> None:
    global _services
    _services = services


def get_services() -> HostServices:
    """Get the active services (raises if the app was not initialized)."""
    if _services is None:
        raise RuntimeError("Host services are not initialized")
    return _services


def get_registry() -> TenantRegistry:
    return get_services().registry


def get_monitor() -> HealthMonitor:
    return get_services().monitor
