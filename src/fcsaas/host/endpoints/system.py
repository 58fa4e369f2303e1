"""
Control plane liveness and Prometheus metrics endpoints.
"""

import time

from fastapi import APIRouter
from fastapi.responses import Response

from fcsaas import __version__
from fcsaas.host.metrics import get_metrics, update_all_metrics
from fcsaas.host.state import get_services

router = APIRouter()

_started_at = time.time()


@router.get("/health")
async def health():
    """Liveness of the control plane itself (not of any guest)."""
    services = get_services()
    tenants = services.registry.list()
    return {
        "status": "ok",
        "version": __version__,
        "uptime_seconds": round(time.time() - _started_at, 3),
        "tenants": len(tenants),
        "monitored": len(services.monitor.monitored()),
        "subnet_pool": services.registry.allocator.stats(),
    }


@router.get("/metrics")
async def metrics():
    services = get_services()
    update_all_metrics(services.registry, services.monitor)
    body, content_type = get_metrics()
    return Response(content=body, media_type=content_type)
