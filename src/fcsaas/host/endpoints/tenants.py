"""
Tenant endpoints.

Administrative API for tenant creation, lifecycle actions, secrets,
health and snapshots. Control-plane errors raised by the registry are
rendered by the app's exception handler as ``{"kind", "message"}``.
"""

import asyncio

from fastapi import APIRouter, Body

from fcsaas.host.state import get_monitor, get_registry, get_services
from fcsaas.models.enums import HealthState
from fcsaas.models.requests import (
    EnvUpdateRequest,
    HealthResponse,
    SnapshotResponse,
    TenantCreateRequest,
    TenantResponse,
    TenantStartRequest,
)
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Creation and Queries
# =============================================================================


@router.post("/tenants", response_model=TenantResponse, status_code=201)
async def create_tenant(request: TenantCreateRequest):
    """
    Create a tenant and boot its microVM.

    The response is sent once the guest is running. Any failure rolls back
    the subnet, network device, disks and record created so far.
    """
    logger.info(f"Create request for tenant {request.tenant_id} ({request.tier.value})")
    record = await get_registry().create(request)
    return record.to_dict()


@router.get("/tenants", response_model=list[TenantResponse])
async def list_tenants():
    """List all tenants in creation order."""
    return [record.to_dict() for record in get_registry().list()]


@router.get("/tenants/{tenant_id}", response_model=TenantResponse)
async def get_tenant(tenant_id: str):
    return get_registry().get(tenant_id).to_dict()


@router.delete("/tenants/{tenant_id}")
async def delete_tenant(tenant_id: str):
    """Destroy a tenant and release everything it owns."""
    logger.info(f"Delete request for tenant {tenant_id}")
    await get_registry().remove(tenant_id)
    return {"message": f"Tenant {tenant_id} deleted", "tenant_id": tenant_id}


# =============================================================================
# Lifecycle Actions
# =============================================================================


@router.post("/tenants/{tenant_id}/start", response_model=TenantResponse)
async def start_tenant(tenant_id: str, request: TenantStartRequest | None = Body(None)):
    """
    Boot a stopped or failed tenant.

    With ``from_snapshot`` the guest is restored from a snapshot of the
    same tier instead of cold booting.
    """
    from_snapshot = request.from_snapshot if request else None
    record = await get_registry().start(tenant_id, from_snapshot=from_snapshot)
    return record.to_dict()


@router.post("/tenants/{tenant_id}/stop", response_model=TenantResponse)
async def stop_tenant(tenant_id: str):
    record = await get_registry().stop(tenant_id)
    return record.to_dict()


@router.post("/tenants/{tenant_id}/pause", response_model=TenantResponse)
async def pause_tenant(tenant_id: str):
    record = await get_registry().pause(tenant_id)
    return record.to_dict()


@router.post("/tenants/{tenant_id}/resume", response_model=TenantResponse)
async def resume_tenant(tenant_id: str):
    record = await get_registry().resume(tenant_id)
    return record.to_dict()


@router.post("/tenants/{tenant_id}/snapshot", response_model=SnapshotResponse)
async def snapshot_tenant(tenant_id: str):
    """Snapshot a paused tenant. The tenant stays paused."""
    info = await get_registry().snapshot(tenant_id)
    return info.to_dict()


# =============================================================================
# Secrets, Health and Snapshots
# =============================================================================


@router.put("/tenants/{tenant_id}/env", response_model=TenantResponse)
async def update_tenant_env(tenant_id: str, request: EnvUpdateRequest):
    """Replace a tenant's environment variables (applied on next boot)."""
    record = await get_registry().update_env(tenant_id, request.env_vars)
    return record.to_dict()


@router.get("/tenants/{tenant_id}/health", response_model=HealthResponse)
async def get_tenant_health(tenant_id: str):
    """
    Latest health record of a tenant's guest.

    Tenants that are not monitored (not running) report ``unknown``.
    """
    get_registry().get(tenant_id)
    observed = get_monitor().get(tenant_id)
    if observed is None:
        return HealthResponse(tenant_id=tenant_id, status=HealthState.UNKNOWN)
    return observed.to_dict()


@router.get("/tenants/{tenant_id}/snapshots", response_model=list[SnapshotResponse])
async def list_tenant_snapshots(tenant_id: str):
    return [info.to_dict() for info in get_registry().list_snapshots(tenant_id)]


@router.post("/snapshots/{snapshot_id}/promote", response_model=SnapshotResponse)
async def promote_snapshot(snapshot_id: str):
    """Copy a tenant snapshot to the golden slot used for fresh tenants."""
    info = await asyncio.to_thread(get_services().snapshots.promote, snapshot_id)
    return info.to_dict()

