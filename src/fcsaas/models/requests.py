"""
Pydantic models for API requests and responses.

These are the data transfer objects exchanged between the admin API and
its clients (the ``fcsaas`` CLI or any HTTP caller).
"""

import datetime
import re

from pydantic import BaseModel, Field, field_validator

from fcsaas.models.enums import HealthState, TenantStatus, Tier

TENANT_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$"
_TENANT_ID_RE = re.compile(TENANT_ID_PATTERN)


def is_valid_tenant_id(tenant_id: str | None) -> bool:
    """Check a tenant id is safe to embed in paths and device names."""
    return bool(tenant_id) and _TENANT_ID_RE.fullmatch(tenant_id) is not None


def check_env_vars(value: dict[str, str]) -> dict[str, str]:
    """Reject names and values that cannot be written as one .env line."""
    for key, item in value.items():
        if not key or "=" in key or any(c in key for c in " \t\r\n\0"):
            raise ValueError(f"invalid environment variable name: {key!r}")
        if any(c in item for c in "\r\n\0"):
            raise ValueError(f"value of {key} contains a line break or NUL")
    return value


# =============================================================================
# Tenant Request Models
# =============================================================================


class TenantCreateRequest(BaseModel):
    """Request body for tenant creation."""

    tenant_id: str = Field(..., description="Unique tenant identifier")
    tier: Tier = Field(..., description="Resource tier")
    env_vars: dict[str, str] = Field(
        default_factory=dict,
        description="Secrets injected into the guest at boot",
    )
    restore_from: str | None = Field(
        default=None,
        description="Snapshot id (or 'golden') to restore instead of cold boot",
    )

    @field_validator("env_vars")
    @classmethod
    def _check_env_vars(cls, value: dict[str, str]) -> dict[str, str]:
        return check_env_vars(value)


class TenantStartRequest(BaseModel):
    """Optional body for the start action."""

    from_snapshot: str | None = Field(
        default=None,
        description="Snapshot id, 'latest' or 'golden' (None = cold boot)",
    )


class EnvUpdateRequest(BaseModel):
    """Request body replacing a tenant's secrets."""

    env_vars: dict[str, str] = Field(..., description="New environment variables")

    @field_validator("env_vars")
    @classmethod
    def _check_env_vars(cls, value: dict[str, str]) -> dict[str, str]:
        return check_env_vars(value)


# =============================================================================
# Tenant Response Models
# =============================================================================


class SubnetInfo(BaseModel):
    index: int
    network: str
    gateway_addr: str
    guest_addr: str
    netmask: str
    prefix_len: int


class TenantResponse(BaseModel):
    """Tenant record as returned by read endpoints (secrets excluded)."""

    tenant_id: str
    tier: Tier
    status: TenantStatus
    subnet: SubnetInfo | None = None
    guest_addr: str | None = None
    device_name: str | None = None
    pid: int | None = None
    env_keys: list[str] = Field(default_factory=list)
    pending_action: str | None = None
    last_error: str | None = None
    restored_from: str | None = None
    created_at: datetime.datetime
    updated_at: datetime.datetime


class HealthResponse(BaseModel):
    """Latest health record of a tenant's guest."""

    tenant_id: str
    status: HealthState
    memory_used_mb: float | None = None
    load_average: float | None = None
    disk_used_mb: float | None = None
    uptime_seconds: float | None = None
    observed_at: datetime.datetime | None = None
    consecutive_failures: int = 0


class SnapshotResponse(BaseModel):
    snapshot_id: str
    tenant_id: str
    tier: Tier
    created_at: datetime.datetime
    mem_file: str
    state_file: str
    size_bytes: int


class ErrorResponse(BaseModel):
    """Structured error body for every control-plane failure."""

    kind: str
    message: str
