"""
Tenant database model.

One row per tenant, holding everything needed to rebuild the in-memory
registry after a restart: tier, status, subnet lease, network device,
guest process identity and secrets.
"""

import datetime
import json

import peewee

from fcsaas.db.base import BaseModel
from fcsaas.models.enums import TenantStatus


# =============================================================================
# Tenant Model
# =============================================================================


class Tenant(BaseModel):
    """
    Persisted tenant record.

    Attributes:
        tenant_id: Unique tenant identifier (primary key).
        tier: Resource tier name.
        status: Last persisted lifecycle status.
        subnet_index: Owned /30 block index in the subnet pool.
        pid: Firecracker process id while a guest process exists.
    """

    # -------------------------------------------------------------------------
    # Identification
    # -------------------------------------------------------------------------

    tenant_id = peewee.CharField(unique=True, primary_key=True)
    tier = peewee.CharField()
    status = peewee.CharField(default=TenantStatus.CREATING.value)

    # -------------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------------

    subnet_index = peewee.IntegerField(null=True)
    gateway_addr = peewee.CharField(null=True)
    guest_addr = peewee.CharField(null=True)
    netmask = peewee.CharField(null=True)
    device_name = peewee.CharField(null=True)  # e.g. fc-acme

    # -------------------------------------------------------------------------
    # Guest Process
    # -------------------------------------------------------------------------

    pid = peewee.IntegerField(null=True)
    socket_path = peewee.CharField(null=True)
    started_at = peewee.DateTimeField(null=True)

    # -------------------------------------------------------------------------
    # Storage and Secrets
    # -------------------------------------------------------------------------

    data_dir = peewee.CharField(null=True)
    env_vars = peewee.TextField(null=True)  # JSON object, never logged

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    last_error = peewee.TextField(null=True)
    restored_from = peewee.CharField(null=True)
    created_at = peewee.DateTimeField(default=datetime.datetime.now)
    updated_at = peewee.DateTimeField(default=datetime.datetime.now)

    class Meta:
        table_name = "tenants"

    # =========================================================================
    # JSON Field Accessors
    # =========================================================================

    def get_env_vars(self) -> dict[str, str]:
        """Parse stored secrets (empty dict if unset or invalid)."""
        if not self.env_vars:
            return {}
        try:
            return json.loads(self.env_vars)
        except json.JSONDecodeError:
            return {}

    def set_env_vars(self, env_vars: dict[str, str] | None) -> None:
        self.env_vars = json.dumps(env_vars or {})

    # =========================================================================
    # Status Helpers
    # =========================================================================

    def get_status(self) -> TenantStatus:
        return TenantStatus(self.status)

    def has_process(self) -> bool:
        """Whether the row claims a live guest process."""
        return self.pid is not None and self.status in (
            TenantStatus.RUNNING.value,
            TenantStatus.PAUSED.value,
        )
