"""
Control-plane exception classes.

Every error the control plane detects is a ``ControlPlaneError`` carrying a
machine-readable ``kind`` and the HTTP status the admin API answers with.
"""


class ControlPlaneError(Exception):
    """Base exception for control-plane operations."""

    kind = "control_plane_error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class InvalidRequest(ControlPlaneError):
    """Malformed tenant id, unknown tier or bad request parameters."""

    kind = "invalid_request"
    status_code = 400


class PoolExhausted(ControlPlaneError):
    """No free /30 block remains in the subnet pool."""

    kind = "pool_exhausted"
    status_code = 507

    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"Subnet pool exhausted ({capacity} blocks in use)")


class DuplicateTenant(ControlPlaneError):
    """A tenant with this id already exists (in any status)."""

    kind = "duplicate_tenant"
    status_code = 409

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant already exists: {tenant_id}")


class TenantNotFound(ControlPlaneError):
    """Tenant not found."""

    kind = "tenant_not_found"
    status_code = 404

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant not found: {tenant_id}")


class InvalidTransition(ControlPlaneError):
    """Lifecycle action not valid from the tenant's current status."""

    kind = "invalid_transition"
    status_code = 409

    def __init__(self, tenant_id: str, status: str, action: str):
        self.tenant_id = tenant_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} tenant {tenant_id} while {status}")


class NetworkSetupFailed(ControlPlaneError):
    """TAP device or firewall rule installation failed."""

    kind = "network_setup_failed"
    status_code = 500

    def __init__(self, message: str, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Network setup for {tenant_id} failed: {message}")


class GuestBootTimeout(ControlPlaneError):
    """Guest did not finish booting within the boot timeout."""

    kind = "guest_boot_timeout"
    status_code = 504

    def __init__(self, tenant_id: str, timeout: float):
        self.tenant_id = tenant_id
        self.timeout = timeout
        super().__init__(f"Guest {tenant_id} did not boot within {timeout:g}s")


class GuestControlError(ControlPlaneError):
    """Protocol-level failure talking to the hypervisor."""

    kind = "guest_control_error"
    status_code = 502

    def __init__(self, message: str, tenant_id: str = ""):
        self.tenant_id = tenant_id
        prefix = f"Guest {tenant_id}: " if tenant_id else ""
        super().__init__(f"{prefix}{message}")


class ProxyBackendUnreachable(ControlPlaneError):
    """
    Tenant guest could not be reached by the proxy.

    ``reason`` is "refused" (502) when the connection was rejected
    immediately, or "timeout" (504) when it timed out.
    """

    kind = "proxy_backend_unreachable"

    def __init__(self, tenant_id: str, reason: str):
        self.tenant_id = tenant_id
        self.reason = reason
        self.status_code = 504 if reason == "timeout" else 502
        super().__init__(f"Tenant {tenant_id} backend unreachable ({reason})")


class StorageError(ControlPlaneError):
    """Tenant disks could not be prepared."""

    kind = "storage_error"
    status_code = 500
