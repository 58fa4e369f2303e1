"""
API client for CLI commands.

Provides functions to interact with the control plane's admin API.
Returns structured data instead of printing.
"""

import httpx

from fcsaas.cli import config as cli_config
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)

# Create and restore block until the guest is running
BOOT_TIMEOUT = 120.0
DEFAULT_TIMEOUT = 30.0


class APIError(Exception):
    """API request error with status code and error kind."""

    def __init__(
        self, message: str, status_code: int | None = None, kind: str | None = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.kind = kind


def _get_host_url() -> str:
    """Get the control plane URL from config."""
    return f"http://{cli_config.HOST_ADDRESS}:{cli_config.HOST_PORT}"


def _handle_http_error(e: httpx.HTTPStatusError, context: str = "request") -> None:
    """Turn an error response into an APIError."""
    status = e.response.status_code
    kind = None
    try:
        body = e.response.json()
        kind = body.get("kind")
        message = body.get("message") or body.get("detail") or str(body)
    except ValueError:
        message = e.response.text

    logger.debug(f"HTTP {status} on {context}: {message}")
    raise APIError(f"{message} (HTTP {status})", status_code=status, kind=kind)


def _request(method: str, path: str, context: str, timeout: float = DEFAULT_TIMEOUT, **kwargs):
    url = f"{_get_host_url()}{path}"
    try:
        response = httpx.request(method, url, timeout=timeout, **kwargs)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        _handle_http_error(e, context)
    except httpx.RequestError as e:
        logger.debug(f"Request error: {e}")
        raise APIError(f"Cannot reach control plane at {_get_host_url()}: {e}")


# =============================================================================
# Tenant Operations
# =============================================================================


def list_tenants() -> list[dict]:
    return _request("GET", "/tenants", "list tenants")


def get_tenant(tenant_id: str) -> dict:
    return _request("GET", f"/tenants/{tenant_id}", f"get tenant {tenant_id}")


def create_tenant(
    tenant_id: str,
    tier: str,
    env_vars: dict[str, str] | None = None,
    restore_from: str | None = None,
) -> dict:
    """Create a tenant; returns once its guest is running."""
    payload = {"tenant_id": tenant_id, "tier": tier, "env_vars": env_vars or {}}
    if restore_from:
        payload["restore_from"] = restore_from
    return _request(
        "POST", "/tenants", f"create tenant {tenant_id}", timeout=BOOT_TIMEOUT, json=payload
    )


def delete_tenant(tenant_id: str) -> dict:
    return _request(
        "DELETE", f"/tenants/{tenant_id}", f"delete tenant {tenant_id}", timeout=BOOT_TIMEOUT
    )


def tenant_action(tenant_id: str, action: str, from_snapshot: str | None = None) -> dict:
    """
    Run a lifecycle action (start, stop, pause, resume, snapshot).

    Returns:
        The updated tenant, or the snapshot description for ``snapshot``.
    """
    payload = {"from_snapshot": from_snapshot} if from_snapshot else None
    return _request(
        "POST",
        f"/tenants/{tenant_id}/{action}",
        f"{action} tenant {tenant_id}",
        timeout=BOOT_TIMEOUT,
        json=payload,
    )


def update_env(tenant_id: str, env_vars: dict[str, str]) -> dict:
    return _request(
        "PUT",
        f"/tenants/{tenant_id}/env",
        f"update env of {tenant_id}",
        json={"env_vars": env_vars},
    )


def get_health(tenant_id: str) -> dict:
    return _request("GET", f"/tenants/{tenant_id}/health", f"health of {tenant_id}")


# =============================================================================
# Snapshot Operations
# =============================================================================


def list_snapshots(tenant_id: str) -> list[dict]:
    return _request("GET", f"/tenants/{tenant_id}/snapshots", f"snapshots of {tenant_id}")


def promote_snapshot(snapshot_id: str) -> dict:
    return _request(
        "POST",
        f"/snapshots/{snapshot_id}/promote",
        f"promote snapshot {snapshot_id}",
        timeout=BOOT_TIMEOUT,
    )


# =============================================================================
# Control Plane
# =============================================================================


def get_status() -> dict:
    return _request("GET", "/health", "control plane status", timeout=10.0)
