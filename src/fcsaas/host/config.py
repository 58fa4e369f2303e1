"""
Control-plane configuration.

This module defines the configuration dataclass for the control plane,
providing a centralized place for all configurable parameters.

Configuration can be modified at runtime by importing the global config
instance and updating its attributes before starting the server, or by
setting ``FCSAAS_<FIELD>`` environment variables.

Usage:
    from fcsaas.host.config import config

    # Modify configuration before starting
    config.BIND_PORT = 9000
    config.LOG_LEVEL = LogLevel.DEBUG
"""

import dataclasses
import os
from dataclasses import dataclass

from fcsaas.models.enums import LogLevel, NetworkBackend
from fcsaas.models.subnet_pool import SubnetPoolConfig

ENV_PREFIX = "FCSAAS_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


# =============================================================================
# Configuration Dataclass
# =============================================================================


@dataclass
class HostConfig:
    """
    Control-plane configuration.

    Attributes:
        BIND_IP: IP address the API and proxy listen on.
        BIND_PORT: Listener port (admin API and tenant proxy share it).
        SUBNET_POOL: CIDR carved into /30 tenant blocks.
        DB_FILE: Path to the SQLite database file.
        LOG_LEVEL: Logging verbosity level.
    """

    # -------------------------------------------------------------------------
    # Network Configuration
    # -------------------------------------------------------------------------

    BIND_IP: str = "0.0.0.0"
    BIND_PORT: int = 8080
    SUBNET_POOL: str = SubnetPoolConfig.DEFAULT_CIDR
    UPLINK_INTERFACE: str = ""  # Empty = interface of the default route
    GUEST_SERVICE_PORT: int = 8080  # Port the tenant workload listens on
    HEALTH_PORT: int = 8080  # Port serving the guest's /health
    GUEST_DNS: str = "8.8.8.8"
    NETWORK_BACKEND: NetworkBackend = NetworkBackend.LINUX

    # -------------------------------------------------------------------------
    # Path Configuration
    # -------------------------------------------------------------------------

    DB_FILE: str = "/var/lib/fcsaas/fcsaas.db"
    DATA_DIR: str = "/var/lib/fcsaas/tenants"
    SNAPSHOT_DIR: str = "/var/lib/fcsaas/snapshots"
    SOCKET_DIR: str = "/run/fcsaas"
    FIRECRACKER_BIN: str = "/usr/local/bin/firecracker"
    KERNEL_PATH: str = "/var/lib/fcsaas/vmlinux"
    ROOTFS_PATH: str = "/var/lib/fcsaas/rootfs.ext4"
    LOG_FILE: str = ""

    # -------------------------------------------------------------------------
    # Timing Configuration
    # -------------------------------------------------------------------------

    BOOT_TIMEOUT_SECONDS: float = 30.0
    SOCKET_WAIT_SECONDS: float = 5.0
    API_TIMEOUT_SECONDS: float = 5.0
    STOP_TIMEOUT_SECONDS: float = 10.0
    KILL_TIMEOUT_SECONDS: float = 3.0
    HEALTH_CHECK_INTERVAL_SECONDS: float = 10.0
    HEALTH_CHECK_TIMEOUT_SECONDS: float = 2.0
    HEALTH_FAILURE_THRESHOLD: int = 3
    PROXY_CONNECT_TIMEOUT_SECONDS: float = 3.0
    PROXY_READ_TIMEOUT_SECONDS: float = 60.0

    # -------------------------------------------------------------------------
    # Behaviour
    # -------------------------------------------------------------------------

    # Kill Firecracker processes found at startup that match no tenant
    RECONCILE_KILL_ORPHANS: bool = True

    # Answer 503 for tenants the health monitor has not yet seen healthy
    PROXY_REQUIRE_HEALTHY: bool = False

    # Boot fresh tenants from SNAPSHOT_DIR/golden when it exists
    USE_GOLDEN_SNAPSHOT: bool = False

    # -------------------------------------------------------------------------
    # Logging Configuration
    # -------------------------------------------------------------------------

    LOG_LEVEL: LogLevel = LogLevel.INFO

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def get_subnet_pool(self) -> SubnetPoolConfig:
        return SubnetPoolConfig.parse(self.SUBNET_POOL)

    def get_bind_url(self) -> str:
        """
        Get the URL the CLI uses to reach the control plane.

        Returns:
            URL string like "http://127.0.0.1:8080"
        """
        host = "127.0.0.1" if self.BIND_IP == "0.0.0.0" else self.BIND_IP
        return f"http://{host}:{self.BIND_PORT}"


# =============================================================================
# Environment Overrides
# =============================================================================


def _coerce(value: str, current):
    if isinstance(current, bool):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"expected a boolean, got {value!r}")
    if isinstance(current, LogLevel):
        return LogLevel(value.strip().lower())
    if isinstance(current, NetworkBackend):
        return NetworkBackend(value.strip().lower())
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def apply_env_overrides(cfg: HostConfig, environ: dict[str, str] | None = None) -> list[str]:
    """
    Override config fields from ``FCSAAS_<FIELD>`` environment variables.

    Args:
        cfg: Config instance to update in place.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Names of the fields that were overridden.

    Raises:
        ValueError: If a variable cannot be converted to the field's type.
    """
    environ = os.environ if environ is None else environ
    applied = []
    for f in dataclasses.fields(cfg):
        raw = environ.get(f"{ENV_PREFIX}{f.name}")
        if raw is None:
            continue
        try:
            setattr(cfg, f.name, _coerce(raw, getattr(cfg, f.name)))
        except ValueError as e:
            raise ValueError(f"Invalid {ENV_PREFIX}{f.name}: {e}")
        applied.append(f.name)
    return applied


# =============================================================================
# Global Instance
# =============================================================================

# Global config instance - modify before server startup
config = HostConfig()
