"""
Enumeration types for the firecracker-saas control plane.

This module defines the enumerations used for tenant status tracking,
tier selection, health reporting, and configuration options.
"""

from enum import Enum


# =============================================================================
# Tenant-Related Enums
# =============================================================================


class TenantStatus(str, Enum):
    """
    Tenant guest lifecycle status.

    State transitions:
        CREATING -> RUNNING (boot succeeded)
        RUNNING -> PAUSED (pause) -> RUNNING (resume)
        RUNNING/PAUSED -> STOPPED (stop)
        STOPPED/FAILED -> RUNNING (start, cold or from snapshot)
        Any -> FAILED (boot timeout, control error, unexpected exit)
    """

    CREATING = "creating"  # Resources being provisioned
    RUNNING = "running"  # Guest process up, vCPUs running
    STOPPED = "stopped"  # No guest process, resources kept
    PAUSED = "paused"  # Guest process up, vCPUs suspended
    FAILED = "failed"  # Guest state unknown or lost


class Tier(str, Enum):
    """Resource-allocation profile assigned at tenant creation."""

    FREE = "free"
    PRO = "pro"
    TEAM = "team"
    ENTERPRISE = "enterprise"


class LifecycleAction(str, Enum):
    """Administrative lifecycle actions on an existing tenant."""

    START = "start"
    STOP = "stop"
    PAUSE = "pause"
    RESUME = "resume"
    SNAPSHOT = "snapshot"


# =============================================================================
# Health-Related Enums
# =============================================================================


class HealthState(str, Enum):
    """Last observed health of a tenant's guest workload."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


# =============================================================================
# Configuration Enums
# =============================================================================


class LogLevel(str, Enum):
    """
    Logging verbosity levels.

    Levels (from most to least verbose):
        - FULL: Complete trace with detailed stack information
        - DEBUG: Debug messages and above
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"


class NetworkBackend(str, Enum):
    """
    Network isolation backend.

    - LINUX: TAP devices via netlink and iptables rules (requires root)
    - NOOP: Records leases only, touches no kernel state (development)
    """

    LINUX = "linux"
    NOOP = "noop"
