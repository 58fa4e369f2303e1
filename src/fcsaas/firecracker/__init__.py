"""
Firecracker integration.

Provides the per-guest pieces the control plane drives:
- REST API client over the guest's Unix socket
- Process launcher and guest handles
- Naming and path conventions
"""

from fcsaas.firecracker.client import FirecrackerClient
from fcsaas.firecracker.naming import (
    DEVICE_PREFIX,
    device_name,
    guest_mac,
    socket_path,
    tenant_data_dir,
)
from fcsaas.firecracker.process import FirecrackerLauncher, GuestHandle

__all__ = [
    # Client
    "FirecrackerClient",
    # Process
    "FirecrackerLauncher",
    "GuestHandle",
    # Naming
    "DEVICE_PREFIX",
    "device_name",
    "guest_mac",
    "socket_path",
    "tenant_data_dir",
]
