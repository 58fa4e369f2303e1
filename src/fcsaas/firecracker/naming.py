"""Guest naming conventions and per-tenant path layout."""

import hashlib
import ipaddress
import os
import re

# Prefixes
DEVICE_PREFIX = "fc-"
SOCKET_PREFIX = "fc-"

# Linux IFNAMSIZ is 16 including the terminating NUL
MAX_IFNAME_LEN = 15
_SHORT_ID_LEN = MAX_IFNAME_LEN - len(DEVICE_PREFIX)  # 12
_HASHED_ID_LEN = _SHORT_ID_LEN - 4  # 8 chars of id + 4 hex digits

# Firecracker --id accepts alphanumerics and '-'
_VM_ID_INVALID = re.compile(r"[^A-Za-z0-9-]")

# File names inside a tenant data dir
ROOTFS_FILE = "rootfs.ext4"
DATA_VOLUME_FILE = "data.ext4"
MOUNT_DIR = "mnt"
LOG_FILE = "firecracker.log"

# Secrets file inside the data volume
GUEST_CONFIG_DIR = "config"
GUEST_ENV_FILE = ".env"

# File names inside a snapshot dir
SNAPSHOT_STATE_FILE = "vm.snap"
SNAPSHOT_MEM_FILE = "vm.mem"
SNAPSHOT_META_FILE = "meta.json"
GOLDEN_SNAPSHOT_ID = "golden"


def device_name(tenant_id: str) -> str:
    """
    Deterministic TAP device name for a tenant.

    Ids of up to 12 characters map to ``fc-<id>``. Longer ids keep their
    first 8 characters followed by 4 hex digits of a SHA-1 over the full id,
    so two long ids sharing a prefix still get distinct devices.
    """
    if len(tenant_id) <= _SHORT_ID_LEN:
        return f"{DEVICE_PREFIX}{tenant_id}"
    digest = hashlib.sha1(tenant_id.encode()).hexdigest()[:4]
    return f"{DEVICE_PREFIX}{tenant_id[:_HASHED_ID_LEN]}{digest}"


def vm_id(tenant_id: str) -> str:
    """Firecracker instance id for a tenant."""
    return _VM_ID_INVALID.sub("-", tenant_id)


def socket_path(socket_dir: str, tenant_id: str) -> str:
    """Firecracker API socket path."""
    return os.path.join(socket_dir, f"{SOCKET_PREFIX}{tenant_id}.sock")


def extract_tenant_id_from_socket(path: str) -> str | None:
    """Extract tenant id from an API socket path."""
    name = os.path.basename(path)
    if name.startswith(SOCKET_PREFIX) and name.endswith(".sock"):
        return name[len(SOCKET_PREFIX) : -len(".sock")] or None
    return None


def tenant_data_dir(base_dir: str, tenant_id: str) -> str:
    """Get tenant data directory path."""
    return os.path.join(base_dir, tenant_id)


def rootfs_path(data_dir: str) -> str:
    return os.path.join(data_dir, ROOTFS_FILE)


def data_volume_path(data_dir: str) -> str:
    return os.path.join(data_dir, DATA_VOLUME_FILE)


def mount_dir_path(data_dir: str) -> str:
    """Get the mount point used while writing into the data volume."""
    return os.path.join(data_dir, MOUNT_DIR)


def log_path(data_dir: str) -> str:
    """Get Firecracker stdout/stderr log path."""
    return os.path.join(data_dir, LOG_FILE)


def tenant_snapshot_root(snapshot_dir: str, tenant_id: str) -> str:
    return os.path.join(snapshot_dir, "tenants", tenant_id)


def golden_snapshot_dir(snapshot_dir: str) -> str:
    return os.path.join(snapshot_dir, GOLDEN_SNAPSHOT_ID)


def guest_mac(guest_addr: str) -> str:
    """
    Guest MAC derived from its IPv4 address.

    ``172.16.0.6`` becomes ``06:00:ac:10:00:06``: a locally administered
    prefix followed by the four address octets.
    """
    octets = ipaddress.IPv4Address(guest_addr).packed
    return "06:00:" + ":".join(f"{b:02x}" for b in octets)
