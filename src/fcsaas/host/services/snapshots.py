"""
Snapshot catalog.

Layout under SNAPSHOT_DIR:

    golden/{vm.snap,vm.mem,meta.json}
    tenants/<tenant_id>/<snapshot_id>/{vm.snap,vm.mem,meta.json}

Snapshots live outside tenant data dirs so deleting a tenant keeps them;
a new tenant can then be created from one. Snapshot ids are unique across
tenants.
"""

import datetime
import json
import os
import secrets
import shutil
from dataclasses import dataclass

from fcsaas.exceptions import InvalidRequest
from fcsaas.firecracker import naming
from fcsaas.host.services.lifecycle import SnapshotArtifacts
from fcsaas.models.requests import is_valid_tenant_id
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)

LATEST = "latest"
GOLDEN = naming.GOLDEN_SNAPSHOT_ID


@dataclass
class SnapshotInfo:
    snapshot_id: str
    tenant_id: str
    tier: str
    created_at: datetime.datetime
    directory: str

    @property
    def artifacts(self) -> SnapshotArtifacts:
        return SnapshotArtifacts.in_dir(self.directory)

    def size_bytes(self) -> int:
        total = 0
        for path in (self.artifacts.state_file, self.artifacts.mem_file):
            try:
                total += os.path.getsize(path)
            except OSError:
                pass
        return total

    def to_dict(self) -> dict:
        return {
            "snapshot_id": self.snapshot_id,
            "tenant_id": self.tenant_id,
            "tier": self.tier,
            "created_at": self.created_at,
            "mem_file": self.artifacts.mem_file,
            "state_file": self.artifacts.state_file,
            "size_bytes": self.size_bytes(),
        }


class SnapshotCatalog:
    """Allocates snapshot directories and resolves snapshot references."""

    def __init__(self, snapshot_dir: str):
        self.snapshot_dir = snapshot_dir

    # =========================================================================
    # Writing
    # =========================================================================

    def new_snapshot_dir(self, tenant_id: str) -> tuple[str, str]:
        """Reserve a fresh (snapshot_id, directory) for a tenant."""
        stamp = datetime.datetime.now().strftime("%Y%m%dT%H%M%S")
        snapshot_id = f"{stamp}-{secrets.token_hex(3)}"
        directory = os.path.join(
            naming.tenant_snapshot_root(self.snapshot_dir, tenant_id), snapshot_id
        )
        return snapshot_id, directory

    def record(self, tenant_id: str, tier: str, snapshot_id: str, directory: str) -> SnapshotInfo:
        """Write snapshot metadata next to the captured artifacts."""
        info = SnapshotInfo(
            snapshot_id=snapshot_id,
            tenant_id=tenant_id,
            tier=tier,
            created_at=datetime.datetime.now(),
            directory=directory,
        )
        self._write_meta(info)
        return info

    def discard(self, directory: str) -> None:
        shutil.rmtree(directory, ignore_errors=True)

    def promote(self, snapshot_id: str) -> SnapshotInfo:
        """
        Copy a tenant snapshot to the golden slot, replacing any previous one.

        Raises:
            InvalidRequest: If the snapshot does not exist.
        """
        source = self.find(snapshot_id)
        if source is None:
            raise InvalidRequest(f"Snapshot not found: {snapshot_id}")

        golden_dir = naming.golden_snapshot_dir(self.snapshot_dir)
        staging = f"{golden_dir}.tmp-{secrets.token_hex(3)}"
        os.makedirs(staging, mode=0o700)
        try:
            for path in (source.artifacts.state_file, source.artifacts.mem_file):
                shutil.copy2(path, staging)
            promoted = SnapshotInfo(
                snapshot_id=GOLDEN,
                tenant_id=source.tenant_id,
                tier=source.tier,
                created_at=datetime.datetime.now(),
                directory=staging,
            )
            self._write_meta(promoted)
            shutil.rmtree(golden_dir, ignore_errors=True)
            os.rename(staging, golden_dir)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        promoted.directory = golden_dir
        logger.info(f"Promoted snapshot {snapshot_id} ({source.tenant_id}) to golden")
        return promoted

    def _write_meta(self, info: SnapshotInfo) -> None:
        os.makedirs(info.directory, mode=0o700, exist_ok=True)
        meta = {
            "snapshot_id": info.snapshot_id,
            "tenant_id": info.tenant_id,
            "tier": info.tier,
            "created_at": info.created_at.isoformat(),
        }
        with open(os.path.join(info.directory, naming.SNAPSHOT_META_FILE), "w") as f:
            json.dump(meta, f)

    # =========================================================================
    # Reading
    # =========================================================================

    def _load(self, directory: str) -> SnapshotInfo | None:
        meta_path = os.path.join(directory, naming.SNAPSHOT_META_FILE)
        try:
            with open(meta_path) as f:
                meta = json.load(f)
            info = SnapshotInfo(
                snapshot_id=meta["snapshot_id"],
                tenant_id=meta["tenant_id"],
                tier=meta["tier"],
                created_at=datetime.datetime.fromisoformat(meta["created_at"]),
                directory=directory,
            )
        except (OSError, ValueError, KeyError):
            return None
        return info if info.artifacts.exists() else None

    def for_tenant(self, tenant_id: str) -> list[SnapshotInfo]:
        """Snapshots of one tenant, oldest first."""
        root = naming.tenant_snapshot_root(self.snapshot_dir, tenant_id)
        if not os.path.isdir(root):
            return []
        found = [self._load(os.path.join(root, name)) for name in os.listdir(root)]
        return sorted((s for s in found if s), key=lambda s: (s.created_at, s.snapshot_id))

    def latest(self, tenant_id: str) -> SnapshotInfo | None:
        snapshots = self.for_tenant(tenant_id)
        return snapshots[-1] if snapshots else None

    def golden(self) -> SnapshotInfo | None:
        return self._load(naming.golden_snapshot_dir(self.snapshot_dir))

    def find(self, snapshot_id: str) -> SnapshotInfo | None:
        """Find a tenant snapshot by id across all tenants."""
        root = os.path.join(self.snapshot_dir, "tenants")
        if not is_valid_tenant_id(snapshot_id) or not os.path.isdir(root):
            return None
        for tenant_id in os.listdir(root):
            candidate = os.path.join(root, tenant_id, snapshot_id)
            if os.path.isdir(candidate):
                info = self._load(candidate)
                if info:
                    return info
        return None

    def resolve(self, ref: str, tenant_id: str, tier: str) -> SnapshotInfo:
        """
        Resolve "golden", "latest" or a snapshot id to a usable snapshot.

        Raises:
            InvalidRequest: If the snapshot is missing or was taken from a
                guest of a different tier.
        """
        if ref == GOLDEN:
            info = self.golden()
        elif ref == LATEST:
            info = self.latest(tenant_id)
        else:
            info = self.find(ref)

        if info is None:
            raise InvalidRequest(f"Snapshot not found: {ref}")
        if info.tier != tier:
            raise InvalidRequest(
                f"Snapshot {ref} was taken from a {info.tier} guest, tenant is {tier}"
            )
        return info
