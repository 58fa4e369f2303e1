"""
Tenant registry.

The registry is the source of truth for tenants and the only writer of
tenant status. It keeps an in-memory record table (read without locks by
the API, the proxy and the health monitor) backed by the ``tenants``
SQLite table, and orchestrates the other services:

    create:  allocate subnet -> storage -> network setup -> boot
    remove:  stop health checks -> stop guest -> network teardown
             -> release subnet -> delete storage and row

Administrative mutations of one tenant are serialized by a per-tenant
``asyncio.Lock``; unrelated tenants proceed independently. Creation rolls
back everything it set up when any step fails, so a failed create leaves
no record behind.
"""

from __future__ import annotations

import asyncio
import datetime
import os
import threading
from dataclasses import dataclass, field

from fcsaas.db.base import run_in_executor
from fcsaas.db.tenant import Tenant
from fcsaas.exceptions import (
    ControlPlaneError,
    DuplicateTenant,
    GuestControlError,
    InvalidRequest,
    TenantNotFound,
)
from fcsaas.firecracker import naming
from fcsaas.firecracker.process import GuestHandle
from fcsaas.host.metrics import track_operation
from fcsaas.host.services.disks import TenantPaths, TenantStorage
from fcsaas.host.services.health_monitor import HealthMonitor
from fcsaas.host.services.lifecycle import (
    GuestLifecycleController,
    GuestSpec,
    check_transition,
)
from fcsaas.host.services.network import NetworkIsolationManager
from fcsaas.host.services.snapshots import SnapshotCatalog, SnapshotInfo
from fcsaas.host.services.subnet_allocator import SubnetAllocator
from fcsaas.models.enums import LifecycleAction, TenantStatus, Tier
from fcsaas.models.requests import TenantCreateRequest, is_valid_tenant_id
from fcsaas.models.subnet_pool import SubnetLease
from fcsaas.models.tier import tier_spec
from fcsaas.utils.logger import format_traceback, get_logger

logger = get_logger(__name__)


# =============================================================================
# Tenant Record
# =============================================================================


@dataclass
class TenantRecord:
    """In-memory state of one tenant."""

    tenant_id: str
    tier: Tier
    status: TenantStatus
    lease: SubnetLease | None = None
    device_name: str | None = None
    handle: GuestHandle | None = None
    env_vars: dict[str, str] = field(default_factory=dict, repr=False)
    data_dir: str | None = None
    pending_action: str | None = None
    last_error: str | None = None
    restored_from: str | None = None
    created_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    updated_at: datetime.datetime = field(default_factory=datetime.datetime.now)

    @property
    def guest_addr(self) -> str | None:
        return self.lease.guest_addr if self.lease else None

    @property
    def env_keys(self) -> list[str]:
        return sorted(self.env_vars)

    def set_status(self, status: TenantStatus, error: str | None = None) -> None:
        self.status = status
        self.last_error = error
        self.updated_at = datetime.datetime.now()

    def to_dict(self) -> dict:
        """Public view of the record; secrets are reduced to their key names."""
        return {
            "tenant_id": self.tenant_id,
            "tier": self.tier,
            "status": self.status,
            "subnet": self.lease.to_dict() if self.lease else None,
            "guest_addr": self.guest_addr,
            "device_name": self.device_name,
            "pid": self.handle.pid if self.handle else None,
            "env_keys": self.env_keys,
            "pending_action": self.pending_action,
            "last_error": self.last_error,
            "restored_from": self.restored_from,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# =============================================================================
# Registry
# =============================================================================


class TenantRegistry:
    """
    Durable tenant table plus orchestration of tenant resources.

    Args:
        config: HostConfig (paths, guest ports, behaviour flags).
        allocator: Subnet allocator.
        network: Network isolation manager.
        controller: Guest lifecycle controller.
        storage: Tenant disk manager.
        snapshots: Snapshot catalog.
        monitor: Health monitor (its exit callback is bound to this registry).
    """

    def __init__(
        self,
        config,
        allocator: SubnetAllocator,
        network: NetworkIsolationManager,
        controller: GuestLifecycleController,
        storage: TenantStorage,
        snapshots: SnapshotCatalog,
        monitor: HealthMonitor,
    ):
        self.config = config
        self.allocator = allocator
        self.network = network
        self.controller = controller
        self.storage = storage
        self.snapshots = snapshots
        self.monitor = monitor
        self.monitor.on_guest_exited = self.on_guest_exited

        self._records: dict[str, TenantRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Guards the two tables above; never held across an await
        self._table_lock = threading.Lock()

    # =========================================================================
    # Reads (lock-free, no guest I/O)
    # =========================================================================

    def list(self) -> list[TenantRecord]:
        return sorted(self._records.values(), key=lambda r: r.created_at)

    def get(self, tenant_id: str) -> TenantRecord:
        """
        Raises:
            TenantNotFound: If no such tenant exists.
        """
        record = self._records.get(tenant_id)
        if record is None:
            raise TenantNotFound(tenant_id)
        return record

    def find(self, tenant_id: str) -> TenantRecord | None:
        return self._records.get(tenant_id)

    def list_snapshots(self, tenant_id: str) -> list[SnapshotInfo]:
        self.get(tenant_id)
        return self.snapshots.for_tenant(tenant_id)

    # =========================================================================
    # Locking Helpers
    # =========================================================================

    def _lock_for(self, tenant_id: str) -> tuple[TenantRecord, asyncio.Lock]:
        with self._table_lock:
            record = self._records.get(tenant_id)
            if record is None:
                raise TenantNotFound(tenant_id)
            return record, self._locks[tenant_id]

    def _ensure_current(self, record: TenantRecord) -> None:
        """Fail if the record was removed while waiting for its lock."""
        if self._records.get(record.tenant_id) is not record:
            raise TenantNotFound(record.tenant_id)

    def _insert(self, record: TenantRecord) -> asyncio.Lock:
        with self._table_lock:
            if record.tenant_id in self._records:
                raise DuplicateTenant(record.tenant_id)
            lock = asyncio.Lock()
            self._records[record.tenant_id] = record
            self._locks[record.tenant_id] = lock
            return lock

    def _drop(self, tenant_id: str) -> None:
        with self._table_lock:
            self._records.pop(tenant_id, None)
            self._locks.pop(tenant_id, None)

    # =========================================================================
    # Persistence
    # =========================================================================

    def _save_sync(self, fields: dict) -> None:
        Tenant.replace(**fields).execute()

    def _row_fields(self, record: TenantRecord) -> dict:
        lease = record.lease
        row = Tenant(
            tenant_id=record.tenant_id,
            tier=record.tier.value,
            status=record.status.value,
            subnet_index=lease.index if lease else None,
            gateway_addr=lease.gateway_addr if lease else None,
            guest_addr=lease.guest_addr if lease else None,
            netmask=lease.netmask if lease else None,
            device_name=record.device_name,
            pid=record.handle.pid if record.handle else None,
            socket_path=record.handle.socket_path if record.handle else None,
            started_at=(
                datetime.datetime.fromtimestamp(record.handle.started_at)
                if record.handle
                else None
            ),
            data_dir=record.data_dir,
            last_error=record.last_error,
            restored_from=record.restored_from,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        row.set_env_vars(record.env_vars)
        return dict(row.__data__)

    async def _persist(self, record: TenantRecord) -> None:
        await run_in_executor(self._save_sync, self._row_fields(record))

    async def _delete_row(self, tenant_id: str) -> None:
        await run_in_executor(
            lambda: Tenant.delete().where(Tenant.tenant_id == tenant_id).execute()
        )

    # =========================================================================
    # Guest Description
    # =========================================================================

    def _guest_spec(self, record: TenantRecord, paths: TenantPaths) -> GuestSpec:
        return GuestSpec(
            tenant_id=record.tenant_id,
            tier=record.tier.value,
            resources=tier_spec(record.tier),
            lease=record.lease,
            device_name=record.device_name,
            kernel_path=self.config.KERNEL_PATH,
            rootfs_path=paths.rootfs,
            data_volume_path=paths.data_volume,
            socket_path=naming.socket_path(self.config.SOCKET_DIR, record.tenant_id),
            log_path=paths.log_file,
            dns=self.config.GUEST_DNS,
            service_port=self.config.GUEST_SERVICE_PORT,
            env_vars=record.env_vars,
        )

    def _default_snapshot(self, tier: Tier) -> SnapshotInfo | None:
        """Golden snapshot for fresh tenants, when enabled and tier-compatible."""
        if not self.config.USE_GOLDEN_SNAPSHOT:
            return None
        golden = self.snapshots.golden()
        if golden is None or golden.tier != tier.value:
            return None
        return golden

    # =========================================================================
    # Create
    # =========================================================================

    async def create(self, request: TenantCreateRequest) -> TenantRecord:
        """
        Create a tenant and boot its guest.

        Raises:
            InvalidRequest: Malformed id or unknown snapshot.
            DuplicateTenant: Id already present, in any status.
            PoolExhausted: No free subnet block.
            NetworkSetupFailed, GuestBootTimeout, GuestControlError: Setup
                failed; everything done so far has been rolled back.
        """
        tenant_id = request.tenant_id
        if not is_valid_tenant_id(tenant_id):
            raise InvalidRequest(
                f"Invalid tenant id {tenant_id!r}: use 1-63 letters, digits, '.', '_' "
                f"or '-', starting with a letter or digit"
            )
        tier = Tier(request.tier)
        record = TenantRecord(
            tenant_id=tenant_id,
            tier=tier,
            status=TenantStatus.CREATING,
            env_vars=dict(request.env_vars),
        )
        lock = self._insert(record)

        async with lock:
            with track_operation("create"):
                try:
                    await self._create_resources(record, request.restore_from)
                except BaseException as e:
                    logger.error(f"Creating tenant {tenant_id} failed: {e}")
                    await self._rollback_create(record)
                    raise

        self.monitor.start(tenant_id, record.guest_addr, record.handle)
        logger.info(
            f"Tenant {tenant_id} created: tier={tier.value} ip={record.guest_addr} "
            f"dev={record.device_name}"
        )
        return record

    async def _create_resources(self, record: TenantRecord, restore_from: str | None) -> None:
        tenant_id = record.tenant_id
        resources = tier_spec(record.tier)

        snapshot = None
        if restore_from:
            snapshot = self.snapshots.resolve(restore_from, tenant_id, record.tier.value)
        else:
            snapshot = self._default_snapshot(record.tier)

        # Persisted so a crash mid-creation is visible at recovery
        await self._persist(record)

        record.lease = self.allocator.allocate(tenant_id)
        paths = await self.storage.prepare(tenant_id, resources.disk_mib, record.env_vars)
        record.data_dir = paths.data_dir
        record.device_name = await self.network.setup(tenant_id, record.lease)

        record.handle = await self.controller.boot(
            self._guest_spec(record, paths),
            snapshot.artifacts if snapshot else None,
        )
        record.restored_from = snapshot.snapshot_id if snapshot else None
        record.set_status(TenantStatus.RUNNING)
        await self._persist(record)

    async def _rollback_create(self, record: TenantRecord) -> None:
        tenant_id = record.tenant_id
        steps = []
        if record.handle is not None:
            steps.append(("guest", lambda: self.controller.kill(record.handle)))
        if record.device_name is not None:
            steps.append(
                (
                    "network",
                    lambda: self.network.teardown(tenant_id, record.device_name, record.lease),
                )
            )
        if record.data_dir is not None:
            steps.append(("storage", lambda: self.storage.remove(tenant_id)))
        steps.append(("row", lambda: self._delete_row(tenant_id)))

        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error(
                    f"Rollback of {name} for {tenant_id} failed: {e}\n{format_traceback(e)}"
                )
        self.allocator.release(tenant_id)
        self._drop(tenant_id)

    # =========================================================================
    # Lifecycle Actions
    # =========================================================================

    async def _mark_failed(self, record: TenantRecord, error: Exception) -> None:
        record.set_status(TenantStatus.FAILED, str(error))
        await self._persist(record)
        logger.error(f"Tenant {record.tenant_id} failed: {error}")

    async def start(self, tenant_id: str, from_snapshot: str | None = None) -> TenantRecord:
        """
        Boot a stopped or failed tenant, cold or from a snapshot.

        Storage or network failures leave the tenant in its prior status;
        boot failures move it to failed.
        """
        record, lock = self._lock_for(tenant_id)
        async with lock:
            self._ensure_current(record)
            check_transition(tenant_id, record.status, LifecycleAction.START)
            record.pending_action = "starting"
            try:
                with track_operation("start"):
                    snapshot = None
                    if from_snapshot:
                        snapshot = self.snapshots.resolve(
                            from_snapshot, tenant_id, record.tier.value
                        )
                    if record.handle is not None:
                        # A failed guest may still have a process around
                        await self.controller.kill(record.handle)
                        record.handle = None

                    try:
                        if record.lease is None:
                            record.lease = self.allocator.allocate(tenant_id)
                        paths = await self.storage.prepare(
                            tenant_id, tier_spec(record.tier).disk_mib, record.env_vars
                        )
                        record.data_dir = paths.data_dir
                        record.device_name = await self.network.setup(tenant_id, record.lease)
                    except Exception as e:
                        record.last_error = str(e)
                        await self._persist(record)
                        raise

                    try:
                        record.handle = await self.controller.boot(
                            self._guest_spec(record, paths),
                            snapshot.artifacts if snapshot else None,
                        )
                    except ControlPlaneError as e:
                        await self._mark_failed(record, e)
                        raise

                    record.set_status(TenantStatus.RUNNING)
                    await self._persist(record)
            finally:
                record.pending_action = None

        self.monitor.start(tenant_id, record.guest_addr, record.handle)
        logger.info(f"Tenant {tenant_id} started")
        return record

    async def stop(self, tenant_id: str) -> TenantRecord:
        record, lock = self._lock_for(tenant_id)
        async with lock:
            self._ensure_current(record)
            check_transition(tenant_id, record.status, LifecycleAction.STOP)
            await self.monitor.stop(tenant_id)
            record.pending_action = "stopping"
            try:
                with track_operation("stop"):
                    await self._stop_guest(record)
                    record.set_status(TenantStatus.STOPPED)
                    await self._persist(record)
            finally:
                record.pending_action = None

        logger.info(f"Tenant {tenant_id} stopped")
        return record

    async def _stop_guest(self, record: TenantRecord) -> None:
        if record.handle is None:
            return
        try:
            await self.controller.stop(
                record.handle,
                record.tenant_id,
                paused=record.status == TenantStatus.PAUSED,
            )
        except GuestControlError as e:
            await self._mark_failed(record, e)
            raise
        record.handle = None

    async def pause(self, tenant_id: str) -> TenantRecord:
        record, lock = self._lock_for(tenant_id)
        async with lock:
            self._ensure_current(record)
            check_transition(tenant_id, record.status, LifecycleAction.PAUSE)
            await self.monitor.stop(tenant_id)
            record.pending_action = "pausing"
            try:
                with track_operation("pause"):
                    try:
                        await self.controller.pause(record.handle, tenant_id)
                    except GuestControlError as e:
                        await self._mark_failed(record, e)
                        raise
                    record.set_status(TenantStatus.PAUSED)
                    await self._persist(record)
            finally:
                record.pending_action = None
        return record

    async def resume(self, tenant_id: str) -> TenantRecord:
        record, lock = self._lock_for(tenant_id)
        async with lock:
            self._ensure_current(record)
            check_transition(tenant_id, record.status, LifecycleAction.RESUME)
            record.pending_action = "resuming"
            try:
                with track_operation("resume"):
                    try:
                        await self.controller.resume(record.handle, tenant_id)
                    except GuestControlError as e:
                        await self._mark_failed(record, e)
                        raise
                    record.set_status(TenantStatus.RUNNING)
                    await self._persist(record)
            finally:
                record.pending_action = None

        self.monitor.start(tenant_id, record.guest_addr, record.handle)
        return record

    async def snapshot(self, tenant_id: str) -> SnapshotInfo:
        """
        Capture a paused tenant's memory and device state.

        The tenant stays paused. Snapshots are stored outside the tenant's
        data dir and survive its deletion.
        """
        record, lock = self._lock_for(tenant_id)
        async with lock:
            self._ensure_current(record)
            check_transition(tenant_id, record.status, LifecycleAction.SNAPSHOT)
            record.pending_action = "snapshotting"
            try:
                with track_operation("snapshot"):
                    snapshot_id, directory = self.snapshots.new_snapshot_dir(tenant_id)
                    try:
                        await self.controller.snapshot(record.handle, tenant_id, directory)
                    except GuestControlError as e:
                        await asyncio.to_thread(self.snapshots.discard, directory)
                        await self._mark_failed(record, e)
                        raise
                    info = await asyncio.to_thread(
                        self.snapshots.record,
                        tenant_id,
                        record.tier.value,
                        snapshot_id,
                        directory,
                    )
            finally:
                record.pending_action = None

        logger.info(f"Tenant {tenant_id} snapshot {info.snapshot_id} captured")
        return info

    async def update_env(self, tenant_id: str, env_vars: dict[str, str]) -> TenantRecord:
        """Replace a tenant's secrets; they reach the guest on its next boot."""
        record, lock = self._lock_for(tenant_id)
        async with lock:
            self._ensure_current(record)
            record.env_vars = dict(env_vars)
            record.updated_at = datetime.datetime.now()
            await self._persist(record)

        logger.info(f"Tenant {tenant_id} environment updated ({len(env_vars)} keys)")
        return record

    # =========================================================================
    # Remove
    # =========================================================================

    async def remove(self, tenant_id: str) -> None:
        """
        Destroy a tenant: guest, network, subnet, storage and row.

        Safe on failed tenants. If a step fails the record stays (marked
        failed) so the delete can be retried.
        """
        record, lock = self._lock_for(tenant_id)
        async with lock:
            self._ensure_current(record)
            record.pending_action = "deleting"
            await self.monitor.stop(tenant_id)
            try:
                with track_operation("delete"):
                    await self._stop_guest(record)
                    if record.device_name and record.lease:
                        await self.network.teardown(tenant_id, record.device_name, record.lease)
                        record.device_name = None
                    self.allocator.release(tenant_id)
                    await self.storage.remove(tenant_id)
                    await self._delete_row(tenant_id)
            except Exception as e:
                record.pending_action = None
                if record.status != TenantStatus.FAILED:
                    await self._mark_failed(record, e)
                raise
            self._drop(tenant_id)

        logger.info(f"Tenant {tenant_id} deleted")

    # =========================================================================
    # Guest Exit Reporting
    # =========================================================================

    async def on_guest_exited(self, tenant_id: str, pid: int) -> None:
        """Called by the health monitor when a guest process disappears."""
        record = self._records.get(tenant_id)
        if record is None:
            return
        lock = self._locks.get(tenant_id)
        if lock is None:
            return
        async with lock:
            if self._records.get(tenant_id) is not record:
                return
            if record.handle is None or record.handle.pid != pid:
                return
            if record.status not in (TenantStatus.RUNNING, TenantStatus.PAUSED):
                return
            self.controller.forget(record.handle)
            record.handle = None
            await self._mark_failed(
                record, GuestControlError("guest process exited unexpectedly", tenant_id)
            )
            await self.monitor.stop(tenant_id)

    # =========================================================================
    # Recovery
    # =========================================================================

    async def recover(self) -> None:
        """
        Rebuild the record table from the database after a restart.

        Subnet leases are re-owned. Running/paused rows whose Firecracker
        process still serves the expected socket are adopted; otherwise they
        become stopped. Rows left in creating become failed. Finally any
        Firecracker process that matches no live record is reconciled.
        """
        rows = await run_in_executor(lambda: list(Tenant.select()))
        processes = await asyncio.to_thread(
            self.controller.launcher.find_guest_processes, self.config.SOCKET_DIR
        )
        live = {os.path.abspath(sock): pid for pid, sock in processes}

        for row in rows:
            record = self._record_from_row(row)
            changed = False

            if row.subnet_index is not None:
                try:
                    record.lease = self.allocator.restore(row.tenant_id, row.subnet_index)
                except ValueError as e:
                    record.set_status(TenantStatus.FAILED, f"subnet restore failed: {e}")
                    changed = True

            if record.status == TenantStatus.CREATING:
                record.set_status(
                    TenantStatus.FAILED, "control plane restarted during creation"
                )
                changed = True
            elif record.status in (TenantStatus.RUNNING, TenantStatus.PAUSED):
                sock = os.path.abspath(row.socket_path) if row.socket_path else None
                if row.pid is not None and sock and live.get(sock) == row.pid:
                    record.handle = GuestHandle(
                        pid=row.pid,
                        socket_path=row.socket_path,
                        started_at=row.started_at.timestamp() if row.started_at else 0.0,
                    )
                    changed = await self._sync_adopted_state(record) or changed
                else:
                    logger.warning(f"Tenant {row.tenant_id} guest is gone; marking stopped")
                    record.set_status(TenantStatus.STOPPED)
                    changed = True

            self._insert(record)
            if changed:
                await self._persist(record)
            if record.status == TenantStatus.RUNNING and record.handle:
                self.monitor.start(record.tenant_id, record.guest_addr, record.handle)

        logger.info(f"Recovered {len(rows)} tenants from database")
        await self.reconcile_orphans(processes)

    async def _sync_adopted_state(self, record: TenantRecord) -> bool:
        """Align an adopted guest's status with what Firecracker reports."""
        try:
            state = await self.controller.instance_state(record.handle, record.tenant_id)
        except GuestControlError as e:
            logger.warning(f"Tenant {record.tenant_id} adopted without state check: {e}")
            return False

        observed = {"Running": TenantStatus.RUNNING, "Paused": TenantStatus.PAUSED}.get(state)
        if observed is None or observed == record.status:
            return False
        logger.warning(
            f"Tenant {record.tenant_id} recorded {record.status.value} but guest is "
            f"{state}; using {observed.value}"
        )
        record.set_status(observed)
        return True

    def _record_from_row(self, row: Tenant) -> TenantRecord:
        return TenantRecord(
            tenant_id=row.tenant_id,
            tier=Tier(row.tier),
            status=TenantStatus(row.status),
            device_name=row.device_name,
            env_vars=row.get_env_vars(),
            data_dir=row.data_dir,
            last_error=row.last_error,
            restored_from=row.restored_from,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def reconcile_orphans(
        self, processes: list[tuple[int, str]] | None = None
    ) -> list[int]:
        """
        Find Firecracker processes under our socket dir with no live record.

        Orphans are killed when RECONCILE_KILL_ORPHANS is set, otherwise
        only reported.

        Returns:
            Pids of the orphaned processes.
        """
        if processes is None:
            processes = await asyncio.to_thread(
                self.controller.launcher.find_guest_processes, self.config.SOCKET_DIR
            )
        owned = {r.handle.pid for r in self._records.values() if r.handle}
        orphans = [(pid, sock) for pid, sock in processes if pid not in owned]

        for pid, sock in orphans:
            owner = naming.extract_tenant_id_from_socket(sock) or "?"
            if self.config.RECONCILE_KILL_ORPHANS:
                logger.warning(f"Killing orphaned guest pid={pid} (tenant {owner})")
                await self.controller.kill(GuestHandle(pid=pid, socket_path=sock))
            else:
                logger.warning(f"Orphaned guest pid={pid} (tenant {owner}) left running")
        return [pid for pid, _ in orphans]

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def shutdown(self) -> None:
        """Stop health checks; guests keep running and are adopted on restart."""
        await self.monitor.stop_all()
