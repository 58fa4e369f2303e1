"""
Guest lifecycle control.

Drives one guest's Firecracker process through boot, pause, resume,
snapshot and stop. The controller never writes tenant status: it returns
results or raises typed errors, and the registry records the outcome.

Every exit path of ``boot`` that does not return a handle kills the
spawned process and removes its API socket.
"""

import asyncio
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Callable

from fcsaas.exceptions import GuestBootTimeout, GuestControlError, InvalidTransition
from fcsaas.firecracker.client import FirecrackerClient
from fcsaas.firecracker.naming import (
    SNAPSHOT_MEM_FILE,
    SNAPSHOT_STATE_FILE,
    guest_mac,
)
from fcsaas.firecracker.process import FirecrackerLauncher, GuestHandle
from fcsaas.models.enums import LifecycleAction, TenantStatus
from fcsaas.models.subnet_pool import SubnetLease
from fcsaas.models.tier import TierSpec
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)

POLL_INTERVAL_SECONDS = 0.1
GUEST_IFACE_ID = "eth0"


# =============================================================================
# State Machine
# =============================================================================

ALLOWED_TRANSITIONS: dict[TenantStatus, frozenset[LifecycleAction]] = {
    TenantStatus.CREATING: frozenset(),
    TenantStatus.RUNNING: frozenset({LifecycleAction.STOP, LifecycleAction.PAUSE}),
    TenantStatus.PAUSED: frozenset(
        {LifecycleAction.STOP, LifecycleAction.RESUME, LifecycleAction.SNAPSHOT}
    ),
    TenantStatus.STOPPED: frozenset({LifecycleAction.START}),
    TenantStatus.FAILED: frozenset({LifecycleAction.START}),
}


def check_transition(
    tenant_id: str, status: TenantStatus, action: LifecycleAction
) -> None:
    """
    Validate a lifecycle action against the current status.

    Raises:
        InvalidTransition: If the action is not allowed from ``status``.
    """
    if action not in ALLOWED_TRANSITIONS.get(status, frozenset()):
        raise InvalidTransition(tenant_id, status.value, action.value)


# =============================================================================
# Boot Description
# =============================================================================


@dataclass
class GuestSpec:
    """Everything needed to boot one tenant guest."""

    tenant_id: str
    tier: str
    resources: TierSpec
    lease: SubnetLease
    device_name: str
    kernel_path: str
    rootfs_path: str
    data_volume_path: str
    socket_path: str
    log_path: str
    dns: str = "8.8.8.8"
    service_port: int = 8080
    env_vars: dict[str, str] = field(default_factory=dict)

    def boot_args(self) -> str:
        return " ".join(
            [
                "init=/init",
                "console=ttyS0",
                "reboot=k",
                "panic=1",
                "pci=off",
                f"FC_VM_IP={self.lease.guest_addr}",
                f"FC_VM_GATEWAY={self.lease.gateway_addr}",
                f"FC_VM_NETMASK={self.lease.prefix_len}",
                f"FC_TENANT_ID={self.tenant_id}",
                f"FC_DNS={self.dns}",
                f"FC_PORT={self.service_port}",
            ]
        )

    def metadata(self) -> dict:
        """MMDS document: network identity and secrets for the guest agent."""
        return {
            "tenant": {"id": self.tenant_id, "tier": self.tier},
            "network": {
                "ip": self.lease.guest_addr,
                "gateway": self.lease.gateway_addr,
                "prefix_len": self.lease.prefix_len,
                "dns": self.dns,
            },
            "service_port": self.service_port,
            "env": dict(self.env_vars),
        }


@dataclass
class SnapshotArtifacts:
    state_file: str
    mem_file: str

    @classmethod
    def in_dir(cls, directory: str) -> "SnapshotArtifacts":
        return cls(
            state_file=os.path.join(directory, SNAPSHOT_STATE_FILE),
            mem_file=os.path.join(directory, SNAPSHOT_MEM_FILE),
        )

    def exists(self) -> bool:
        return os.path.isfile(self.state_file) and os.path.isfile(self.mem_file)


ClientFactory = Callable[[str, float, str], FirecrackerClient]


def _default_client_factory(socket_path: str, timeout: float, tenant_id: str):
    return FirecrackerClient(socket_path, timeout=timeout, tenant_id=tenant_id)


# =============================================================================
# Controller
# =============================================================================


class GuestLifecycleController:
    """
    Boots and controls Firecracker guests.

    Args:
        launcher: Process launcher (spawn, signal, liveness).
        client_factory: Builds an API client for (socket_path, timeout, tenant_id).
        boot_timeout: Bound on the whole boot sequence.
        socket_wait: Bound on waiting for the API socket to appear.
        api_timeout: Per-request API timeout.
        stop_timeout: Grace period after SendCtrlAltDel.
        kill_timeout: Wait after each signal.
    """

    def __init__(
        self,
        launcher: FirecrackerLauncher,
        client_factory: ClientFactory | None = None,
        boot_timeout: float = 30.0,
        socket_wait: float = 5.0,
        api_timeout: float = 5.0,
        stop_timeout: float = 10.0,
        kill_timeout: float = 3.0,
    ):
        self.launcher = launcher
        self.client_factory = client_factory or _default_client_factory
        self.boot_timeout = boot_timeout
        self.socket_wait = socket_wait
        self.api_timeout = api_timeout
        self.stop_timeout = stop_timeout
        self.kill_timeout = kill_timeout

    @classmethod
    def from_config(cls, cfg, launcher: FirecrackerLauncher, client_factory=None):
        return cls(
            launcher,
            client_factory=client_factory,
            boot_timeout=cfg.BOOT_TIMEOUT_SECONDS,
            socket_wait=cfg.SOCKET_WAIT_SECONDS,
            api_timeout=cfg.API_TIMEOUT_SECONDS,
            stop_timeout=cfg.STOP_TIMEOUT_SECONDS,
            kill_timeout=cfg.KILL_TIMEOUT_SECONDS,
        )

    def client(self, handle: GuestHandle, tenant_id: str) -> FirecrackerClient:
        return self.client_factory(handle.socket_path, self.api_timeout, tenant_id)

    def is_alive(self, handle: GuestHandle | None) -> bool:
        return handle is not None and self.launcher.is_alive(handle.pid)

    async def instance_state(self, handle: GuestHandle, tenant_id: str) -> str | None:
        """Firecracker's own view of the guest: "Running", "Paused" or "Not started"."""
        info = await self.client(handle, tenant_id).describe_instance()
        return info.get("state")

    # --- Boot ---

    async def boot(
        self, spec: GuestSpec, snapshot: SnapshotArtifacts | None = None
    ) -> GuestHandle:
        """
        Spawn Firecracker and bring the guest to running.

        Cold boot configures kernel, drives, machine, network and metadata,
        then starts the instance. With ``snapshot`` the guest is restored
        from its memory and state files instead, rewired to this tenant's
        TAP device and disks, and resumed.

        Raises:
            GuestBootTimeout: If the sequence exceeds the boot timeout.
            GuestControlError: On spawn or API failure.
        """
        self._remove_socket(spec.socket_path)
        try:
            pid = await asyncio.to_thread(
                self.launcher.spawn, spec.tenant_id, spec.socket_path, spec.log_path
            )
        except OSError as e:
            raise GuestControlError(f"cannot start firecracker: {e}", spec.tenant_id)

        handle = GuestHandle(pid=pid, socket_path=spec.socket_path)
        mode = "snapshot restore" if snapshot else "cold boot"
        started = time.monotonic()
        try:
            await asyncio.wait_for(
                self._boot_sequence(handle, spec, snapshot), timeout=self.boot_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Guest {spec.tenant_id} {mode} timed out")
            await self._discard(handle)
            raise GuestBootTimeout(spec.tenant_id, self.boot_timeout)
        except BaseException as e:
            logger.error(f"Guest {spec.tenant_id} {mode} failed: {e}")
            await self._discard(handle)
            raise

        elapsed = time.monotonic() - started
        logger.info(f"Guest {spec.tenant_id} running (pid={pid}, {mode} in {elapsed:.2f}s)")
        return handle

    async def _boot_sequence(
        self, handle: GuestHandle, spec: GuestSpec, snapshot: SnapshotArtifacts | None
    ) -> None:
        await self._wait_for_socket(handle, spec.tenant_id)
        client = self.client(handle, spec.tenant_id)
        if snapshot is None:
            await self._cold_boot(client, spec)
        else:
            await self._restore(client, spec, snapshot)

    async def _wait_for_socket(self, handle: GuestHandle, tenant_id: str) -> None:
        deadline = time.monotonic() + self.socket_wait
        while not os.path.exists(handle.socket_path):
            if not self.launcher.is_alive(handle.pid):
                raise GuestControlError(
                    "firecracker exited during startup (see its log)", tenant_id
                )
            if time.monotonic() >= deadline:
                raise GuestControlError(
                    f"API socket {handle.socket_path} did not appear within "
                    f"{self.socket_wait:g}s",
                    tenant_id,
                )
            await asyncio.sleep(POLL_INTERVAL_SECONDS)

    async def _cold_boot(self, client: FirecrackerClient, spec: GuestSpec) -> None:
        res = spec.resources
        await client.set_boot_source(spec.kernel_path, spec.boot_args())
        await client.set_drive("rootfs", spec.rootfs_path, is_root_device=True)
        await client.set_drive("data", spec.data_volume_path)
        await client.set_machine_config(res.vcpu_count, res.memory_mib)
        await client.set_network_interface(
            GUEST_IFACE_ID,
            spec.device_name,
            guest_mac(spec.lease.guest_addr),
            rate_limiter=res.rate_limiter(),
        )
        await client.configure_mmds(GUEST_IFACE_ID)
        await client.set_metadata(spec.metadata())
        await client.start_instance()

    async def _restore(
        self, client: FirecrackerClient, spec: GuestSpec, snapshot: SnapshotArtifacts
    ) -> None:
        await client.load_snapshot(
            snapshot.state_file,
            snapshot.mem_file,
            network_overrides=[
                {"iface_id": GUEST_IFACE_ID, "host_dev_name": spec.device_name}
            ],
        )
        await client.update_drive_path("rootfs", spec.rootfs_path)
        await client.update_drive_path("data", spec.data_volume_path)
        await client.set_metadata(spec.metadata())
        await client.resume()

    # --- Running Guest Control ---

    async def pause(self, handle: GuestHandle, tenant_id: str) -> None:
        await self.client(handle, tenant_id).pause()
        logger.info(f"Guest {tenant_id} paused")

    async def resume(self, handle: GuestHandle, tenant_id: str) -> None:
        await self.client(handle, tenant_id).resume()
        logger.info(f"Guest {tenant_id} resumed")

    async def snapshot(
        self, handle: GuestHandle, tenant_id: str, target_dir: str
    ) -> SnapshotArtifacts:
        """
        Capture a full snapshot of a paused guest into ``target_dir``.

        The guest stays paused afterwards.
        """
        await asyncio.to_thread(os.makedirs, target_dir, 0o700, True)
        artifacts = SnapshotArtifacts.in_dir(target_dir)
        await self.client(handle, tenant_id).create_snapshot(
            artifacts.state_file, artifacts.mem_file
        )
        logger.info(f"Guest {tenant_id} snapshot written to {target_dir}")
        return artifacts

    async def stop(self, handle: GuestHandle, tenant_id: str, paused: bool = False) -> None:
        """
        Stop a guest: CtrlAltDel, bounded wait, SIGTERM, then SIGKILL.

        A paused guest cannot react to CtrlAltDel, so it goes straight to
        signals. The API socket is removed on every path.

        Raises:
            GuestControlError: If the process survives SIGKILL.
        """
        try:
            exited = not self.launcher.is_alive(handle.pid)
            if not exited and not paused:
                try:
                    await self.client(handle, tenant_id).send_ctrl_alt_del()
                    exited = await self._wait_exit(handle.pid, self.stop_timeout)
                except GuestControlError as e:
                    logger.warning(f"Graceful shutdown request failed for {tenant_id}: {e}")

            for sig in (signal.SIGTERM, signal.SIGKILL):
                if exited:
                    break
                logger.warning(
                    f"Guest {tenant_id} did not stop gracefully, sending {sig.name}"
                )
                self.launcher.send_signal(handle.pid, sig)
                exited = await self._wait_exit(handle.pid, self.kill_timeout)
        finally:
            self._remove_socket(handle.socket_path)

        if not exited:
            raise GuestControlError(
                f"firecracker pid {handle.pid} survived SIGKILL", tenant_id
            )
        logger.info(f"Guest {tenant_id} stopped")

    async def kill(self, handle: GuestHandle) -> None:
        """Force kill a guest immediately and remove its socket."""
        await self._discard(handle)

    def forget(self, handle: GuestHandle) -> None:
        """Drop the leftovers of a guest whose process already exited."""
        self._remove_socket(handle.socket_path)

    # --- Helpers ---

    async def _wait_exit(self, pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while self.launcher.is_alive(pid):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
        return True

    async def _discard(self, handle: GuestHandle) -> None:
        self.launcher.kill(handle.pid)
        if not await self._wait_exit(handle.pid, self.kill_timeout):
            logger.warning(f"Firecracker pid {handle.pid} still alive after SIGKILL")
        self._remove_socket(handle.socket_path)

    def _remove_socket(self, path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
