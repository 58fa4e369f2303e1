"""Tests for the guest lifecycle controller and transition table."""

import os
import signal

import pytest

from fcsaas.exceptions import GuestBootTimeout, GuestControlError, InvalidTransition
from fcsaas.host.services.lifecycle import (
    GuestLifecycleController,
    GuestSpec,
    SnapshotArtifacts,
    check_transition,
)
from fcsaas.models.enums import LifecycleAction, TenantStatus, Tier
from fcsaas.models.subnet_pool import SubnetPoolConfig
from fcsaas.models.tier import tier_spec
from tests.conftest import FakeHypervisor, FakeLauncher

# ============================================================================
# Transition Table
# ============================================================================

ALLOWED = {
    (TenantStatus.RUNNING, LifecycleAction.STOP),
    (TenantStatus.RUNNING, LifecycleAction.PAUSE),
    (TenantStatus.PAUSED, LifecycleAction.STOP),
    (TenantStatus.PAUSED, LifecycleAction.RESUME),
    (TenantStatus.PAUSED, LifecycleAction.SNAPSHOT),
    (TenantStatus.STOPPED, LifecycleAction.START),
    (TenantStatus.FAILED, LifecycleAction.START),
}


class TestCheckTransition:
    @pytest.mark.parametrize("status", list(TenantStatus))
    @pytest.mark.parametrize("action", list(LifecycleAction))
    def test_matrix(self, status: TenantStatus, action: LifecycleAction) -> None:
        if (status, action) in ALLOWED:
            check_transition("acme", status, action)
        else:
            with pytest.raises(InvalidTransition) as exc:
                check_transition("acme", status, action)
            assert exc.value.status_code == 409
            assert exc.value.message == f"Cannot {action.value} tenant acme while {status.value}"


# ============================================================================
# Controller
# ============================================================================


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def hypervisor(launcher) -> FakeHypervisor:
    return FakeHypervisor(launcher)


@pytest.fixture
def controller(launcher, hypervisor) -> GuestLifecycleController:
    return GuestLifecycleController(
        launcher,
        client_factory=hypervisor.client_factory,
        boot_timeout=0.5,
        socket_wait=0.3,
        api_timeout=0.2,
        stop_timeout=0.2,
        kill_timeout=0.2,
    )


@pytest.fixture
def spec(tmp_path) -> GuestSpec:
    return GuestSpec(
        tenant_id="acme",
        tier=Tier.PRO.value,
        resources=tier_spec(Tier.PRO),
        lease=SubnetPoolConfig.parse("172.16.0.0/24").lease_for_index(1),
        device_name="fc-acme",
        kernel_path="/opt/vmlinux",
        rootfs_path=str(tmp_path / "rootfs.ext4"),
        data_volume_path=str(tmp_path / "data.ext4"),
        socket_path=str(tmp_path / "fc-acme.sock"),
        log_path=str(tmp_path / "firecracker.log"),
        env_vars={"API_KEY": "secret"},
    )


class TestBoot:
    async def test_cold_boot_sequence(self, controller, hypervisor, spec) -> None:
        handle = await controller.boot(spec)
        vm = hypervisor.vm(handle.socket_path)

        assert vm.paths() == [
            "PUT /boot-source",
            "PUT /drives/rootfs",
            "PUT /drives/data",
            "PUT /machine-config",
            "PUT /network-interfaces/eth0",
            "PUT /mmds/config",
            "PUT /mmds",
            "PUT /actions",
        ]
        assert vm.state == "Running"
        assert "FC_VM_IP=172.16.0.6" in vm.boot_args
        assert "FC_VM_GATEWAY=172.16.0.5" in vm.boot_args
        assert vm.metadata["env"] == {"API_KEY": "secret"}
        assert "secret" not in vm.boot_args

    async def test_machine_config_follows_tier(self, controller, hypervisor, spec) -> None:
        handle = await controller.boot(spec)
        calls = {path: body for _, path, body in hypervisor.vm(handle.socket_path).calls}
        assert calls["/machine-config"]["vcpu_count"] == 1
        assert calls["/machine-config"]["mem_size_mib"] == 256
        assert calls["/network-interfaces/eth0"]["guest_mac"] == "06:00:ac:10:00:06"

    async def test_boot_timeout_discards_process(
        self, controller, launcher, hypervisor, spec
    ) -> None:
        hypervisor.hang.add("PUT /actions")

        with pytest.raises(GuestBootTimeout):
            await controller.boot(spec)

        assert launcher.alive == {}
        assert not os.path.exists(spec.socket_path)

    async def test_api_error_discards_process(
        self, controller, launcher, hypervisor, spec
    ) -> None:
        hypervisor.fail["PUT /boot-source"] = 400

        with pytest.raises(GuestControlError, match="injected failure"):
            await controller.boot(spec)
        assert launcher.alive == {}
        assert not os.path.exists(spec.socket_path)

    async def test_spawn_failure(self, controller, launcher, spec) -> None:
        launcher.spawn_error = FileNotFoundError("firecracker: not found")
        with pytest.raises(GuestControlError, match="cannot start firecracker"):
            await controller.boot(spec)

    async def test_socket_never_appears(self, controller, launcher, spec) -> None:
        launcher.create_socket = False
        with pytest.raises(GuestControlError, match="did not appear"):
            await controller.boot(spec)
        assert launcher.alive == {}

    async def test_restore_skips_cold_boot(
        self, controller, hypervisor, spec, tmp_path
    ) -> None:
        handle = await controller.boot(spec)
        await controller.pause(handle, "acme")
        artifacts = await controller.snapshot(handle, "acme", str(tmp_path / "snap"))
        await controller.stop(handle, "acme", paused=True)
        assert artifacts.exists()

        restored = await controller.boot(spec, snapshot=artifacts)
        vm = hypervisor.vm(restored.socket_path)

        assert "PUT /actions" not in vm.paths()
        assert vm.paths()[0] == "PUT /snapshot/load"
        assert vm.paths()[-1] == "PATCH /vm"
        assert vm.cold_boots == 1
        assert hypervisor.cold_boots == 1
        load_body = vm.calls[0][2]
        assert load_body["network_overrides"] == [
            {"iface_id": "eth0", "host_dev_name": "fc-acme"}
        ]


class TestStop:
    async def test_graceful_stop(self, controller, launcher, spec) -> None:
        handle = await controller.boot(spec)
        await controller.stop(handle, "acme")

        assert launcher.signals == []
        assert not controller.is_alive(handle)
        assert not os.path.exists(spec.socket_path)

    async def test_escalates_to_sigterm(self, controller, launcher, hypervisor, spec) -> None:
        hypervisor.ignore_ctrl_alt_del = True
        handle = await controller.boot(spec)

        await controller.stop(handle, "acme")
        assert launcher.signals == [(handle.pid, signal.SIGTERM)]

    async def test_paused_guest_goes_straight_to_signals(
        self, controller, launcher, hypervisor, spec
    ) -> None:
        handle = await controller.boot(spec)
        await controller.pause(handle, "acme")

        await controller.stop(handle, "acme", paused=True)
        assert launcher.signals == [(handle.pid, signal.SIGTERM)]
        assert hypervisor.vms[handle.pid].paths().count("PUT /actions") == 1

    async def test_survivor_raises(self, controller, launcher, hypervisor, spec) -> None:
        hypervisor.ignore_ctrl_alt_del = True
        handle = await controller.boot(spec)
        launcher.immortal.add(handle.pid)

        with pytest.raises(GuestControlError, match="survived SIGKILL"):
            await controller.stop(handle, "acme")
        assert [sig for _, sig in launcher.signals] == [signal.SIGTERM, signal.SIGKILL]
        assert not os.path.exists(spec.socket_path)

    async def test_already_exited(self, controller, launcher, spec) -> None:
        handle = await controller.boot(spec)
        launcher.exit(handle.pid)

        await controller.stop(handle, "acme")
        assert launcher.signals == []


class TestSnapshotArtifacts:
    def test_exists_requires_both_files(self, tmp_path) -> None:
        artifacts = SnapshotArtifacts.in_dir(str(tmp_path))
        assert not artifacts.exists()
        (tmp_path / "vm.snap").write_text("{}")
        assert not artifacts.exists()
        (tmp_path / "vm.mem").write_bytes(b"\0")
        assert artifacts.exists()
