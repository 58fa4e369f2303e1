"""Tests for the tenant registry: creation, lifecycle, removal and recovery."""

import asyncio
import os

import pytest

from fcsaas.db.tenant import Tenant
from fcsaas.exceptions import (
    DuplicateTenant,
    GuestBootTimeout,
    GuestControlError,
    InvalidRequest,
    InvalidTransition,
    NetworkSetupFailed,
    PoolExhausted,
    TenantNotFound,
)
from fcsaas.host.app import stop_services
from fcsaas.host.services.network import ISOLATION_RULE
from fcsaas.models.enums import TenantStatus, Tier
from fcsaas.models.requests import TenantCreateRequest
from tests.conftest import wait_for


def create_request(tenant_id: str, tier: Tier = Tier.PRO, **kwargs) -> TenantCreateRequest:
    return TenantCreateRequest(tenant_id=tenant_id, tier=tier, **kwargs)


def assert_no_leftovers(h, tenant_id: str) -> None:
    """Nothing a failed create might have set up survives."""
    assert h.registry.find(tenant_id) is None
    assert h.registry.allocator.stats()["used"] == 0
    assert f"fc-{tenant_id}" not in h.links.devices
    assert h.iptables.rules("filter", "FORWARD") == [ISOLATION_RULE.spec]
    assert h.iptables.rules("nat", "POSTROUTING") == []
    assert not os.path.exists(os.path.join(h.config.DATA_DIR, tenant_id))
    assert Tenant.get_or_none(Tenant.tenant_id == tenant_id) is None
    assert h.launcher.alive == {}


# ============================================================================
# Create
# ============================================================================


class TestCreate:
    async def test_create_boots_guest(self, harness) -> None:
        record = await harness.registry.create(
            create_request("acme", env_vars={"API_KEY": "k"})
        )

        assert record.status == TenantStatus.RUNNING
        assert record.lease.index == 1
        assert record.guest_addr == "172.16.0.6"
        assert record.device_name == "fc-acme"
        assert harness.launcher.is_alive(record.handle.pid)
        assert harness.links.devices["fc-acme"]["address"] == "172.16.0.5/30"
        assert "acme" in harness.monitor.monitored()

        row = Tenant.get(Tenant.tenant_id == "acme")
        assert row.status == "running"
        assert row.subnet_index == 1
        assert row.pid == record.handle.pid
        assert row.get_env_vars() == {"API_KEY": "k"}

    async def test_public_view_hides_secret_values(self, harness) -> None:
        record = await harness.registry.create(
            create_request("acme", env_vars={"DB_PASSWORD": "hunter2"})
        )
        view = record.to_dict()
        assert view["env_keys"] == ["DB_PASSWORD"]
        assert "hunter2" not in repr(view)

    async def test_tenants_get_distinct_blocks(self, harness) -> None:
        a = await harness.registry.create(create_request("alpha"))
        b = await harness.registry.create(create_request("beta", tier=Tier.FREE))
        assert a.lease.network != b.lease.network
        assert harness.iptables.forward_verdict("fc-alpha", "fc-beta") == "DROP"

    async def test_concurrent_creates(self, harness) -> None:
        records = await asyncio.gather(
            *(harness.registry.create(create_request(f"t{i}")) for i in range(8))
        )
        assert len({r.lease.index for r in records}) == 8
        assert all(r.status == TenantStatus.RUNNING for r in records)

    async def test_duplicate_is_rejected(self, harness) -> None:
        original = await harness.registry.create(create_request("acme"))
        pid = original.handle.pid

        with pytest.raises(DuplicateTenant):
            await harness.registry.create(create_request("acme", tier=Tier.FREE))

        record = harness.registry.get("acme")
        assert record is original
        assert record.tier == Tier.PRO
        assert record.handle.pid == pid
        assert harness.launcher.is_alive(pid)

    @pytest.mark.parametrize("tenant_id", ["", "../etc", "a b", "-lead", "x" * 64])
    async def test_invalid_id(self, harness, tenant_id: str) -> None:
        with pytest.raises(InvalidRequest):
            await harness.registry.create(create_request(tenant_id))
        assert harness.registry.list() == []

    async def test_pool_exhausted(self, make_harness) -> None:
        h = make_harness(SUBNET_POOL="172.16.0.0/28")
        await h.start()
        for i in range(3):
            await h.registry.create(create_request(f"t{i}"))

        with pytest.raises(PoolExhausted):
            await h.registry.create(create_request("late"))
        assert h.registry.find("late") is None
        assert len(h.launcher.alive) == 3

    async def test_boot_failure_rolls_back(self, harness) -> None:
        harness.hypervisor.fail["PUT /actions"] = 400

        with pytest.raises(GuestControlError):
            await harness.registry.create(create_request("acme"))
        assert_no_leftovers(harness, "acme")

        # The same id and block are usable afterwards
        harness.hypervisor.fail.clear()
        record = await harness.registry.create(create_request("acme"))
        assert record.lease.index == 1

    async def test_boot_timeout_rolls_back(self, make_harness) -> None:
        h = make_harness(BOOT_TIMEOUT_SECONDS=0.3)
        await h.start()
        h.hypervisor.hang.add("PUT /actions")

        with pytest.raises(GuestBootTimeout):
            await h.registry.create(create_request("acme"))
        assert_no_leftovers(h, "acme")

    async def test_network_failure_rolls_back(self, harness) -> None:
        harness.links.create_error = RuntimeError("Operation not permitted")

        with pytest.raises(NetworkSetupFailed):
            await harness.registry.create(create_request("acme"))
        assert_no_leftovers(harness, "acme")
        assert harness.launcher.spawned == []

    async def test_unknown_snapshot(self, harness) -> None:
        with pytest.raises(InvalidRequest, match="Snapshot not found"):
            await harness.registry.create(create_request("acme", restore_from="nope"))
        assert_no_leftovers(harness, "acme")


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    async def test_stop_and_start(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))
        first_pid = record.handle.pid

        await harness.registry.stop("acme")
        assert record.status == TenantStatus.STOPPED
        assert record.handle is None
        assert not harness.launcher.is_alive(first_pid)
        assert "acme" not in harness.monitor.monitored()
        # Resources are kept while stopped
        assert record.lease.index == 1
        assert "fc-acme" in harness.links.devices

        await harness.registry.start("acme")
        assert record.status == TenantStatus.RUNNING
        assert record.handle.pid != first_pid
        assert harness.hypervisor.cold_boots == 2
        assert "acme" in harness.monitor.monitored()

    async def test_pause_and_resume(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))

        await harness.registry.pause("acme")
        assert record.status == TenantStatus.PAUSED
        assert harness.hypervisor.vm(record.handle.socket_path).state == "Paused"
        assert "acme" not in harness.monitor.monitored()

        await harness.registry.resume("acme")
        assert record.status == TenantStatus.RUNNING
        assert "acme" in harness.monitor.monitored()

    async def test_invalid_transitions(self, harness) -> None:
        await harness.registry.create(create_request("acme"))

        with pytest.raises(InvalidTransition):
            await harness.registry.resume("acme")
        with pytest.raises(InvalidTransition):
            await harness.registry.snapshot("acme")
        with pytest.raises(InvalidTransition):
            await harness.registry.start("acme")

        await harness.registry.stop("acme")
        with pytest.raises(InvalidTransition):
            await harness.registry.pause("acme")
        assert harness.registry.get("acme").status == TenantStatus.STOPPED

    async def test_unknown_tenant(self, harness) -> None:
        with pytest.raises(TenantNotFound):
            await harness.registry.stop("ghost")
        with pytest.raises(TenantNotFound):
            harness.registry.get("ghost")

    async def test_boot_failure_on_start_marks_failed(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))
        await harness.registry.stop("acme")

        harness.hypervisor.fail["PUT /actions"] = 400
        with pytest.raises(GuestControlError):
            await harness.registry.start("acme")
        assert record.status == TenantStatus.FAILED
        assert "injected failure" in record.last_error

        harness.hypervisor.fail.clear()
        await harness.registry.start("acme")
        assert record.status == TenantStatus.RUNNING
        assert record.last_error is None

    async def test_stop_survivor_marks_failed(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))
        harness.hypervisor.ignore_ctrl_alt_del = True
        harness.launcher.immortal.add(record.handle.pid)

        with pytest.raises(GuestControlError):
            await harness.registry.stop("acme")
        assert record.status == TenantStatus.FAILED

    async def test_guest_crash_marks_failed(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))
        harness.launcher.exit(record.handle.pid)

        assert await wait_for(lambda: record.status == TenantStatus.FAILED)
        assert record.handle is None
        assert "exited unexpectedly" in record.last_error
        assert "acme" not in harness.monitor.monitored()

    async def test_update_env_applies_on_next_start(self, harness) -> None:
        record = await harness.registry.create(
            create_request("acme", env_vars={"OLD": "1"})
        )
        storage = harness.services.registry.storage
        volume = os.path.join(record.data_dir, "data.ext4")
        assert storage.env_files[volume] == 'OLD="1"\n'

        await harness.registry.update_env("acme", {"API_KEY": "abc", "REGION": "eu"})
        # The attached volume is left alone while the guest runs
        assert storage.env_files[volume] == 'OLD="1"\n'

        await harness.registry.stop("acme")
        await harness.registry.start("acme")
        assert storage.env_files[volume] == 'API_KEY="abc"\nREGION="eu"\n'
        assert record.env_keys == ["API_KEY", "REGION"]
        assert Tenant.get(Tenant.tenant_id == "acme").get_env_vars() == {
            "API_KEY": "abc",
            "REGION": "eu",
        }


# ============================================================================
# Snapshots
# ============================================================================


class TestSnapshotRestore:
    async def test_new_tenant_from_snapshot_skips_cold_boot(self, harness) -> None:
        """A tenant restored from a snapshot resumes memory instead of booting."""
        await harness.registry.create(create_request("acme"))
        await harness.registry.pause("acme")
        info = await harness.registry.snapshot("acme")
        assert harness.registry.get("acme").status == TenantStatus.PAUSED

        await harness.registry.remove("acme")
        assert harness.hypervisor.cold_boots == 1

        record = await harness.registry.create(
            create_request("beta", restore_from=info.snapshot_id)
        )

        assert record.status == TenantStatus.RUNNING
        assert record.restored_from == info.snapshot_id
        assert harness.hypervisor.cold_boots == 1
        vm = harness.hypervisor.vm(record.handle.socket_path)
        assert "PUT /actions" not in vm.paths()
        assert vm.metadata["tenant"]["id"] == "beta"
        assert vm.metadata["network"]["ip"] == record.guest_addr

    async def test_snapshot_survives_tenant_removal(self, harness) -> None:
        await harness.registry.create(create_request("acme"))
        await harness.registry.pause("acme")
        info = await harness.registry.snapshot("acme")

        await harness.registry.remove("acme")
        assert info.artifacts.exists()

    async def test_tier_mismatch_is_rejected(self, harness) -> None:
        await harness.registry.create(create_request("acme", tier=Tier.PRO))
        await harness.registry.pause("acme")
        info = await harness.registry.snapshot("acme")

        with pytest.raises(InvalidRequest, match="free"):
            await harness.registry.create(
                create_request("beta", tier=Tier.FREE, restore_from=info.snapshot_id)
            )
        assert harness.registry.find("beta") is None

    async def test_start_from_latest(self, harness) -> None:
        await harness.registry.create(create_request("acme"))
        await harness.registry.pause("acme")
        await harness.registry.snapshot("acme")
        await harness.registry.stop("acme")

        record = await harness.registry.start("acme", from_snapshot="latest")
        assert record.status == TenantStatus.RUNNING
        assert harness.hypervisor.cold_boots == 1

    async def test_failed_snapshot_marks_failed(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))
        await harness.registry.pause("acme")
        harness.hypervisor.fail["PUT /snapshot/create"] = 400

        with pytest.raises(GuestControlError):
            await harness.registry.snapshot("acme")
        assert record.status == TenantStatus.FAILED
        assert harness.registry.list_snapshots("acme") == []

    async def test_golden_snapshot_for_fresh_tenants(self, make_harness) -> None:
        h = make_harness(USE_GOLDEN_SNAPSHOT=True)
        await h.start()
        await h.registry.create(create_request("base"))
        await h.registry.pause("base")
        info = await h.registry.snapshot("base")
        await asyncio.to_thread(h.services.snapshots.promote, info.snapshot_id)

        pro = await h.registry.create(create_request("fresh"))
        free = await h.registry.create(create_request("small", tier=Tier.FREE))

        assert pro.restored_from == "golden"
        assert free.restored_from is None
        assert h.hypervisor.cold_boots == 2


# ============================================================================
# Remove
# ============================================================================


class TestRemove:
    async def test_remove_releases_everything(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))
        pid = record.handle.pid

        await harness.registry.remove("acme")

        assert not harness.launcher.is_alive(pid)
        assert_no_leftovers(harness, "acme")

        again = await harness.registry.create(create_request("other"))
        assert again.lease.index == 1

    async def test_remove_failed_tenant(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))
        harness.launcher.exit(record.handle.pid)
        assert await wait_for(lambda: record.status == TenantStatus.FAILED)

        await harness.registry.remove("acme")
        assert_no_leftovers(harness, "acme")

    async def test_remove_paused_tenant(self, harness) -> None:
        await harness.registry.create(create_request("acme"))
        await harness.registry.pause("acme")

        await harness.registry.remove("acme")
        assert harness.registry.find("acme") is None

    async def test_remove_unknown(self, harness) -> None:
        with pytest.raises(TenantNotFound):
            await harness.registry.remove("ghost")


# ============================================================================
# Recovery
# ============================================================================


class TestRecovery:
    async def test_live_guests_are_adopted(self, harness) -> None:
        a = await harness.registry.create(create_request("alpha"))
        b = await harness.registry.create(create_request("beta", tier=Tier.FREE))
        pids = {"alpha": a.handle.pid, "beta": b.handle.pid}

        await harness.restart()

        for tenant_id, pid in pids.items():
            record = harness.registry.get(tenant_id)
            assert record.status == TenantStatus.RUNNING
            assert record.handle.pid == pid
            assert harness.launcher.is_alive(pid)
        assert sorted(harness.monitor.monitored()) == ["alpha", "beta"]
        assert harness.registry.get("beta").tier == Tier.FREE

        # Leases are re-owned, so the next tenant gets a fresh block
        c = await harness.registry.create(create_request("gamma"))
        assert c.lease.index == 3

    async def test_vanished_guest_becomes_stopped(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))
        pid = record.handle.pid

        await stop_services(harness.services)
        harness.launcher.exit(pid)
        await harness.start()

        recovered = harness.registry.get("acme")
        assert recovered.status == TenantStatus.STOPPED
        assert recovered.handle is None
        assert Tenant.get(Tenant.tenant_id == "acme").status == "stopped"

        await harness.registry.start("acme")
        assert recovered.status == TenantStatus.RUNNING

    async def test_paused_guest_is_adopted_unmonitored(self, harness) -> None:
        await harness.registry.create(create_request("acme"))
        await harness.registry.pause("acme")

        await harness.restart()

        assert harness.registry.get("acme").status == TenantStatus.PAUSED
        assert harness.monitor.monitored() == []
        await harness.registry.resume("acme")

    async def test_adopted_status_follows_firecracker(self, harness) -> None:
        record = await harness.registry.create(create_request("acme"))
        # Paused behind the control plane's back
        harness.hypervisor.vm(record.handle.socket_path).state = "Paused"

        await harness.restart()

        assert harness.registry.get("acme").status == TenantStatus.PAUSED
        assert Tenant.get(Tenant.tenant_id == "acme").status == "paused"
        assert harness.monitor.monitored() == []

    async def test_adopted_when_state_query_fails(self, harness) -> None:
        await harness.registry.create(create_request("acme"))
        harness.hypervisor.fail["GET /"] = 500

        await harness.restart()

        assert harness.registry.get("acme").status == TenantStatus.RUNNING
        assert harness.registry.get("acme").handle is not None

    async def test_orphans_are_killed(self, harness) -> None:
        await harness.registry.create(create_request("acme"))

        await stop_services(harness.services)
        orphan_sock = os.path.join(harness.config.SOCKET_DIR, "fc-ghost.sock")
        orphan = harness.launcher.spawn("ghost", orphan_sock, os.devnull)
        await harness.start()

        assert not harness.launcher.is_alive(orphan)
        assert harness.registry.find("ghost") is None
        assert harness.registry.get("acme").status == TenantStatus.RUNNING

    async def test_orphans_reported_only(self, make_harness) -> None:
        h = make_harness(RECONCILE_KILL_ORPHANS=False)
        await h.start()
        orphan_sock = os.path.join(h.config.SOCKET_DIR, "fc-ghost.sock")
        orphan = h.launcher.spawn("ghost", orphan_sock, os.devnull)

        assert await h.registry.reconcile_orphans() == [orphan]
        assert h.launcher.is_alive(orphan)
