"""Tests for per-tenant health monitoring."""

import pytest

from fcsaas.firecracker.process import GuestHandle
from fcsaas.host.services.health_monitor import HealthMonitor
from fcsaas.models.enums import HealthState, TenantStatus, Tier
from fcsaas.models.requests import TenantCreateRequest
from tests.conftest import FakeGuests, wait_for

GUEST = "172.16.0.6"


@pytest.fixture
def guests() -> FakeGuests:
    return FakeGuests()


@pytest.fixture
async def monitor(guests):
    m = HealthMonitor(
        interval=0.01, timeout=0.2, failure_threshold=2, transport=guests.transport
    )
    yield m
    await m.stop_all()


class TestHealthMonitor:
    async def test_healthy_guest_reports_metrics(self, monitor) -> None:
        monitor.start("acme", GUEST, None)

        assert await wait_for(lambda: monitor.is_ready("acme"))
        record = monitor.get("acme")
        assert record.status == HealthState.HEALTHY
        assert record.memory_used_mb == 41
        assert record.load_average == 0.02
        assert record.disk_used_mb == 3
        assert record.uptime_seconds == 120
        assert record.observed_at is not None

    async def test_status_is_unknown_before_first_check(self, monitor) -> None:
        monitor.start("acme", GUEST, None)
        assert monitor.get("acme").status == HealthState.UNKNOWN
        assert not monitor.is_ready("acme")

    @pytest.mark.parametrize("mode", ["unhealthy", "refuse", "timeout"])
    async def test_unhealthy_after_threshold(self, monitor, guests, mode: str) -> None:
        guests.modes[GUEST] = mode
        monitor.start("acme", GUEST, None)

        assert await wait_for(lambda: monitor.get("acme").status == HealthState.UNHEALTHY)
        assert monitor.get("acme").consecutive_failures >= 2

    async def test_recovers_after_failures(self, monitor, guests) -> None:
        guests.modes[GUEST] = "refuse"
        monitor.start("acme", GUEST, None)
        assert await wait_for(lambda: monitor.get("acme").status == HealthState.UNHEALTHY)

        guests.modes[GUEST] = "ok"
        assert await wait_for(lambda: monitor.is_ready("acme"))
        assert monitor.get("acme").consecutive_failures == 0

    async def test_stop_cancels_task(self, monitor) -> None:
        monitor.start("acme", GUEST, None)
        task = monitor._targets["acme"].task

        await monitor.stop("acme")

        assert task.done()
        assert monitor.get("acme") is None
        assert monitor.monitored() == []

    async def test_restart_replaces_task(self, monitor) -> None:
        monitor.start("acme", GUEST, None)
        first = monitor._targets["acme"].task
        monitor.start("acme", GUEST, None)

        assert await wait_for(first.done)
        assert monitor.monitored() == ["acme"]

    async def test_process_exit_is_reported(self, guests) -> None:
        exits = []

        async def on_exit(tenant_id: str, pid: int) -> None:
            exits.append((tenant_id, pid))

        m = HealthMonitor(interval=0.01, transport=guests.transport, is_alive=lambda h: False)
        m.on_guest_exited = on_exit
        m.start("acme", GUEST, GuestHandle(pid=4242, socket_path="/run/fc-acme.sock"))

        assert await wait_for(lambda: exits == [("acme", 4242)])
        await m.stop_all()


class TestHealthDoesNotChangeStatus:
    async def test_unhealthy_tenant_stays_running(self, harness) -> None:
        record = await harness.registry.create(
            TenantCreateRequest(tenant_id="acme", tier=Tier.FREE)
        )
        harness.guests.modes[record.guest_addr] = "unhealthy"

        assert await wait_for(
            lambda: harness.monitor.get("acme").status == HealthState.UNHEALTHY
        )
        assert record.status == TenantStatus.RUNNING
