"""
Tenant health monitoring.

One asyncio task per running tenant. Every interval the task checks that
the guest's Firecracker process is still alive (reporting an exit to the
registry), then issues a single bounded ``GET /health`` to the guest
agent. The agent answers with a small JSON document:

    {"status": "healthy", "memory_mb": 41, "load": 0.02, "disk_mb": 3, "uptime_s": 120}

Health failures only degrade the health record; tenant status is never
changed here.
"""

import asyncio
import datetime
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from fcsaas.firecracker.process import GuestHandle
from fcsaas.models.enums import HealthState
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)

ExitCallback = Callable[[str, int], Awaitable[None]]


@dataclass
class HealthRecord:
    """Latest observed health of one tenant (in-memory only)."""

    tenant_id: str
    status: HealthState = HealthState.UNKNOWN
    memory_used_mb: float | None = None
    load_average: float | None = None
    disk_used_mb: float | None = None
    uptime_seconds: float | None = None
    observed_at: datetime.datetime | None = None
    consecutive_failures: int = 0
    last_error: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "status": self.status,
            "memory_used_mb": self.memory_used_mb,
            "load_average": self.load_average,
            "disk_used_mb": self.disk_used_mb,
            "uptime_seconds": self.uptime_seconds,
            "observed_at": self.observed_at,
            "consecutive_failures": self.consecutive_failures,
        }


def _number(body: dict, *keys: str) -> float | None:
    for key in keys:
        value = body.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


@dataclass
class _Target:
    guest_addr: str
    handle: GuestHandle | None
    task: asyncio.Task | None = None


class HealthMonitor:
    """
    Periodic per-tenant health checks.

    Args:
        interval: Seconds between checks.
        timeout: Timeout of each health request.
        failure_threshold: Consecutive failures before the record turns
            unhealthy.
        port: Guest port serving /health.
        is_alive: Process liveness check for a guest handle.
        transport: Optional httpx transport (tests).
    """

    def __init__(
        self,
        interval: float = 10.0,
        timeout: float = 2.0,
        failure_threshold: int = 3,
        port: int = 8080,
        is_alive: Callable[[GuestHandle], bool] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.interval = interval
        self.timeout = timeout
        self.failure_threshold = max(1, failure_threshold)
        self.port = port
        self.is_alive = is_alive
        self.on_guest_exited: ExitCallback | None = None

        self._targets: dict[str, _Target] = {}
        self._records: dict[str, HealthRecord] = {}
        self._client = httpx.AsyncClient(
            transport=transport, timeout=httpx.Timeout(timeout), trust_env=False
        )

    # =========================================================================
    # Task Management
    # =========================================================================

    def start(self, tenant_id: str, guest_addr: str, handle: GuestHandle | None) -> None:
        """Begin monitoring a tenant (restarts an existing monitor)."""
        previous = self._targets.pop(tenant_id, None)
        if previous and previous.task:
            previous.task.cancel()

        target = _Target(guest_addr=guest_addr, handle=handle)
        self._records[tenant_id] = HealthRecord(tenant_id=tenant_id)
        target.task = asyncio.create_task(
            self._run(tenant_id, target), name=f"health-{tenant_id}"
        )
        self._targets[tenant_id] = target
        logger.debug(f"Health monitoring started for {tenant_id} ({guest_addr})")

    async def stop(self, tenant_id: str) -> None:
        """Cancel a tenant's monitor and wait for it to finish."""
        target = self._targets.pop(tenant_id, None)
        self._records.pop(tenant_id, None)
        if target is None or target.task is None:
            return
        if target.task is asyncio.current_task():
            return
        target.task.cancel()
        try:
            await target.task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Health monitoring stopped for {tenant_id}")

    async def stop_all(self) -> None:
        for tenant_id in list(self._targets):
            await self.stop(tenant_id)
        await self._client.aclose()

    def monitored(self) -> list[str]:
        return list(self._targets)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, tenant_id: str) -> HealthRecord | None:
        return self._records.get(tenant_id)

    def is_ready(self, tenant_id: str) -> bool:
        record = self._records.get(tenant_id)
        return record is not None and record.status == HealthState.HEALTHY

    # =========================================================================
    # Checks
    # =========================================================================

    async def _run(self, tenant_id: str, target: _Target) -> None:
        while True:
            if not await self.check(tenant_id, target):
                return
            await asyncio.sleep(self.interval)

    async def check(self, tenant_id: str, target: _Target | None = None) -> bool:
        """
        Run one check.

        Returns:
            False when the guest process is gone and monitoring should end.
        """
        target = target or self._targets.get(tenant_id)
        if target is None:
            return False

        if target.handle and self.is_alive and not self.is_alive(target.handle):
            logger.warning(f"Guest process for {tenant_id} (pid={target.handle.pid}) exited")
            if self.on_guest_exited:
                await self.on_guest_exited(tenant_id, target.handle.pid)
            return False

        record = self._records.get(tenant_id)
        if record is None:
            return False

        url = f"http://{target.guest_addr}:{self.port}/health"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("health body is not a JSON object")
            if body.get("status", "healthy") != "healthy":
                raise ValueError(f"guest reports {body.get('status')}")
        except (httpx.HTTPError, ValueError) as e:
            self._record_failure(record, str(e) or type(e).__name__)
            return True

        self._record_success(record, body)
        return True

    def _record_success(self, record: HealthRecord, body: dict) -> None:
        if record.status != HealthState.HEALTHY:
            logger.info(f"Tenant {record.tenant_id} is healthy")
        record.status = HealthState.HEALTHY
        record.consecutive_failures = 0
        record.last_error = None
        record.memory_used_mb = _number(body, "memory_mb", "memory_used_mb")
        record.load_average = _number(body, "load", "load_average")
        record.disk_used_mb = _number(body, "disk_mb", "disk_used_mb")
        record.uptime_seconds = _number(body, "uptime_s", "uptime_seconds")
        record.observed_at = datetime.datetime.now()

    def _record_failure(self, record: HealthRecord, error: str) -> None:
        record.consecutive_failures += 1
        record.last_error = error
        record.observed_at = datetime.datetime.now()
        if (
            record.consecutive_failures >= self.failure_threshold
            and record.status != HealthState.UNHEALTHY
        ):
            record.status = HealthState.UNHEALTHY
            logger.warning(
                f"Tenant {record.tenant_id} unhealthy after "
                f"{record.consecutive_failures} failed checks: {error}"
            )
        else:
            logger.debug(f"Health check failed for {record.tenant_id}: {error}")
