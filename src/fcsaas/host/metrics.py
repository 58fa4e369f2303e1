"""Prometheus metrics for the control plane.

Lifecycle operations are counted and timed as they happen; tenant and
subnet gauges are refreshed from the registry when /metrics is scraped.
"""

from __future__ import annotations

import time
from contextlib import contextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from fcsaas.models.enums import HealthState, TenantStatus

tenant_operation_duration = Histogram(
    "fcsaas_tenant_operation_seconds",
    "Duration of tenant lifecycle operations",
    ["operation", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)

tenant_operation_errors = Counter(
    "fcsaas_tenant_operation_errors_total",
    "Total tenant lifecycle operation errors",
    ["operation", "kind"],
)

tenants_by_status = Gauge(
    "fcsaas_tenants",
    "Tenants by lifecycle status",
    ["status"],
)

tenants_by_health = Gauge(
    "fcsaas_tenant_health",
    "Running tenants by last observed health",
    ["health"],
)

subnet_blocks_used = Gauge(
    "fcsaas_subnet_blocks_used",
    "Subnet pool blocks owned by tenants",
)

subnet_blocks_capacity = Gauge(
    "fcsaas_subnet_blocks_capacity",
    "Subnet pool blocks available to tenants",
)


@contextmanager
def track_operation(operation: str):
    """Time an operation and count its failures by error kind."""
    start = time.monotonic()
    status = "success"
    try:
        yield
    except BaseException as e:
        status = "error"
        tenant_operation_errors.labels(
            operation=operation, kind=getattr(e, "kind", type(e).__name__)
        ).inc()
        raise
    finally:
        tenant_operation_duration.labels(operation=operation, status=status).observe(
            time.monotonic() - start
        )


def update_all_metrics(registry, monitor) -> None:
    """Refresh gauges from current registry and monitor state."""
    counts = {status: 0 for status in TenantStatus}
    health = {state: 0 for state in HealthState}
    for record in registry.list():
        counts[record.status] += 1
        if record.status == TenantStatus.RUNNING:
            observed = monitor.get(record.tenant_id)
            health[observed.status if observed else HealthState.UNKNOWN] += 1

    for status, count in counts.items():
        tenants_by_status.labels(status=status.value).set(count)
    for state, count in health.items():
        tenants_by_health.labels(health=state.value).set(count)

    stats = registry.allocator.stats()
    subnet_blocks_used.set(stats["used"])
    subnet_blocks_capacity.set(stats["capacity"])


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
