from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tenantguard.domain.context import new_tenant_id
from tenantguard.persistence.adapters.memory import InMemoryDataAccess, InMemoryStore
from tenantguard.persistence.guards import TenantPredicateError
from tenantguard.services.usage import UsageMeter, billing_period


def test_billing_period_is_utc_calendar_month() -> None:
    assert billing_period(datetime(2026, 3, 15, 12, 30, tzinfo=timezone.utc)) == (
        datetime(2026, 3, 1, tzinfo=timezone.utc),
        datetime(2026, 4, 1, tzinfo=timezone.utc),
    )
    assert billing_period(datetime(2026, 12, 31, 23, 59, 59, tzinfo=timezone.utc))[1] == datetime(
        2027, 1, 1, tzinfo=timezone.utc
    )


def test_billing_period_normalizes_offsets() -> None:
    # 00:30 on April 1st at UTC+2 still belongs to March in UTC.
    local = datetime(2026, 4, 1, 0, 30, tzinfo=timezone(timedelta(hours=2)))

    assert billing_period(local)[0] == datetime(2026, 3, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_concurrent_increments_never_lose_updates() -> None:
    store = InMemoryStore()
    tenant_id = new_tenant_id()
    meter = UsageMeter(InMemoryDataAccess(store), time_provider=lambda: datetime(2026, 3, 15, tzinfo=timezone.utc))

    await asyncio.gather(*(meter.increment(tenant_id, "exports", 1) for _ in range(50)))

    assert await meter.get_usage(tenant_id, "exports") == 50
    assert len(store.rows("usage_counters")) == 1


@pytest.mark.asyncio
async def test_increment_within_never_overshoots_the_ceiling() -> None:
    store = InMemoryStore()
    tenant_id = new_tenant_id()
    meter = UsageMeter(InMemoryDataAccess(store), time_provider=lambda: datetime(2026, 3, 15, tzinfo=timezone.utc))

    results = await asyncio.gather(
        *(meter.increment_within(tenant_id, "exports", 1, ceiling=10) for _ in range(30))
    )

    assert sum(1 for result in results if result is not None) == 10
    assert await meter.get_usage(tenant_id, "exports") == 10
    assert await meter.increment_within(tenant_id, "exports", 11, ceiling=10) is None
    assert await meter.get_usage(tenant_id, "exports") == 10


@pytest.mark.asyncio
async def test_usage_rolls_over_with_the_billing_period() -> None:
    store = InMemoryStore()
    tenant_id = new_tenant_id()
    now = [datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc)]
    meter = UsageMeter(InMemoryDataAccess(store), time_provider=lambda: now[0])

    await meter.increment(tenant_id, "api_calls", 40)
    now[0] = datetime(2026, 2, 1, 0, 1, tzinfo=timezone.utc)
    await meter.increment(tenant_id, "api_calls", 2)

    assert await meter.get_usage(tenant_id, "api_calls") == 2
    assert await meter.get_usage(tenant_id, "api_calls", at=datetime(2026, 1, 10, tzinfo=timezone.utc)) == 40
    # History is retained per period.
    assert len(store.rows("usage_counters")) == 2


@pytest.mark.asyncio
async def test_usage_is_isolated_per_tenant() -> None:
    store = InMemoryStore()
    tenant_a, tenant_b = new_tenant_id(), new_tenant_id()
    meter = UsageMeter(InMemoryDataAccess(store))

    await meter.increment(tenant_a, "exports", 7)

    assert await meter.get_usage(tenant_b, "exports") == 0
    assert await meter.get_usage(tenant_a, "exports") == 7


@pytest.mark.asyncio
async def test_snapshot_reports_zero_for_untouched_metrics() -> None:
    store = InMemoryStore()
    tenant_id = new_tenant_id()
    at = datetime(2026, 5, 20, tzinfo=timezone.utc)
    meter = UsageMeter(InMemoryDataAccess(store), time_provider=lambda: at)

    await meter.increment(tenant_id, "storage_mb", 512)
    snapshot = await meter.snapshot(tenant_id)

    assert snapshot.metrics == {"exports": 0, "api_calls": 0, "storage_mb": 512}
    assert snapshot.period_start == datetime(2026, 5, 1, tzinfo=timezone.utc)
    assert snapshot.period_end == datetime(2026, 6, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize("amount", [0, -3, True, 2.5])
@pytest.mark.asyncio
async def test_increment_rejects_non_positive_amounts(amount) -> None:
    meter = UsageMeter(InMemoryDataAccess())

    with pytest.raises(ValueError):
        await meter.increment(new_tenant_id(), "exports", amount)


@pytest.mark.asyncio
async def test_meter_requires_a_tenant() -> None:
    meter = UsageMeter(InMemoryDataAccess())

    with pytest.raises(TenantPredicateError):
        await meter.get_usage("", "exports")
