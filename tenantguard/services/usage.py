from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable
from uuid import uuid4

from tenantguard.domain.context import TenantContext
from tenantguard.persistence.access import DataAccess
from tenantguard.persistence.guards import require_tenant_id
from tenantguard.services.isolation import ScopedClient
from tenantguard.services.plans import METRIC_API_CALLS, METRIC_EXPORTS, METRIC_STORAGE_MB


logger = logging.getLogger(__name__)

TRACKED_METRICS = (METRIC_EXPORTS, METRIC_API_CALLS, METRIC_STORAGE_MB)
_METER_ACTOR = "system:usage-meter"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def billing_period(ts: datetime) -> tuple[datetime, datetime]:
    """Return the UTC calendar month ``[start, end)`` containing ``ts``."""
    ts = ts.astimezone(timezone.utc) if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    start = ts.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


@dataclass(frozen=True)
class UsageSnapshot:
    tenant_id: str
    period_start: datetime
    period_end: datetime
    metrics: dict[str, int]


class UsageMeter:
    def __init__(self, db: DataAccess, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow injecting time for deterministic period rollover tests.
        self._db = db
        self._time_provider = time_provider or _utc_now

    def _scoped(self, tenant_id: str) -> ScopedClient:
        # Meter writes run as a service account pinned to the tenant being metered.
        require_tenant_id(tenant_id, operation="usage")
        request_id = f"usage-{uuid4().hex}"
        context = TenantContext(
            tenant_id=tenant_id,
            user_id=_METER_ACTOR,
            request_id=request_id,
            correlation_id=request_id,
            is_service_account=True,
        )
        return ScopedClient(self._db, context)

    async def increment(
        self,
        tenant_id: str,
        metric: str,
        amount: int = 1,
        *,
        at: datetime | None = None,
    ) -> int:
        quantity = await self._apply(tenant_id, metric, amount, at=at, ceiling=None)
        if quantity is None:
            raise RuntimeError("uncapped usage increment was refused")
        return quantity

    async def increment_within(
        self,
        tenant_id: str,
        metric: str,
        amount: int,
        *,
        ceiling: int,
        at: datetime | None = None,
    ) -> int | None:
        """Increment only if the period total stays at or below ``ceiling``.

        Returns the new total, or ``None`` when the increment was refused. The
        check and the write are one atomic step, so concurrent callers cannot
        jointly overshoot the ceiling.
        """
        return await self._apply(tenant_id, metric, amount, at=at, ceiling=ceiling)

    async def _apply(
        self,
        tenant_id: str,
        metric: str,
        amount: int,
        *,
        at: datetime | None,
        ceiling: int | None,
    ) -> int | None:
        if not metric:
            raise ValueError("metric is required")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("amount must be a positive integer")
        period_start, period_end = billing_period(at or self._time_provider())
        scoped = self._scoped(tenant_id)
        # Single upsert per increment; concurrent callers never lose updates.
        async with scoped.transaction() as tx:
            row = await tx.increment(
                "usage_counters",
                key={"metric": metric, "period_start": period_start},
                field="quantity",
                amount=amount,
                defaults={"period_end": period_end},
                ceiling=ceiling,
            )
        if row is None:
            logger.info(
                "usage_increment_refused tenant_id=%s metric=%s amount=%s ceiling=%s",
                tenant_id,
                metric,
                amount,
                ceiling,
            )
            return None
        quantity = int(row["quantity"])
        logger.debug(
            "usage_incremented tenant_id=%s metric=%s amount=%s quantity=%s",
            tenant_id,
            metric,
            amount,
            quantity,
        )
        return quantity

    async def get_usage(self, tenant_id: str, metric: str, *, at: datetime | None = None) -> int:
        period_start, _ = billing_period(at or self._time_provider())
        row = await self._scoped(tenant_id).find_one(
            "usage_counters",
            where={"metric": metric, "period_start": period_start},
        )
        return int(row["quantity"]) if row else 0

    async def snapshot(self, tenant_id: str, *, at: datetime | None = None) -> UsageSnapshot:
        # Metrics without a counter row in this period read as zero.
        period_start, period_end = billing_period(at or self._time_provider())
        rows = await self._scoped(tenant_id).find_many(
            "usage_counters",
            where={"period_start": period_start},
        )
        metrics = {metric: 0 for metric in TRACKED_METRICS}
        for row in rows:
            metrics[row["metric"]] = int(row["quantity"] or 0)
        return UsageSnapshot(
            tenant_id=tenant_id,
            period_start=period_start,
            period_end=period_end,
            metrics=metrics,
        )
