from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any

from tenantguard.core.config import get_settings
from tenantguard.services.attempts import AttemptTracker, get_attempt_tracker
from tenantguard.services.entitlements import EntitlementCache, get_entitlement_cache


logger = logging.getLogger(__name__)

_last_sweep_at: datetime | None = None


def last_sweep_at() -> datetime | None:
    return _last_sweep_at


async def run_sweep_cycle(
    *,
    cache: EntitlementCache | None = None,
    tracker: AttemptTracker | None = None,
) -> dict[str, Any]:
    # Evict expired cache entries and idle attempt counters in one pass.
    global _last_sweep_at
    cache = cache or get_entitlement_cache()
    tracker = tracker or get_attempt_tracker()
    cache_evicted = await cache.evict_expired()
    attempts_evicted = await tracker.sweep()
    _last_sweep_at = datetime.now(timezone.utc)
    result = {
        "status": "ok",
        "cache_evicted": cache_evicted,
        "attempts_evicted": attempts_evicted,
        "cache": await cache.stats(),
        "tracked_attempt_keys": await tracker.tracked_keys(),
    }
    logger.debug(
        "entitlement_sweep cache_evicted=%s attempts_evicted=%s",
        cache_evicted,
        attempts_evicted,
    )
    return result


async def run_sweep_loop(*, interval_s: int | None = None) -> None:
    # Sweep on a fixed cadence and keep going after failures.
    interval = max(1, int(interval_s or get_settings().entitlement_sweep_interval_s))
    while True:
        try:
            await run_sweep_cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("entitlement sweep cycle failed")
        await asyncio.sleep(interval)


def reset_maintenance_state() -> None:
    global _last_sweep_at
    _last_sweep_at = None
