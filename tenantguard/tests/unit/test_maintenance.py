from __future__ import annotations

import asyncio

import pytest

from tenantguard.services import maintenance
from tenantguard.services.attempts import InMemoryAttemptTracker
from tenantguard.services.entitlements import EntitlementCache
from tenantguard.services.maintenance import last_sweep_at, run_sweep_cycle, run_sweep_loop


@pytest.mark.asyncio
async def test_sweep_cycle_evicts_expired_entries() -> None:
    now = [0.0]
    cache = EntitlementCache(ttl_s=10, tier_ttl_s=10, time_provider=lambda: now[0])
    tracker = InMemoryAttemptTracker(window_s=10, time_provider=lambda: now[0])
    await cache.set_tier("tn_a", "FREE")
    await tracker.hit("u1:r1")

    assert last_sweep_at() is None
    now[0] = 30.0
    result = await run_sweep_cycle(cache=cache, tracker=tracker)

    assert result["status"] == "ok"
    assert result["cache_evicted"] == 1
    assert result["attempts_evicted"] == 1
    assert result["tracked_attempt_keys"] == 0
    assert last_sweep_at() is not None


@pytest.mark.asyncio
async def test_sweep_loop_survives_failing_cycles(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    real_sleep = asyncio.sleep

    async def _flaky_cycle(**kwargs):
        calls.append(True)
        if len(calls) == 1:
            raise RuntimeError("cache backend unavailable")
        return {"status": "ok"}

    async def _fast_sleep(_seconds):
        if len(calls) >= 2:
            raise asyncio.CancelledError
        await real_sleep(0)

    monkeypatch.setattr(maintenance, "run_sweep_cycle", _flaky_cycle)
    monkeypatch.setattr(maintenance.asyncio, "sleep", _fast_sleep)

    with pytest.raises(asyncio.CancelledError):
        await run_sweep_loop(interval_s=1)

    assert len(calls) == 2
