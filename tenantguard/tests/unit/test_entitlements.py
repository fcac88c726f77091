from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tenantguard.core.config import get_settings
from tenantguard.persistence.adapters.memory import InMemoryDataAccess, InMemoryStore
from tenantguard.services.entitlements import (
    STATUS_COMPLIANCE_REQUIRED,
    STATUS_DENIED,
    STATUS_GRANTED,
    STATUS_LIMITED,
    STATUS_UPGRADE_REQUIRED,
    EntitlementCache,
    EntitlementEngine,
    check_entitlement,
    decision_cache_key,
)
from tenantguard.services.plans import (
    ENFORCEMENT_COMPLIANCE,
    FEATURE_KIND_FLAG,
    TIER_FREE,
    TIER_PRO,
    TIER_STARTER,
    Entitlements,
    FeatureDefinition,
    PlanDefinition,
    PlanRegistry,
)
from tenantguard.services.usage import UsageMeter
from tenantguard.tests.utils.tenants import (
    make_context,
    make_emitter,
    security_events,
    seed_subscription,
    seed_tenant,
)


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _clock() -> datetime:
    return NOW


def _engine(store: InMemoryStore, **kwargs) -> EntitlementEngine:
    kwargs.setdefault("cache", EntitlementCache())
    return EntitlementEngine(
        InMemoryDataAccess(store),
        emitter=make_emitter(store),
        time_provider=_clock,
        **kwargs,
    )


async def _record_usage(store: InMemoryStore, tenant_id: str, metric: str, amount: int) -> None:
    await UsageMeter(InMemoryDataAccess(store), time_provider=_clock).increment(tenant_id, metric, amount)


class _InterleavingAccess(InMemoryDataAccess):
    # Yield before every read so concurrent checks interleave with each other.
    async def find_one(self, entity, **kwargs):
        await asyncio.sleep(0)
        return await super().find_one(entity, **kwargs)

    async def find_many(self, entity, **kwargs):
        await asyncio.sleep(0)
        return await super().find_many(entity, **kwargs)

    async def count(self, entity, **kwargs):
        await asyncio.sleep(0)
        return await super().count(entity, **kwargs)


@pytest.mark.asyncio
async def test_tenant_without_subscription_gets_free_tier() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    engine = _engine(store)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "reports.basic")

    assert decision.status == STATUS_GRANTED
    assert decision.allowed
    assert decision.tier == TIER_FREE
    assert decision.reason == "ENTITLEMENT_OK"


@pytest.mark.asyncio
async def test_starter_exports_soft_then_hard_limit() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store, tier=TIER_STARTER)
    await _record_usage(store, tenant_id, "exports", 199)
    engine = _engine(store)
    context = make_context(tenant_id, user_id)

    at_limit = await engine.check_entitlement(context, "reports.export", 1)
    over_limit = await engine.check_entitlement(context, "reports.export", 2)

    assert at_limit.allowed and at_limit.warn
    assert at_limit.reason == "ENTITLEMENT_SOFT_LIMIT"
    assert (at_limit.current, at_limit.soft_limit, at_limit.limit) == (199, 100, 200)
    assert over_limit.status == STATUS_DENIED
    assert not over_limit.allowed
    assert over_limit.reason == "ENTITLEMENT_HARD_LIMIT"
    denied = security_events(store, action="entitlement.check")
    assert [event["severity"] for event in denied] == ["LOW", "MEDIUM"]


@pytest.mark.asyncio
async def test_usage_is_read_fresh_even_when_plan_is_cached() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store, tier=TIER_STARTER)
    engine = _engine(store)
    context = make_context(tenant_id, user_id)

    first = await engine.check_entitlement(context, "reports.export", 1)
    await _record_usage(store, tenant_id, "exports", 200)
    second = await engine.check_entitlement(context, "reports.export", 1)

    assert first.allowed and not first.cache_hit
    assert second.cache_hit
    assert second.reason == "ENTITLEMENT_HARD_LIMIT"


@pytest.mark.asyncio
async def test_missing_feature_requires_upgrade() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    engine = _engine(store)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "audit.view")

    assert decision.status == STATUS_UPGRADE_REQUIRED
    assert not decision.allowed
    assert decision.required_tier == TIER_PRO
    assert decision.to_dict()["required_tier"] == TIER_PRO


@pytest.mark.asyncio
async def test_upgrade_recommendation_skips_trial() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    engine = _engine(store)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "api.access")

    assert decision.required_tier == TIER_STARTER


@pytest.mark.asyncio
async def test_missing_compliance_blocks_compliance_features() -> None:
    registry = PlanRegistry(
        [
            PlanDefinition(
                tier=TIER_FREE,
                name="Free",
                rank=0,
                compliance=frozenset({"GDPR"}),
                entitlements=Entitlements(features=frozenset({"advanced_compliance"})),
            )
        ],
        [
            FeatureDefinition(
                key="advanced_compliance",
                kind=FEATURE_KIND_FLAG,
                enforcement=ENFORCEMENT_COMPLIANCE,
                compliance_required=frozenset({"SOC2", "ISO27001"}),
            )
        ],
        {"compliance.advanced": "advanced_compliance"},
    )
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    engine = _engine(store, registry=registry)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "compliance.advanced")

    assert decision.status == STATUS_COMPLIANCE_REQUIRED
    assert not decision.allowed
    assert decision.missing_compliance == ("ISO27001", "SOC2")
    assert decision.required_tier is None


@pytest.mark.asyncio
async def test_soft_enforced_metric_goes_into_overage() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store, tier=TIER_STARTER)
    await _record_usage(store, tenant_id, "storage_mb", 10240)
    engine = _engine(store)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "storage.upload", 5)

    assert decision.status == STATUS_LIMITED
    assert decision.allowed and decision.warn
    assert decision.reason == "ENTITLEMENT_OVERAGE"


@pytest.mark.asyncio
async def test_counted_metric_uses_live_rows() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    engine = _engine(store)
    context = make_context(tenant_id, user_id)

    assert (await engine.check_entitlement(context, "companies.create")).allowed

    store.seed("companies", [{"id": "co-1", "tenant_id": tenant_id, "name": "First"}])
    store.seed("companies", [{"id": "co-2", "tenant_id": tenant_id, "name": "Gone", "deleted_at": NOW}])
    decision = await engine.check_entitlement(context, "companies.create")

    assert decision.current == 1
    assert decision.reason == "ENTITLEMENT_HARD_LIMIT"


@pytest.mark.asyncio
async def test_unlimited_enterprise_limits() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store, tier="ENTERPRISE")
    await _record_usage(store, tenant_id, "api_calls", 1_000_000)
    engine = _engine(store)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "api.call", 500)

    assert decision.allowed and not decision.warn
    assert decision.limit is None


@pytest.mark.parametrize("quantity", [-1, True, 1.5, "3"])
@pytest.mark.asyncio
async def test_invalid_quantities_are_denied(quantity) -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store, tier=TIER_PRO)
    engine = _engine(store)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "reports.export", quantity)

    assert decision.status == STATUS_DENIED
    assert decision.reason == "ENTITLEMENT_INVALID_QUANTITY"


@pytest.mark.asyncio
async def test_zero_quantity_reads_current_usage() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store, tier=TIER_STARTER)
    await _record_usage(store, tenant_id, "exports", 200)
    engine = _engine(store)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "reports.export", 0)

    assert decision.allowed
    assert decision.current == 200


@pytest.mark.asyncio
async def test_unknown_action_is_denied() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    engine = _engine(store)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "rockets.launch")

    assert decision.reason == "ENTITLEMENT_UNKNOWN_ACTION"
    assert not decision.allowed


@pytest.mark.asyncio
async def test_unknown_tier_fails_secure() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    seed_subscription(store, tenant_id, "PLATINUM")
    engine = _engine(store)

    decision = await engine.check_entitlement(make_context(tenant_id, user_id), "reports.basic")

    assert decision.status == STATUS_DENIED
    assert decision.reason == "ENTITLEMENT_EVALUATION_ERROR"
    assert security_events(store, action="entitlement.check")[0]["severity"] == "HIGH"


@pytest.mark.asyncio
async def test_tier_resolution_ignores_inactive_and_expired_subscriptions() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    seed_subscription(store, tenant_id, TIER_STARTER, created_at=NOW - timedelta(days=90))
    seed_subscription(store, tenant_id, "ENTERPRISE", status="canceled", created_at=NOW - timedelta(days=2))
    seed_subscription(store, tenant_id, TIER_PRO, created_at=NOW - timedelta(days=1), valid_until=NOW - timedelta(hours=1))
    seed_subscription(store, tenant_id, TIER_PRO, created_at=NOW, valid_from=NOW + timedelta(days=1))
    engine = _engine(store)

    assert await engine.resolve_tier(make_context(tenant_id, user_id)) == TIER_STARTER


@pytest.mark.asyncio
async def test_past_due_subscription_keeps_its_plan() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    seed_subscription(store, tenant_id, TIER_PRO, status="past_due")
    engine = _engine(store)

    assert await engine.resolve_tier(make_context(tenant_id, user_id)) == TIER_PRO


@pytest.mark.asyncio
async def test_plan_change_invalidates_cached_decisions() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store, tier=TIER_STARTER)
    cache = EntitlementCache()
    engine = _engine(store, cache=cache)
    context = make_context(tenant_id, user_id)

    before = await engine.check_entitlement(context, "audit.view")
    cached = await engine.check_entitlement(context, "audit.view")
    assert before.status == STATUS_UPGRADE_REQUIRED
    assert cached.cache_hit

    await engine.change_plan(context, TIER_PRO)
    after = await engine.check_entitlement(context, "audit.view")

    assert after.allowed
    assert after.tier == TIER_PRO
    assert not after.cache_hit
    statuses = sorted(row["status"] for row in store.rows("subscriptions"))
    assert statuses == ["active", "superseded"]
    assert security_events(store, action="entitlement.plan_changed")


@pytest.mark.asyncio
async def test_cache_entries_are_isolated_per_user_and_tenant() -> None:
    cache = EntitlementCache(time_provider=lambda: 100.0)

    keys = {
        decision_cache_key("tn_a", "u1", "exports", TIER_FREE),
        decision_cache_key("tn_a", "u2", "exports", TIER_FREE),
        decision_cache_key("tn_b", "u1", "exports", TIER_FREE),
        decision_cache_key("tn_a", "u1", "exports", TIER_PRO),
    }
    assert len(keys) == 4

    await cache.set_tier("tn_a", TIER_PRO)
    assert await cache.get_tier("tn_b") is None
    assert await cache.invalidate_tenant("tn_a") == 1


@pytest.mark.asyncio
async def test_cache_expiry_and_sweep() -> None:
    now = [0.0]
    cache = EntitlementCache(ttl_s=10, tier_ttl_s=5, time_provider=lambda: now[0])
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    engine = _engine(store, cache=cache)
    context = make_context(tenant_id, user_id)

    await engine.check_entitlement(context, "reports.basic")
    assert (await cache.stats())["entries"] == 1

    now[0] = 11.0
    assert await cache.evict_expired() == 2
    assert await cache.stats() == {"entries": 0, "tiers": 0, "hits": 0, "misses": 1}


@pytest.mark.asyncio
async def test_consume_records_metered_usage_only_when_allowed() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store, tier=TIER_STARTER)
    engine = _engine(store)
    meter = UsageMeter(InMemoryDataAccess(store), time_provider=_clock)
    context = make_context(tenant_id, user_id)

    await engine.consume(context, "reports.export", 150)
    denied = await engine.consume(context, "reports.export", 100)
    await engine.consume(context, "reports.basic")

    assert not denied.allowed
    assert await meter.get_usage(tenant_id, "exports") == 150


@pytest.mark.asyncio
async def test_concurrent_consume_cannot_exceed_hard_limit() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    await _record_usage(store, tenant_id, "exports", 19)
    engine = EntitlementEngine(
        _InterleavingAccess(store),
        emitter=make_emitter(store),
        cache=EntitlementCache(),
        time_provider=_clock,
    )
    context = make_context(tenant_id, user_id)

    decisions = await asyncio.gather(*(engine.consume(context, "reports.export", 1) for _ in range(5)))

    assert sum(1 for decision in decisions if decision.allowed) == 1
    assert {decision.reason for decision in decisions if not decision.allowed} == {"ENTITLEMENT_HARD_LIMIT"}
    meter = UsageMeter(InMemoryDataAccess(store), time_provider=_clock)
    assert await meter.get_usage(tenant_id, "exports") == 20


@pytest.mark.asyncio
async def test_repeated_checks_with_unchanged_usage_are_identical() -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store, tier=TIER_STARTER)
    await _record_usage(store, tenant_id, "exports", 150)
    engine = _engine(store)
    context = make_context(tenant_id, user_id)

    first = await engine.check_entitlement(context, "reports.export", 10)
    second = await engine.check_entitlement(context, "reports.export", 10)

    assert not first.cache_hit
    assert second.cache_hit
    assert first == second
    assert first.to_dict() | {"cache_hit": None} == second.to_dict() | {"cache_hit": None}


@pytest.mark.asyncio
async def test_grants_are_not_audited_unless_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    store = InMemoryStore()
    tenant_id, user_id = seed_tenant(store)
    context = make_context(tenant_id, user_id)

    await _engine(store).check_entitlement(context, "reports.basic")
    assert security_events(store, action="entitlement.check") == []

    monkeypatch.setenv("ENTITLEMENT_LOG_GRANTS", "true")
    get_settings.cache_clear()
    await check_entitlement(context, "reports.basic", engine=_engine(store))
    assert len(security_events(store, action="entitlement.check")) == 1
