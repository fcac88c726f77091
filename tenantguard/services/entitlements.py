from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
import asyncio
import hashlib
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from tenantguard.core.config import Settings, get_settings
from tenantguard.domain.context import TenantContext
from tenantguard.persistence.access import DataAccess
from tenantguard.services.audit import (
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    AuditEmitter,
)
from tenantguard.services.isolation import ScopedClient
from tenantguard.services.plans import (
    DEFAULT_TIER,
    ENFORCEMENT_COMPLIANCE,
    ENFORCEMENT_SOFT,
    FEATURE_KIND_FLAG,
    USAGE_COUNTED,
    FeatureDefinition,
    Limit,
    PlanRegistry,
    get_plan_registry,
)
from tenantguard.services.usage import UsageMeter


logger = logging.getLogger(__name__)

STATUS_GRANTED = "GRANTED"
STATUS_DENIED = "DENIED"
STATUS_LIMITED = "LIMITED"
STATUS_UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
STATUS_COMPLIANCE_REQUIRED = "COMPLIANCE_REQUIRED"

REASON_OK = "ENTITLEMENT_OK"
REASON_SOFT_LIMIT = "ENTITLEMENT_SOFT_LIMIT"
REASON_HARD_LIMIT = "ENTITLEMENT_HARD_LIMIT"
REASON_OVERAGE = "ENTITLEMENT_OVERAGE"
REASON_UPGRADE_REQUIRED = "ENTITLEMENT_UPGRADE_REQUIRED"
REASON_COMPLIANCE_REQUIRED = "ENTITLEMENT_COMPLIANCE_REQUIRED"
REASON_UNKNOWN_ACTION = "ENTITLEMENT_UNKNOWN_ACTION"
REASON_INVALID_QUANTITY = "ENTITLEMENT_INVALID_QUANTITY"
REASON_EVALUATION_ERROR = "ENTITLEMENT_EVALUATION_ERROR"

# Subscription states that still confer their plan.
ACTIVE_SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due")


@dataclass(frozen=True)
class EntitlementDecision:
    status: str
    allowed: bool
    warn: bool
    reason: str
    feature: str | None
    tier: str | None
    requested: int
    limit: int | None = None
    soft_limit: int | None = None
    current: int | None = None
    required_tier: str | None = None
    missing_compliance: tuple[str, ...] = ()
    # Diagnostic only; two decisions differing only in cache_hit are the same decision.
    cache_hit: bool = field(default=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["missing_compliance"] = list(self.missing_compliance)
        return payload


@dataclass(frozen=True)
class _PlanEvaluation:
    # Plan-derived half of a decision; usage comparisons are never cached.
    status: str
    reason: str
    limit: Limit | None = None
    required_tier: str | None = None
    missing_compliance: tuple[str, ...] = ()


def decision_cache_key(tenant_id: str, user_id: str, feature: str, tier: str) -> str:
    return hashlib.sha256(f"{tenant_id}:{user_id}:{feature}:{tier}".encode("utf-8")).hexdigest()


class EntitlementCache:
    """Process-wide cache of plan evaluations and tenant tiers.

    Entries remember their tenant so :meth:`invalidate_tenant` can drop them
    even though the decision keys are hashed.
    """

    def __init__(
        self,
        *,
        ttl_s: int = 300,
        tier_ttl_s: int = 30,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._ttl_s = ttl_s
        self._tier_ttl_s = tier_ttl_s
        self._time_provider = time_provider or time.monotonic
        self._decisions: dict[str, tuple[float, str, _PlanEvaluation]] = {}
        self._tiers: dict[str, tuple[float, str]] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    async def get_evaluation(self, key: str) -> _PlanEvaluation | None:
        if self._ttl_s <= 0:
            return None
        now = self._time_provider()
        async with self._lock:
            entry = self._decisions.get(key)
            if entry is None or entry[0] <= now:
                self._decisions.pop(key, None)
                self._misses += 1
                return None
            self._hits += 1
            return entry[2]

    async def set_evaluation(self, key: str, tenant_id: str, evaluation: _PlanEvaluation) -> None:
        if self._ttl_s <= 0:
            return
        async with self._lock:
            self._decisions[key] = (self._time_provider() + self._ttl_s, tenant_id, evaluation)

    async def get_tier(self, tenant_id: str) -> str | None:
        if self._tier_ttl_s <= 0:
            return None
        now = self._time_provider()
        async with self._lock:
            entry = self._tiers.get(tenant_id)
            if entry is None or entry[0] <= now:
                self._tiers.pop(tenant_id, None)
                return None
            return entry[1]

    async def set_tier(self, tenant_id: str, tier: str) -> None:
        if self._tier_ttl_s <= 0:
            return
        async with self._lock:
            self._tiers[tenant_id] = (self._time_provider() + self._tier_ttl_s, tier)

    async def invalidate_tenant(self, tenant_id: str) -> int:
        # Drop every cached entry for the tenant after a plan change.
        async with self._lock:
            doomed = [key for key, entry in self._decisions.items() if entry[1] == tenant_id]
            for key in doomed:
                del self._decisions[key]
            removed_tier = self._tiers.pop(tenant_id, None) is not None
        logger.info("entitlement_cache_invalidated tenant_id=%s entries=%s", tenant_id, len(doomed))
        return len(doomed) + int(removed_tier)

    async def evict_expired(self) -> int:
        now = self._time_provider()
        async with self._lock:
            expired = [key for key, entry in self._decisions.items() if entry[0] <= now]
            for key in expired:
                del self._decisions[key]
            expired_tiers = [tenant for tenant, entry in self._tiers.items() if entry[0] <= now]
            for tenant in expired_tiers:
                del self._tiers[tenant]
        return len(expired) + len(expired_tiers)

    async def clear(self) -> None:
        async with self._lock:
            self._decisions.clear()
            self._tiers.clear()
            self._hits = 0
            self._misses = 0

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            return {
                "entries": len(self._decisions),
                "tiers": len(self._tiers),
                "hits": self._hits,
                "misses": self._misses,
            }


_entitlement_cache: EntitlementCache | None = None


def get_entitlement_cache() -> EntitlementCache:
    # Share one cache per process; engines are cheap and built per request.
    global _entitlement_cache
    if _entitlement_cache is None:
        settings = get_settings()
        _entitlement_cache = EntitlementCache(
            ttl_s=settings.entitlement_cache_ttl_s,
            tier_ttl_s=settings.entitlement_tier_cache_ttl_s,
        )
    return _entitlement_cache


def reset_entitlement_cache() -> None:
    # Reset the process-wide cache for deterministic tests.
    global _entitlement_cache
    _entitlement_cache = None


class EntitlementEngine:
    """Decides whether a tenant's plan allows an action.

    Decisions fail secure: any error while evaluating yields ``DENIED``.
    """

    def __init__(
        self,
        db: DataAccess,
        *,
        registry: PlanRegistry | None = None,
        cache: EntitlementCache | None = None,
        usage_meter: UsageMeter | None = None,
        emitter: AuditEmitter | None = None,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._registry = registry or get_plan_registry()
        self._cache = cache or get_entitlement_cache()
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))
        self._usage = usage_meter or UsageMeter(db, time_provider=self._time_provider)
        self._emitter = emitter
        self._settings = settings or get_settings()

    @property
    def registry(self) -> PlanRegistry:
        return self._registry

    def _scoped(self, context: TenantContext) -> ScopedClient:
        return ScopedClient(self._db, context, emitter=self._emitter)

    async def resolve_tier(self, context: TenantContext) -> str:
        cached = await self._cache.get_tier(context.tenant_id)
        if cached is not None:
            return cached
        now = self._time_provider()
        rows = await self._scoped(context).find_many(
            "subscriptions",
            where={"status": {"in": list(ACTIVE_SUBSCRIPTION_STATUSES)}, "deleted_at": None},
            order_by=[("created_at", "desc")],
        )
        current = next((row for row in rows if _within_validity(row, now)), None)
        if current is None:
            logger.debug("entitlement_default_tier tenant_id=%s", context.tenant_id)
            tier = DEFAULT_TIER
        else:
            tier = current["plan_tier"]
            # An unknown tier is a data error; let it fail the decision.
            self._registry.plan(tier)
        await self._cache.set_tier(context.tenant_id, tier)
        return tier

    async def check_entitlement(
        self,
        context: TenantContext,
        action: str,
        requested_qty: int = 1,
    ) -> EntitlementDecision:
        try:
            decision = await self._evaluate(context, action, requested_qty)
        except Exception as exc:  # noqa: BLE001 - entitlement checks fail secure
            logger.error(
                "entitlement_evaluation_failed tenant_id=%s action=%s",
                context.tenant_id,
                action,
                exc_info=exc,
            )
            decision = EntitlementDecision(
                status=STATUS_DENIED,
                allowed=False,
                warn=False,
                reason=REASON_EVALUATION_ERROR,
                feature=None,
                tier=None,
                requested=requested_qty if isinstance(requested_qty, int) else 0,
            )
        await self._emit(context, action, decision)
        return decision

    async def _evaluate(self, context: TenantContext, action: str, requested_qty: int) -> EntitlementDecision:
        if isinstance(requested_qty, bool) or not isinstance(requested_qty, int) or requested_qty < 0:
            return EntitlementDecision(
                status=STATUS_DENIED,
                allowed=False,
                warn=False,
                reason=REASON_INVALID_QUANTITY,
                feature=None,
                tier=None,
                requested=0,
            )
        feature = self._registry.feature_for_action(action)
        tier = await self.resolve_tier(context)
        if feature is None:
            return EntitlementDecision(
                status=STATUS_DENIED,
                allowed=False,
                warn=False,
                reason=REASON_UNKNOWN_ACTION,
                feature=None,
                tier=tier,
                requested=requested_qty,
            )

        key = decision_cache_key(context.tenant_id, context.user_id, feature.key, tier)
        evaluation = await self._cache.get_evaluation(key)
        cache_hit = evaluation is not None
        if evaluation is None:
            evaluation = self._evaluate_plan(feature, tier)
            await self._cache.set_evaluation(key, context.tenant_id, evaluation)

        if evaluation.status != STATUS_GRANTED or feature.kind == FEATURE_KIND_FLAG:
            return EntitlementDecision(
                status=evaluation.status,
                allowed=evaluation.status == STATUS_GRANTED,
                warn=False,
                reason=evaluation.reason,
                feature=feature.key,
                tier=tier,
                requested=requested_qty,
                required_tier=evaluation.required_tier,
                missing_compliance=evaluation.missing_compliance,
                cache_hit=cache_hit,
            )

        limit = evaluation.limit or Limit()
        current = await self._current_usage(context, feature)
        return _compare_usage(
            feature=feature,
            tier=tier,
            limit=limit,
            current=current,
            requested=requested_qty,
            missing_compliance=evaluation.missing_compliance,
            cache_hit=cache_hit,
        )

    def _evaluate_plan(self, feature: FeatureDefinition, tier: str) -> _PlanEvaluation:
        plan = self._registry.plan(tier)
        if not self._registry.includes(tier, feature):
            return _PlanEvaluation(
                status=STATUS_UPGRADE_REQUIRED,
                reason=REASON_UPGRADE_REQUIRED,
                required_tier=self._registry.lowest_tier_with(feature.key),
            )
        missing = tuple(sorted(feature.compliance_required - plan.compliance))
        if missing and feature.enforcement == ENFORCEMENT_COMPLIANCE:
            return _PlanEvaluation(
                status=STATUS_COMPLIANCE_REQUIRED,
                reason=REASON_COMPLIANCE_REQUIRED,
                required_tier=self._registry.lowest_tier_with(feature.key),
                missing_compliance=missing,
            )
        return _PlanEvaluation(
            status=STATUS_GRANTED,
            reason=REASON_OK,
            limit=plan.entitlements.limits.get(feature.key),
            missing_compliance=missing,
        )

    async def _current_usage(self, context: TenantContext, feature: FeatureDefinition) -> int:
        if feature.usage_source == USAGE_COUNTED:
            return await self._scoped(context).count(
                feature.count_entity,
                where=dict(feature.count_filter),
            )
        return await self._usage.get_usage(context.tenant_id, feature.key)

    async def consume(self, context: TenantContext, action: str, qty: int = 1) -> EntitlementDecision:
        """Check the action and record metered usage when it is allowed.

        For hard-capped features the increment is itself conditional on the
        hard limit, so concurrent consumers cannot jointly exceed it; a
        refused increment turns the decision into ``ENTITLEMENT_HARD_LIMIT``.
        """
        decision = await self.check_entitlement(context, action, qty)
        feature = self._registry.feature_for_action(action)
        if not (
            decision.allowed
            and qty > 0
            and feature is not None
            and feature.kind != FEATURE_KIND_FLAG
            and feature.usage_source != USAGE_COUNTED
        ):
            return decision
        ceiling = decision.limit if feature.enforcement != ENFORCEMENT_SOFT else None
        if ceiling is None:
            await self._usage.increment(context.tenant_id, feature.key, qty)
            return decision
        total = await self._usage.increment_within(context.tenant_id, feature.key, qty, ceiling=ceiling)
        if total is not None:
            return decision
        # Concurrent consumers used the remaining headroom after the check passed.
        current = await self._usage.get_usage(context.tenant_id, feature.key)
        logger.info(
            "entitlement_consume_refused tenant_id=%s feature=%s requested=%s current=%s limit=%s",
            context.tenant_id,
            feature.key,
            qty,
            current,
            ceiling,
        )
        denied = replace(
            decision,
            status=STATUS_DENIED,
            allowed=False,
            warn=False,
            reason=REASON_HARD_LIMIT,
            current=current,
        )
        await self._emit(context, action, denied)
        return denied

    async def change_plan(self, context: TenantContext, tier: str, *, status: str = "active") -> dict[str, Any]:
        # Supersede the current subscription, then drop cached decisions for the tenant.
        self._registry.plan(tier)
        now = self._time_provider()
        async with self._scoped(context).transaction() as tx:
            await tx.update(
                "subscriptions",
                where={"status": {"in": list(ACTIVE_SUBSCRIPTION_STATUSES)}, "deleted_at": None},
                data={"status": "superseded", "valid_until": now},
            )
            row = await tx.create(
                "subscriptions",
                {
                    "id": f"sub_{uuid4().hex}",
                    "plan_tier": tier,
                    "status": status,
                    "valid_from": now,
                    "created_at": now,
                },
            )
        await self._cache.invalidate_tenant(context.tenant_id)
        if self._emitter is not None:
            await self._emitter.emit(
                action="entitlement.plan_changed",
                outcome="success",
                severity=SEVERITY_MEDIUM,
                context=context,
                resource_type="subscription",
                resource_id=str(row["id"]),
                metadata={"tier": tier, "status": status},
            )
        return row

    async def invalidate_tenant(self, tenant_id: str) -> int:
        return await self._cache.invalidate_tenant(tenant_id)

    async def _emit(self, context: TenantContext, action: str, decision: EntitlementDecision) -> None:
        if decision.reason == REASON_EVALUATION_ERROR:
            severity = SEVERITY_HIGH
        elif not decision.allowed:
            severity = SEVERITY_MEDIUM
        elif decision.warn:
            severity = SEVERITY_LOW
        elif self._settings.entitlement_log_grants:
            severity = SEVERITY_LOW
        else:
            return
        if self._emitter is None:
            return
        await self._emitter.emit(
            action="entitlement.check",
            outcome="granted" if decision.allowed else "denied",
            severity=severity,
            context=context,
            resource_type="entitlement",
            resource_id=decision.feature,
            error_code=None if decision.reason == REASON_OK else decision.reason,
            metadata={
                "requested_action": action,
                "status": decision.status,
                "tier": decision.tier,
                "current": decision.current,
                "requested": decision.requested,
                "limit": decision.limit,
            },
        )


def _within_validity(row: dict[str, Any], now: datetime) -> bool:
    valid_from = row.get("valid_from")
    valid_until = row.get("valid_until")
    if valid_from is not None and valid_from > now:
        return False
    if valid_until is not None and valid_until <= now:
        return False
    return True


def _compare_usage(
    *,
    feature: FeatureDefinition,
    tier: str,
    limit: Limit,
    current: int,
    requested: int,
    missing_compliance: tuple[str, ...],
    cache_hit: bool,
) -> EntitlementDecision:
    projected = current + requested
    status = STATUS_GRANTED
    allowed = True
    warn = False
    reason = REASON_OK
    if limit.hard is not None and projected > limit.hard:
        if feature.enforcement == ENFORCEMENT_SOFT:
            status, warn, reason = STATUS_LIMITED, True, REASON_OVERAGE
        else:
            status, allowed, reason = STATUS_DENIED, False, REASON_HARD_LIMIT
    elif limit.soft is not None and projected > limit.soft:
        warn, reason = True, REASON_SOFT_LIMIT
    return EntitlementDecision(
        status=status,
        allowed=allowed,
        warn=warn,
        reason=reason,
        feature=feature.key,
        tier=tier,
        requested=requested,
        limit=limit.hard,
        soft_limit=limit.soft,
        current=current,
        missing_compliance=missing_compliance,
        cache_hit=cache_hit,
    )


async def check_entitlement(
    context: TenantContext,
    action: str,
    requested_qty: int = 1,
    *,
    engine: EntitlementEngine,
) -> EntitlementDecision:
    return await engine.check_entitlement(context, action, requested_qty)
