"""Static plan catalogue.

The registry is built once per process and is immutable afterwards: every
container is a ``frozenset`` or ``MappingProxyType`` and plan objects are
frozen dataclasses. :meth:`PlanRegistry.integrity_hash` fingerprints the
canonical JSON form so deployments can pin the approved catalogue through
``PLAN_REGISTRY_EXPECTED_HASH``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import hashlib
import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field, ValidationError

from tenantguard.core.config import get_settings
from tenantguard.core.errors import PlanRegistryError


logger = logging.getLogger(__name__)

TIER_FREE = "FREE"
TIER_TRIAL = "TRIAL"
TIER_STARTER = "STARTER"
TIER_PRO = "PRO"
TIER_ENTERPRISE = "ENTERPRISE"
DEFAULT_TIER = TIER_FREE

METRIC_USERS = "users"
METRIC_COMPANIES = "companies"
METRIC_EXPORTS = "exports"
METRIC_API_CALLS = "api_calls"
METRIC_STORAGE_MB = "storage_mb"
METRIC_AUDIT_RETENTION_DAYS = "audit_retention_days"

FEATURE_KIND_FLAG = "flag"
FEATURE_KIND_LIMIT = "limit"
USAGE_METERED = "metered"
USAGE_COUNTED = "counted"
ENFORCEMENT_HARD = "hard"
ENFORCEMENT_SOFT = "soft"
ENFORCEMENT_COMPLIANCE = "compliance"


@dataclass(frozen=True)
class Limit:
    # None means unlimited.
    soft: int | None = None
    hard: int | None = None


@dataclass(frozen=True)
class Entitlements:
    limits: Mapping[str, Limit] = field(default_factory=lambda: MappingProxyType({}))
    features: frozenset[str] = frozenset()


@dataclass(frozen=True)
class PlanDefinition:
    tier: str
    name: str
    rank: int
    entitlements: Entitlements
    compliance: frozenset[str] = frozenset()
    monthly_price_cents: int = 0
    annual_price_cents: int = 0
    # Trials are granted, never sold, so they are never recommended as upgrades.
    purchasable: bool = True


@dataclass(frozen=True)
class FeatureDefinition:
    key: str
    kind: str
    enforcement: str = ENFORCEMENT_HARD
    compliance_required: frozenset[str] = frozenset()
    usage_source: str = USAGE_METERED
    # Counted metrics are the number of live rows in a tenant-scoped table.
    count_entity: str | None = None
    count_filter: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


class PlanRegistry:
    def __init__(
        self,
        plans: Iterable[PlanDefinition],
        features: Iterable[FeatureDefinition],
        actions: Mapping[str, str],
    ) -> None:
        self._plans = MappingProxyType({plan.tier: plan for plan in plans})
        self._features = MappingProxyType({feature.key: feature for feature in features})
        self._actions = MappingProxyType(dict(actions))
        self._validate()

    def _validate(self) -> None:
        if DEFAULT_TIER not in self._plans:
            raise PlanRegistryError(f"registry must define the {DEFAULT_TIER} tier")
        for action, feature_key in self._actions.items():
            if feature_key not in self._features:
                raise PlanRegistryError(f"action {action} maps to unknown feature {feature_key}")
        for feature in self._features.values():
            if feature.kind not in (FEATURE_KIND_FLAG, FEATURE_KIND_LIMIT):
                raise PlanRegistryError(f"feature {feature.key} has unknown kind {feature.kind}")
            if feature.usage_source == USAGE_COUNTED and not feature.count_entity:
                raise PlanRegistryError(f"counted feature {feature.key} needs a count_entity")
        for plan in self._plans.values():
            for metric, limit in plan.entitlements.limits.items():
                if limit.soft is not None and limit.hard is not None and limit.soft > limit.hard:
                    raise PlanRegistryError(f"{plan.tier}.{metric} soft limit exceeds hard limit")

    @property
    def tiers(self) -> tuple[str, ...]:
        return tuple(plan.tier for plan in sorted(self._plans.values(), key=lambda plan: plan.rank))

    def has_tier(self, tier: str) -> bool:
        return tier in self._plans

    def plan(self, tier: str) -> PlanDefinition:
        try:
            return self._plans[tier]
        except KeyError as exc:
            raise PlanRegistryError(f"unknown plan tier: {tier}") from exc

    def feature(self, key: str) -> FeatureDefinition | None:
        return self._features.get(key)

    def feature_for_action(self, action: str) -> FeatureDefinition | None:
        feature_key = self._actions.get(action)
        return self._features.get(feature_key) if feature_key else None

    def includes(self, tier: str, feature: FeatureDefinition) -> bool:
        entitlements = self.plan(tier).entitlements
        if feature.kind == FEATURE_KIND_FLAG:
            return feature.key in entitlements.features
        return feature.key in entitlements.limits

    def lowest_tier_with(self, feature_key: str) -> str | None:
        # Recommend the cheapest purchasable tier that carries the feature.
        feature = self._features.get(feature_key)
        if feature is None:
            return None
        for plan in sorted(self._plans.values(), key=lambda plan: plan.rank):
            if not plan.purchasable or not self.includes(plan.tier, feature):
                continue
            missing = feature.compliance_required - plan.compliance
            if feature.enforcement == ENFORCEMENT_COMPLIANCE and missing:
                continue
            return plan.tier
        return None

    def to_dict(self) -> dict[str, Any]:
        # Canonical form; also the on-disk format accepted by load_plan_registry.
        return {
            "plans": [
                {
                    "tier": plan.tier,
                    "name": plan.name,
                    "rank": plan.rank,
                    "purchasable": plan.purchasable,
                    "monthly_price_cents": plan.monthly_price_cents,
                    "annual_price_cents": plan.annual_price_cents,
                    "compliance": sorted(plan.compliance),
                    "features": sorted(plan.entitlements.features),
                    "limits": {
                        metric: {"soft": limit.soft, "hard": limit.hard}
                        for metric, limit in sorted(plan.entitlements.limits.items())
                    },
                }
                for plan in sorted(self._plans.values(), key=lambda plan: plan.rank)
            ],
            "features": [
                {
                    "key": feature.key,
                    "kind": feature.kind,
                    "enforcement": feature.enforcement,
                    "compliance_required": sorted(feature.compliance_required),
                    "usage_source": feature.usage_source,
                    "count_entity": feature.count_entity,
                    "count_filter": dict(feature.count_filter),
                }
                for feature in sorted(self._features.values(), key=lambda feature: feature.key)
            ],
            "actions": dict(sorted(self._actions.items())),
        }

    def integrity_hash(self) -> str:
        encoded = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def verify_integrity(self, expected: str | None) -> None:
        # Refuse to serve decisions from a catalogue that drifted from the approved one.
        if not expected:
            return
        actual = self.integrity_hash()
        if actual != expected:
            logger.error("plan_registry_integrity_mismatch expected=%s actual=%s", expected, actual)
            raise PlanRegistryError("plan registry integrity hash mismatch")


def _limits(**values: tuple[int | None, int | None]) -> Mapping[str, Limit]:
    return MappingProxyType({metric: Limit(soft=soft, hard=hard) for metric, (soft, hard) in values.items()})


_FREE_FEATURES = frozenset({"basic_reports", "data_export"})
_STARTER_FEATURES = _FREE_FEATURES | {"api_access", "multi_user"}
_PRO_FEATURES = _STARTER_FEATURES | {
    "audit_logs",
    "advanced_compliance",
    "advanced_analytics",
    "custom_workflows",
}
_ENTERPRISE_FEATURES = _PRO_FEATURES | {"enterprise_governance", "regulatory_reporting", "white_label"}

DEFAULT_PLANS: tuple[PlanDefinition, ...] = (
    PlanDefinition(
        tier=TIER_FREE,
        name="Free",
        rank=0,
        entitlements=Entitlements(
            limits=_limits(
                users=(1, 1),
                companies=(1, 1),
                exports=(10, 20),
                api_calls=(80, 100),
                storage_mb=(800, 1024),
                audit_retention_days=(None, 30),
            ),
            features=_FREE_FEATURES,
        ),
    ),
    PlanDefinition(
        tier=TIER_TRIAL,
        name="Trial",
        rank=1,
        purchasable=False,
        compliance=frozenset({"GDPR"}),
        entitlements=Entitlements(
            limits=_limits(
                users=(3, 3),
                companies=(2, 2),
                exports=(50, 100),
                api_calls=(800, 1000),
                storage_mb=(4096, 5120),
                audit_retention_days=(None, 30),
            ),
            features=_STARTER_FEATURES,
        ),
    ),
    PlanDefinition(
        tier=TIER_STARTER,
        name="Starter",
        rank=2,
        monthly_price_cents=2900,
        annual_price_cents=29000,
        compliance=frozenset({"GDPR", "CCPA"}),
        entitlements=Entitlements(
            limits=_limits(
                users=(3, 3),
                companies=(2, 2),
                exports=(100, 200),
                api_calls=(800, 1000),
                storage_mb=(8192, 10240),
                audit_retention_days=(None, 90),
            ),
            features=_STARTER_FEATURES,
        ),
    ),
    PlanDefinition(
        tier=TIER_PRO,
        name="Pro",
        rank=3,
        monthly_price_cents=9900,
        annual_price_cents=99000,
        compliance=frozenset({"SOC2", "ISO27001", "GDPR", "CCPA"}),
        entitlements=Entitlements(
            limits=_limits(
                users=(8, 10),
                companies=(4, 5),
                exports=(1000, 2000),
                api_calls=(8000, 10000),
                storage_mb=(81920, 102400),
                audit_retention_days=(None, 2555),
            ),
            features=_PRO_FEATURES,
        ),
    ),
    PlanDefinition(
        tier=TIER_ENTERPRISE,
        name="Enterprise",
        rank=4,
        monthly_price_cents=49900,
        annual_price_cents=499000,
        compliance=frozenset({"SOC2", "ISO27001", "GDPR", "CCPA", "SOX", "HIPAA"}),
        entitlements=Entitlements(
            limits=_limits(
                users=(None, None),
                companies=(None, None),
                exports=(None, None),
                api_calls=(None, None),
                storage_mb=(None, None),
                audit_retention_days=(None, 2555),
            ),
            features=_ENTERPRISE_FEATURES,
        ),
    ),
)

DEFAULT_FEATURES: tuple[FeatureDefinition, ...] = (
    FeatureDefinition(
        key=METRIC_USERS,
        kind=FEATURE_KIND_LIMIT,
        usage_source=USAGE_COUNTED,
        count_entity="tenant_memberships",
        count_filter=MappingProxyType({"is_active": True}),
    ),
    FeatureDefinition(
        key=METRIC_COMPANIES,
        kind=FEATURE_KIND_LIMIT,
        usage_source=USAGE_COUNTED,
        count_entity="companies",
        count_filter=MappingProxyType({"deleted_at": None}),
    ),
    FeatureDefinition(key=METRIC_EXPORTS, kind=FEATURE_KIND_LIMIT),
    FeatureDefinition(key=METRIC_API_CALLS, kind=FEATURE_KIND_LIMIT),
    # Storage overage is billed rather than blocked.
    FeatureDefinition(key=METRIC_STORAGE_MB, kind=FEATURE_KIND_LIMIT, enforcement=ENFORCEMENT_SOFT),
    FeatureDefinition(key="basic_reports", kind=FEATURE_KIND_FLAG),
    FeatureDefinition(key="data_export", kind=FEATURE_KIND_FLAG),
    FeatureDefinition(key="api_access", kind=FEATURE_KIND_FLAG),
    FeatureDefinition(key="multi_user", kind=FEATURE_KIND_FLAG),
    FeatureDefinition(key="audit_logs", kind=FEATURE_KIND_FLAG),
    FeatureDefinition(key="advanced_analytics", kind=FEATURE_KIND_FLAG),
    FeatureDefinition(key="custom_workflows", kind=FEATURE_KIND_FLAG),
    FeatureDefinition(key="white_label", kind=FEATURE_KIND_FLAG),
    FeatureDefinition(
        key="advanced_compliance",
        kind=FEATURE_KIND_FLAG,
        enforcement=ENFORCEMENT_COMPLIANCE,
        compliance_required=frozenset({"SOC2", "ISO27001"}),
    ),
    FeatureDefinition(
        key="enterprise_governance",
        kind=FEATURE_KIND_FLAG,
        enforcement=ENFORCEMENT_COMPLIANCE,
        compliance_required=frozenset({"SOX"}),
    ),
    # Reported when SOX is missing, but not blocking.
    FeatureDefinition(
        key="regulatory_reporting",
        kind=FEATURE_KIND_FLAG,
        compliance_required=frozenset({"SOX"}),
    ),
)

DEFAULT_ACTIONS: Mapping[str, str] = MappingProxyType(
    {
        "users.invite": METRIC_USERS,
        "companies.create": METRIC_COMPANIES,
        "reports.export": METRIC_EXPORTS,
        "api.call": METRIC_API_CALLS,
        "storage.upload": METRIC_STORAGE_MB,
        "reports.basic": "basic_reports",
        "data.export": "data_export",
        "api.access": "api_access",
        "users.multi": "multi_user",
        "audit.view": "audit_logs",
        "analytics.advanced": "advanced_analytics",
        "workflows.custom": "custom_workflows",
        "branding.white_label": "white_label",
        "compliance.advanced": "advanced_compliance",
        "governance.enterprise": "enterprise_governance",
        "reports.regulatory": "regulatory_reporting",
    }
)


def default_plan_registry() -> PlanRegistry:
    return PlanRegistry(DEFAULT_PLANS, DEFAULT_FEATURES, DEFAULT_ACTIONS)


class _LimitConfig(BaseModel):
    soft: int | None = Field(default=None, ge=0)
    hard: int | None = Field(default=None, ge=0)


class _PlanConfig(BaseModel):
    tier: str
    name: str
    rank: int
    purchasable: bool = True
    monthly_price_cents: int = Field(default=0, ge=0)
    annual_price_cents: int = Field(default=0, ge=0)
    compliance: list[str] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)
    limits: dict[str, _LimitConfig] = Field(default_factory=dict)


class _FeatureConfig(BaseModel):
    key: str
    kind: str
    enforcement: str = ENFORCEMENT_HARD
    compliance_required: list[str] = Field(default_factory=list)
    usage_source: str = USAGE_METERED
    count_entity: str | None = None
    count_filter: dict[str, Any] = Field(default_factory=dict)


class _RegistryConfig(BaseModel):
    plans: list[_PlanConfig]
    features: list[_FeatureConfig]
    actions: dict[str, str]


def load_plan_registry(path: str | Path) -> PlanRegistry:
    """Build a registry from a JSON file in the :meth:`PlanRegistry.to_dict` format."""
    try:
        config = _RegistryConfig.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        raise PlanRegistryError(f"failed to load plan registry from {path}: {exc}") from exc
    plans = [
        PlanDefinition(
            tier=plan.tier,
            name=plan.name,
            rank=plan.rank,
            purchasable=plan.purchasable,
            monthly_price_cents=plan.monthly_price_cents,
            annual_price_cents=plan.annual_price_cents,
            compliance=frozenset(plan.compliance),
            entitlements=Entitlements(
                limits=MappingProxyType(
                    {metric: Limit(soft=limit.soft, hard=limit.hard) for metric, limit in plan.limits.items()}
                ),
                features=frozenset(plan.features),
            ),
        )
        for plan in config.plans
    ]
    features = [
        FeatureDefinition(
            key=feature.key,
            kind=feature.kind,
            enforcement=feature.enforcement,
            compliance_required=frozenset(feature.compliance_required),
            usage_source=feature.usage_source,
            count_entity=feature.count_entity,
            count_filter=MappingProxyType(dict(feature.count_filter)),
        )
        for feature in config.features
    ]
    return PlanRegistry(plans, features, config.actions)


@lru_cache
def get_plan_registry() -> PlanRegistry:
    # Load once per process and pin against the approved hash when configured.
    settings = get_settings()
    if settings.plan_registry_path:
        registry = load_plan_registry(settings.plan_registry_path)
    else:
        registry = default_plan_registry()
    registry.verify_integrity(settings.plan_registry_expected_hash)
    logger.info("plan_registry_loaded tiers=%s hash=%s", ",".join(registry.tiers), registry.integrity_hash())
    return registry
