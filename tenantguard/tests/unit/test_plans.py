from __future__ import annotations

import json
from pathlib import Path

import pytest

from tenantguard.core.config import get_settings
from tenantguard.core.errors import PlanRegistryError
from tenantguard.services.plans import (
    FEATURE_KIND_LIMIT,
    TIER_ENTERPRISE,
    TIER_FREE,
    TIER_PRO,
    TIER_STARTER,
    TIER_TRIAL,
    Entitlements,
    FeatureDefinition,
    Limit,
    PlanDefinition,
    PlanRegistry,
    default_plan_registry,
    get_plan_registry,
    load_plan_registry,
)


def test_default_registry_tiers_are_ranked() -> None:
    registry = default_plan_registry()

    assert registry.tiers == (TIER_FREE, TIER_TRIAL, TIER_STARTER, TIER_PRO, TIER_ENTERPRISE)
    assert registry.plan(TIER_STARTER).entitlements.limits["exports"] == Limit(soft=100, hard=200)
    assert registry.plan(TIER_ENTERPRISE).entitlements.limits["users"] == Limit()


def test_integrity_hash_is_stable() -> None:
    assert default_plan_registry().integrity_hash() == default_plan_registry().integrity_hash()
    assert len(default_plan_registry().integrity_hash()) == 64


def test_verify_integrity_rejects_drift() -> None:
    registry = default_plan_registry()

    registry.verify_integrity(registry.integrity_hash())
    registry.verify_integrity(None)
    with pytest.raises(PlanRegistryError):
        registry.verify_integrity("0" * 64)


def test_registry_file_round_trips_to_the_same_hash(tmp_path: Path) -> None:
    registry = default_plan_registry()
    path = tmp_path / "plans.json"
    path.write_text(json.dumps(registry.to_dict()), encoding="utf-8")

    loaded = load_plan_registry(path)

    assert loaded.integrity_hash() == registry.integrity_hash()
    assert loaded.feature_for_action("reports.export").key == "exports"


def test_load_rejects_invalid_files(tmp_path: Path) -> None:
    path = tmp_path / "plans.json"
    path.write_text(json.dumps({"plans": [{"tier": "FREE"}], "features": [], "actions": {}}), encoding="utf-8")

    with pytest.raises(PlanRegistryError):
        load_plan_registry(path)
    with pytest.raises(PlanRegistryError):
        load_plan_registry(tmp_path / "missing.json")


def test_registry_validation() -> None:
    free = PlanDefinition(tier=TIER_FREE, name="Free", rank=0, entitlements=Entitlements())
    exports = FeatureDefinition(key="exports", kind=FEATURE_KIND_LIMIT)

    with pytest.raises(PlanRegistryError):
        PlanRegistry([], [exports], {})
    with pytest.raises(PlanRegistryError):
        PlanRegistry([free], [exports], {"reports.export": "missing"})
    with pytest.raises(PlanRegistryError):
        PlanRegistry([free], [FeatureDefinition(key="x", kind="toggle")], {})
    with pytest.raises(PlanRegistryError):
        PlanRegistry(
            [
                PlanDefinition(
                    tier=TIER_FREE,
                    name="Free",
                    rank=0,
                    entitlements=Entitlements(limits={"exports": Limit(soft=30, hard=20)}),
                )
            ],
            [exports],
            {},
        )


def test_lowest_tier_with_skips_unpurchasable_and_noncompliant_plans() -> None:
    registry = default_plan_registry()

    assert registry.lowest_tier_with("basic_reports") == TIER_FREE
    assert registry.lowest_tier_with("multi_user") == TIER_STARTER
    assert registry.lowest_tier_with("advanced_compliance") == TIER_PRO
    assert registry.lowest_tier_with("enterprise_governance") == TIER_ENTERPRISE
    assert registry.lowest_tier_with("nonexistent") is None


def test_unknown_tier_raises() -> None:
    with pytest.raises(PlanRegistryError):
        default_plan_registry().plan("PLATINUM")


def test_get_plan_registry_honours_configured_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    registry = default_plan_registry()
    path = tmp_path / "plans.json"
    path.write_text(json.dumps(registry.to_dict()), encoding="utf-8")
    monkeypatch.setenv("PLAN_REGISTRY_PATH", str(path))
    monkeypatch.setenv("PLAN_REGISTRY_EXPECTED_HASH", registry.integrity_hash())
    get_settings.cache_clear()

    assert get_plan_registry().integrity_hash() == registry.integrity_hash()

    monkeypatch.setenv("PLAN_REGISTRY_EXPECTED_HASH", "f" * 64)
    get_settings.cache_clear()
    get_plan_registry.cache_clear()
    with pytest.raises(PlanRegistryError):
        get_plan_registry()
