from __future__ import annotations

from collections.abc import Iterator

import pytest

from tenantguard.core.config import get_settings
from tenantguard.services.attempts import reset_attempt_tracker_state
from tenantguard.services.entitlements import reset_entitlement_cache
from tenantguard.services.maintenance import reset_maintenance_state
from tenantguard.services.plans import get_plan_registry


@pytest.fixture(autouse=True)
def reset_process_state(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    # Keep cached settings, registries and caches from leaking between tests.
    monkeypatch.setenv("SECURITY_ALERT_WEBHOOK_ENABLED", "false")
    get_settings.cache_clear()
    get_plan_registry.cache_clear()
    reset_entitlement_cache()
    reset_attempt_tracker_state()
    reset_maintenance_state()
    yield
    get_settings.cache_clear()
    get_plan_registry.cache_clear()
    reset_entitlement_cache()
    reset_attempt_tracker_state()
    reset_maintenance_state()
