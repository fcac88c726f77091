from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from tenantguard.apps.api.deps import get_audit_emitter, get_data_access
from tenantguard.apps.api.main import create_app
from tenantguard.core.config import get_settings
from tenantguard.domain.context import ROLE_VIEWER, new_tenant_id
from tenantguard.persistence.adapters.memory import InMemoryDataAccess, InMemoryStore
from tenantguard.services.plans import TIER_FREE, TIER_PRO, TIER_STARTER
from tenantguard.tests.utils.tenants import make_context, make_emitter, seed_tenant


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch) -> InMemoryStore:
    monkeypatch.setenv("AUTH_DEV_BYPASS", "true")
    get_settings.cache_clear()
    return InMemoryStore()


def _client(store: InMemoryStore) -> AsyncClient:
    app = create_app()
    app.dependency_overrides[get_data_access] = lambda: InMemoryDataAccess(store)
    app.dependency_overrides[get_audit_emitter] = lambda: make_emitter(store)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _headers(tenant_id: str, user_id: str) -> dict[str, str]:
    return {"X-Tenant-Id": tenant_id, "X-User-Id": user_id}


@pytest.mark.asyncio
async def test_health_reports_registry_hash(store: InMemoryStore) -> None:
    async with _client(store) as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert len(body["data"]["plan_registry_hash"]) == 64
    assert body["meta"] == {"request_id": "req-health", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-health"


@pytest.mark.asyncio
async def test_framework_errors_use_the_safe_vocabulary(store: InMemoryStore) -> None:
    async with _client(store) as client:
        missing = await client.get("/v1/no-such-route")
        wrong_method = await client.delete("/v1/health")

    assert missing.status_code == 404
    assert missing.json()["error"] == {"code": "NOT_FOUND", "message": "Resource not found"}
    assert wrong_method.status_code == 405
    assert wrong_method.json()["error"] == {"code": "METHOD_NOT_ALLOWED", "message": "Invalid request"}


@pytest.mark.asyncio
async def test_missing_tenant_header_is_unauthenticated(store: InMemoryStore) -> None:
    _, user_id = seed_tenant(store)

    async with _client(store) as client:
        response = await client.get("/v1/usage", headers={"X-User-Id": user_id})

    assert response.status_code == 401
    assert response.json()["error"] == {"code": "TENANT_CONTEXT_REQUIRED", "message": "Authentication required"}


@pytest.mark.asyncio
async def test_missing_user_is_unauthenticated(store: InMemoryStore) -> None:
    tenant_id, _ = seed_tenant(store)

    async with _client(store) as client:
        response = await client.get("/v1/usage", headers={"X-Tenant-Id": tenant_id})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_REQUIRED"


@pytest.mark.asyncio
async def test_malformed_tenant_id_is_unauthenticated(store: InMemoryStore) -> None:
    _, user_id = seed_tenant(store)

    async with _client(store) as client:
        response = await client.get("/v1/usage", headers=_headers("acme-corp", user_id))

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_TENANT_ID"


@pytest.mark.asyncio
async def test_foreign_tenant_membership_is_denied_without_leaking_ids(store: InMemoryStore) -> None:
    _, user_id = seed_tenant(store)
    other_tenant, _ = seed_tenant(store)
    unknown_tenant = new_tenant_id()

    async with _client(store) as client:
        foreign = await client.get("/v1/usage", headers=_headers(other_tenant, user_id))
        unknown = await client.get("/v1/usage", headers=_headers(unknown_tenant, user_id))

    for response, tenant_id in ((foreign, other_tenant), (unknown, unknown_tenant)):
        assert response.status_code == 403
        assert response.json()["error"] == {"code": "TENANT_MEMBERSHIP_INVALID", "message": "Access denied"}
        assert tenant_id not in response.text


@pytest.mark.asyncio
async def test_tenant_id_in_body_is_rejected(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store)

    async with _client(store) as client:
        response = await client.post(
            "/v1/entitlements/check",
            headers=_headers(tenant_id, user_id),
            json={"action": "reports.export", "tenant_id": new_tenant_id()},
        )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TENANT_ID_NOT_ALLOWED"


@pytest.mark.asyncio
async def test_entitlement_check_returns_decision(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store, tier=TIER_STARTER)

    async with _client(store) as client:
        granted = await client.post(
            "/v1/entitlements/check",
            headers=_headers(tenant_id, user_id),
            json={"action": "reports.export", "quantity": 5},
        )
        upgrade = await client.post(
            "/v1/entitlements/check",
            headers=_headers(tenant_id, user_id),
            json={"action": "audit.view"},
        )

    assert granted.status_code == 200
    assert granted.json()["data"]["allowed"] is True
    assert granted.json()["data"]["tier"] == TIER_STARTER
    assert granted.json()["data"]["limit"] == 200
    assert upgrade.status_code == 200
    assert upgrade.json()["data"]["status"] == "UPGRADE_REQUIRED"
    assert upgrade.json()["data"]["required_tier"] == TIER_PRO


@pytest.mark.asyncio
async def test_entitlement_check_validates_quantity(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store)

    async with _client(store) as client:
        response = await client.post(
            "/v1/entitlements/check",
            headers=_headers(tenant_id, user_id),
            json={"action": "reports.export", "quantity": -4},
        )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "REQUEST_VALIDATION_ERROR"
    assert all(set(item) == {"loc", "type"} for item in error["details"]["errors"])


@pytest.mark.asyncio
async def test_consume_records_usage_and_warns_past_soft_limit(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store, tier=TIER_STARTER)
    headers = _headers(tenant_id, user_id)

    async with _client(store) as client:
        first = await client.post("/v1/entitlements/consume", headers=headers, json={"action": "reports.export", "quantity": 90})
        second = await client.post("/v1/entitlements/consume", headers=headers, json={"action": "reports.export", "quantity": 20})
        denied = await client.post("/v1/entitlements/consume", headers=headers, json={"action": "reports.export", "quantity": 100})
        usage = await client.get("/v1/usage", headers=headers)

    assert first.status_code == 200
    assert "X-Entitlement-Warning" not in first.headers
    assert second.status_code == 200
    assert second.headers["X-Entitlement-Warning"] == "ENTITLEMENT_SOFT_LIMIT"
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "ENTITLEMENT_HARD_LIMIT"
    assert denied.json()["error"]["message"] == "Access denied"
    assert usage.status_code == 200
    assert usage.json()["data"]["metrics"]["exports"] == 110


@pytest.mark.asyncio
async def test_foreign_and_missing_resources_look_identical(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store)
    other_tenant, _ = seed_tenant(store)
    own_id, foreign_id = str(uuid4()), str(uuid4())
    store.seed(
        "companies",
        [
            {"id": own_id, "tenant_id": tenant_id, "name": "Own"},
            {"id": foreign_id, "tenant_id": other_tenant, "name": "Foreign"},
        ],
    )
    headers = _headers(tenant_id, user_id)

    async with _client(store) as client:
        own = await client.get(f"/v1/resources/company/{own_id}", headers=headers)
        foreign = await client.get(f"/v1/resources/company/{foreign_id}", headers=headers)
        missing = await client.get(f"/v1/resources/company/{uuid4()}", headers=headers)

    assert own.status_code == 200
    assert own.json()["data"]["owned"] is True
    assert foreign.status_code == missing.status_code == 404
    assert foreign.json()["error"] == missing.json()["error"] == {"code": "NOT_FOUND", "message": "Resource not found"}
    assert other_tenant not in foreign.text


@pytest.mark.asyncio
async def test_low_numeric_resource_ids_are_blocked(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store)

    async with _client(store) as client:
        enumerated = await client.get("/v1/resources/invoice/17", headers=_headers(tenant_id, user_id))
        malformed = await client.get("/v1/resources/invoice/inv%27--", headers=_headers(tenant_id, user_id))

    assert enumerated.status_code == 403
    assert enumerated.json()["error"]["code"] == "ACCESS_DENIED"
    assert malformed.status_code == 400
    assert malformed.json()["error"]["code"] == "INVALID_RESOURCE_ID_FORMAT"


@pytest.mark.asyncio
async def test_sequential_bulk_ids_are_denied(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store)

    async with _client(store) as client:
        response = await client.post(
            "/v1/resources/invoice/bulk-validate",
            headers=_headers(tenant_id, user_id),
            json={"ids": ["1000", "1001", "1002", "1003"]},
        )

    assert response.status_code == 403
    assert response.json()["error"] == {"code": "ACCESS_DENIED", "message": "Access denied"}


@pytest.mark.asyncio
async def test_oversized_bulk_request_is_rejected(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store)

    async with _client(store) as client:
        response = await client.post(
            "/v1/resources/invoice/bulk-validate",
            headers=_headers(tenant_id, user_id),
            json={"ids": [str(uuid4()) for _ in range(101)]},
        )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BULK_OPERATION_TOO_LARGE"


@pytest.mark.asyncio
async def test_audit_events_require_plan_feature(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store, tier=TIER_FREE)

    async with _client(store) as client:
        response = await client.get("/v1/audit/events", headers=_headers(tenant_id, user_id))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "ENTITLEMENT_UPGRADE_REQUIRED"
    assert response.json()["error"]["message"] == "Upgrade required"
    assert response.json()["error"]["details"]["required_tier"] == TIER_PRO


@pytest.mark.asyncio
async def test_audit_events_are_tenant_scoped(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store, tier=TIER_PRO)
    other_tenant, other_user = seed_tenant(store, tier=TIER_PRO)
    await make_emitter(store).emit(
        action="attack.enumeration",
        outcome="blocked",
        severity="HIGH",
        context=make_context(other_tenant, other_user),
    )

    async with _client(store) as client:
        response = await client.get(
            "/v1/audit/events",
            headers=_headers(tenant_id, user_id),
            params={"limit": 200},
        )

    assert response.status_code == 200
    items = response.json()["data"]["items"]
    assert items
    assert {item["tenant_id"] for item in items} == {tenant_id}
    assert all(item["hash_valid"] for item in items)
    assert response.json()["data"]["next_offset"] is None


@pytest.mark.asyncio
async def test_audit_events_require_view_audit_permission(store: InMemoryStore) -> None:
    tenant_id, user_id = seed_tenant(store, tier=TIER_PRO, role=ROLE_VIEWER)

    async with _client(store) as client:
        response = await client.get("/v1/audit/events", headers=_headers(tenant_id, user_id))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "PERMISSION_DENIED"
