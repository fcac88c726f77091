from __future__ import annotations

import pytest

from tenantguard.domain.context import TenantContext, is_valid_tenant_id, new_tenant_id
from tenantguard.persistence.guards import TenantPredicateError, require_tenant_id


def test_require_tenant_id_accepts_well_formed_ids() -> None:
    tenant_id = new_tenant_id()

    assert require_tenant_id(tenant_id) == tenant_id


@pytest.mark.parametrize("value", [None, "", "tn_123", "TN_0123456789ABCDEF0123456789ABCDEF", "acme"])
def test_require_tenant_id_rejects_missing_or_malformed(value) -> None:
    with pytest.raises(TenantPredicateError) as exc_info:
        require_tenant_id(value, operation="find_many")

    assert exc_info.value.code == "TENANT_PREDICATE_REQUIRED"
    assert exc_info.value.operation == "find_many"
    assert exc_info.value.status_code == 403


def test_new_tenant_ids_are_unique_and_valid() -> None:
    ids = {new_tenant_id() for _ in range(100)}

    assert len(ids) == 100
    assert all(is_valid_tenant_id(value) for value in ids)
    assert not is_valid_tenant_id(42)


def test_context_session_variables_are_strings() -> None:
    context = TenantContext(
        tenant_id=new_tenant_id(),
        user_id="svc-meter",
        request_id="req-1",
        correlation_id="req-1",
        is_service_account=True,
    )

    assert context.session_variables() == {
        "app.current_tenant_id": context.tenant_id,
        "app.current_user_id": "svc-meter",
        "app.is_service_account": "true",
        "app.request_id": "req-1",
    }
    assert not context.has_permission("read")
