from __future__ import annotations

from tenantguard.core.errors import TenantIsolationError
from tenantguard.domain.context import is_valid_tenant_id


class TenantPredicateError(TenantIsolationError):
    """Tenant-scoped access attempted without a usable tenant predicate."""

    default_code = "TENANT_PREDICATE_REQUIRED"


def require_tenant_id(tenant_id: str | None, *, operation: str = "query") -> str:
    # Every tenant-scoped access must carry a well-formed tenant identifier.
    if not tenant_id:
        raise TenantPredicateError(
            "Tenant predicate required but tenant_id is missing",
            tenant_id=None,
            operation=operation,
        )
    if not is_valid_tenant_id(tenant_id):
        raise TenantPredicateError(
            "Tenant predicate carries a malformed tenant_id",
            tenant_id=None,
            operation=operation,
        )
    return tenant_id
