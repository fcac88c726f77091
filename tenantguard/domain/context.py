from __future__ import annotations

from dataclasses import dataclass
import re
from uuid import uuid4


TENANT_ID_PREFIX = "tn_"
# Tenant IDs are immutable, opaque and never reused: prefix + 32 lowercase hex.
TENANT_ID_PATTERN = re.compile(r"^tn_[0-9a-f]{32}$")

# Storage session variables mirrored from the context for row-level policies.
SESSION_TENANT_VAR = "app.current_tenant_id"
SESSION_USER_VAR = "app.current_user_id"
SESSION_SERVICE_ACCOUNT_VAR = "app.is_service_account"
SESSION_REQUEST_VAR = "app.request_id"
SESSION_VARIABLES = (
    SESSION_TENANT_VAR,
    SESSION_USER_VAR,
    SESSION_SERVICE_ACCOUNT_VAR,
    SESSION_REQUEST_VAR,
)

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_EMPLOYEE = "employee"
ROLE_VIEWER = "viewer"

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_OWNER: frozenset(
        {"read", "write", "delete", "export", "approve", "manage_users", "manage_billing", "view_audit"}
    ),
    ROLE_ADMIN: frozenset({"read", "write", "delete", "export", "approve", "manage_users", "view_audit"}),
    ROLE_MANAGER: frozenset({"read", "write", "export", "approve"}),
    ROLE_EMPLOYEE: frozenset({"read", "write"}),
    ROLE_VIEWER: frozenset({"read"}),
}


def is_valid_tenant_id(value: object) -> bool:
    return isinstance(value, str) and TENANT_ID_PATTERN.fullmatch(value) is not None


def new_tenant_id() -> str:
    # Generate a fresh immutable tenant identifier.
    return f"{TENANT_ID_PREFIX}{uuid4().hex}"


@dataclass(frozen=True)
class TenantContext:
    """Validated identity of the tenant a request acts on behalf of.

    Built once per request by the resolver and passed explicitly to every
    component; there is no ambient "current tenant".
    """

    tenant_id: str
    user_id: str
    request_id: str
    correlation_id: str
    role: str | None = None
    is_service_account: bool = False

    def has_permission(self, permission: str) -> bool:
        return permission in ROLE_PERMISSIONS.get((self.role or "").lower(), frozenset())

    def session_variables(self) -> dict[str, str]:
        # Values are strings because storage session settings are untyped.
        return {
            SESSION_TENANT_VAR: self.tenant_id,
            SESSION_USER_VAR: self.user_id,
            SESSION_SERVICE_ACCOUNT_VAR: "true" if self.is_service_account else "false",
            SESSION_REQUEST_VAR: self.request_id,
        }
