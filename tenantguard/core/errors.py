from __future__ import annotations

from typing import Any


# Fixed vocabulary of user-visible failure messages.
ACCESS_DENIED_MESSAGE = "Access denied"
NOT_FOUND_MESSAGE = "Resource not found"
AUTH_REQUIRED_MESSAGE = "Authentication required"
RATE_LIMITED_MESSAGE = "Too many requests"
INVALID_REQUEST_MESSAGE = "Invalid request"
UPGRADE_REQUIRED_MESSAGE = "Upgrade required"
INTERNAL_ERROR_MESSAGE = "Internal server error"

SAFE_MESSAGES = frozenset(
    {
        ACCESS_DENIED_MESSAGE,
        NOT_FOUND_MESSAGE,
        AUTH_REQUIRED_MESSAGE,
        RATE_LIMITED_MESSAGE,
        INVALID_REQUEST_MESSAGE,
        UPGRADE_REQUIRED_MESSAGE,
        INTERNAL_ERROR_MESSAGE,
    }
)


class TenantGuardError(Exception):
    """Base error for tenantguard.

    Every error carries a stable machine-readable ``code``, the HTTP status it
    maps to and a ``public_message`` drawn from :data:`SAFE_MESSAGES`. The
    exception text itself is internal and only ever reaches logs.
    """

    default_code = "INTERNAL_ERROR"
    default_response: tuple[int, str] = (500, INTERNAL_ERROR_MESSAGE)
    responses: dict[str, tuple[int, str]] = {}

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.status_code, self.public_message = self.responses.get(self.code, self.default_response)
        self.details: dict[str, Any] = dict(details or {})
        super().__init__(message or self.code)


class TenantContextError(TenantGuardError):
    """Tenant context missing, malformed, or not backed by an active membership."""

    default_code = "TENANT_CONTEXT_REQUIRED"
    default_response = (401, AUTH_REQUIRED_MESSAGE)
    responses = {
        "TENANT_CONTEXT_REQUIRED": (401, AUTH_REQUIRED_MESSAGE),
        "INVALID_TENANT_ID": (401, AUTH_REQUIRED_MESSAGE),
        "AUTH_REQUIRED": (401, AUTH_REQUIRED_MESSAGE),
        "TENANT_MEMBERSHIP_INVALID": (403, ACCESS_DENIED_MESSAGE),
        "TENANT_ACCESS_DENIED": (403, ACCESS_DENIED_MESSAGE),
        "PERMISSION_DENIED": (403, ACCESS_DENIED_MESSAGE),
    }


class TenantIsolationError(TenantGuardError):
    """A data-access operation would have crossed a tenant boundary."""

    default_code = "TENANT_ISOLATION_ERROR"
    default_response = (403, ACCESS_DENIED_MESSAGE)

    def __init__(
        self,
        message: str,
        *,
        tenant_id: str | None,
        operation: str,
        entity: str | None = None,
        code: str | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.operation = operation
        self.entity = entity
        super().__init__(message, code=code)


class RawQueryRejectedError(TenantIsolationError):
    """Raw SQL without a tenant reference, or with a blocked statement."""

    default_code = "RAW_QUERY_MISSING_TENANT_FILTER"


class DataAccessError(TenantGuardError):
    """Storage failure raised underneath a tenant-scoped operation."""

    default_code = "DATA_ACCESS_ERROR"

    def __init__(
        self,
        message: str,
        *,
        tenant_id: str | None,
        operation: str,
        entity: str | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.operation = operation
        self.entity = entity
        super().__init__(message)


class ResourceAccessError(TenantGuardError):
    """Resource ownership, identifier, or probing checks failed."""

    default_code = "NOT_FOUND"
    default_response = (404, NOT_FOUND_MESSAGE)
    responses = {
        "NOT_FOUND": (404, NOT_FOUND_MESSAGE),
        "ACCESS_DENIED": (403, ACCESS_DENIED_MESSAGE),
        "INVALID_RESOURCE_ID_FORMAT": (400, INVALID_REQUEST_MESSAGE),
        "BULK_OPERATION_TOO_LARGE": (400, INVALID_REQUEST_MESSAGE),
        "RATE_LIMITED": (429, RATE_LIMITED_MESSAGE),
    }


class EntitlementDeniedError(TenantGuardError):
    """The tenant's plan does not allow the requested action."""

    default_code = "ENTITLEMENT_DENIED"
    default_response = (403, ACCESS_DENIED_MESSAGE)

    def __init__(self, decision: Any) -> None:
        self.decision = decision
        super().__init__(
            f"entitlement denied feature={decision.feature} reason={decision.reason}",
            code=decision.reason,
            details={
                "status": decision.status,
                "reason": decision.reason,
                "required_tier": decision.required_tier,
            },
        )
        if decision.status == "UPGRADE_REQUIRED":
            self.public_message = UPGRADE_REQUIRED_MESSAGE


class InvalidFilterError(TenantGuardError):
    """Malformed filter passed to the data-access layer."""

    default_code = "INVALID_FILTER"
    default_response = (400, INVALID_REQUEST_MESSAGE)


class UnknownEntityError(TenantGuardError):
    """Entity name not present in the storage schema."""

    default_code = "UNKNOWN_ENTITY"


class PlanRegistryError(TenantGuardError):
    """Plan registry failed to load or failed its integrity check."""

    default_code = "PLAN_REGISTRY_ERROR"
