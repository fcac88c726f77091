from __future__ import annotations

from typing import Any

from tenantguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Bad request",
        _error_example(code="INVALID_RESOURCE_ID_FORMAT", message="Invalid request"),
    ),
    401: _response(
        "Tenant context or authentication missing",
        _error_example(code="TENANT_CONTEXT_REQUIRED", message="Authentication required"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="TENANT_MEMBERSHIP_INVALID", message="Access denied"),
    ),
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Resource not found"),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Invalid request"),
    ),
    429: _response(
        "Rate limited",
        _error_example(code="RATE_LIMITED", message="Too many requests"),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

ENTITLEMENT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    403: _response(
        "Plan does not allow the action",
        _error_example(
            code="ENTITLEMENT_UPGRADE_REQUIRED",
            message="Upgrade required",
            details={"status": "UPGRADE_REQUIRED", "reason": "ENTITLEMENT_UPGRADE_REQUIRED", "required_tier": "PRO"},
        ),
    ),
}
