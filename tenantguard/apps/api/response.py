from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from tenantguard.core.errors import (
    ACCESS_DENIED_MESSAGE,
    AUTH_REQUIRED_MESSAGE,
    INTERNAL_ERROR_MESSAGE,
    INVALID_REQUEST_MESSAGE,
    NOT_FOUND_MESSAGE,
    RATE_LIMITED_MESSAGE,
    SAFE_MESSAGES,
)


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"
CORRELATION_ID_HEADER = "X-Correlation-Id"

# Public message used when a handler hands over text outside the safe vocabulary.
_STATUS_MESSAGES: dict[int, str] = {
    401: AUTH_REQUIRED_MESSAGE,
    403: ACCESS_DENIED_MESSAGE,
    404: NOT_FOUND_MESSAGE,
    429: RATE_LIMITED_MESSAGE,
}

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Request ID only; tenant and user identifiers never appear in meta.
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    # Messages are drawn from a fixed safe vocabulary; details never carry tenant data.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Reuse the middleware-assigned ID, then a client-supplied one, else mint one.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    request.state.request_id = request_id
    return request_id


def get_correlation_id(request: Request) -> str:
    # Correlation spans services; it falls back to the request ID at the edge.
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        return correlation_id
    correlation_id = request.headers.get(CORRELATION_ID_HEADER) or get_request_id(request)
    request.state.correlation_id = correlation_id
    return correlation_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def public_message(message: str, status_code: int) -> str:
    """Return ``message`` if it is in the safe vocabulary, else the status default.

    Framework errors ("Not Found", "Method Not Allowed") and any free text a
    handler passes are replaced, so error bodies never echo internal detail.
    """
    if message in SAFE_MESSAGES:
        return message
    if status_code >= 500:
        return INTERNAL_ERROR_MESSAGE
    return _STATUS_MESSAGES.get(status_code, INVALID_REQUEST_MESSAGE)


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    # Unversioned paths return the bare payload.
    if not is_versioned_request(request):
        return data
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=public_message(message, status_code), details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
