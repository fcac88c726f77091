from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.response import (
    error_response,
    get_request_id,
    is_versioned_request,
    public_message,
)
from tenantguard.core.errors import INTERNAL_ERROR_MESSAGE, INVALID_REQUEST_MESSAGE, TenantGuardError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_REQUIRED",
    403: "ACCESS_DENIED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def tenantguard_exception_handler(request: Request, exc: TenantGuardError) -> JSONResponse:
    # Only the code and a fixed public message leave the process.
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_rejected code=%s status=%s path=%s request_id=%s detail=%s",
        exc.code,
        exc.status_code,
        request.url.path,
        get_request_id(request),
        exc,
    )
    message = public_message(exc.public_message, exc.status_code)
    details = exc.details or None
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": {"code": exc.code, "message": message}}, status_code=exc.status_code)
    payload = error_response(
        request=request, code=exc.code, message=message, status_code=exc.status_code, details=details
    )
    return JSONResponse(content=payload, status_code=exc.status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(
        request=request, code=code, message=message, status_code=exc.status_code, details=details
    )
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(
        request=request, code=code, message=message, status_code=exc.status_code, details=details
    )
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Field locations are safe to return; submitted values are not.
    errors = [{"loc": list(error.get("loc", ())), "type": error.get("type")} for error in exc.errors()]
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message=INVALID_REQUEST_MESSAGE,
        status_code=422,
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s request_id=%s", request.url.path, get_request_id(request))
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": INTERNAL_ERROR_MESSAGE}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message=INTERNAL_ERROR_MESSAGE,
        status_code=500,
    )
    return JSONResponse(content=payload, status_code=500)
