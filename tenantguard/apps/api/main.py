from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenantguard_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantguard.apps.api.response import API_VERSION, CORRELATION_ID_HEADER, REQUEST_ID_HEADER
from tenantguard.apps.api.routes.audit import router as audit_router
from tenantguard.apps.api.routes.entitlements import router as entitlements_router
from tenantguard.apps.api.routes.health import router as health_router
from tenantguard.apps.api.routes.resources import router as resources_router
from tenantguard.apps.api.routes.usage import router as usage_router
from tenantguard.core.config import get_settings
from tenantguard.core.errors import TenantGuardError
from tenantguard.core.logging import configure_logging
from tenantguard.persistence.db import dispose_engine
from tenantguard.services.maintenance import run_sweep_loop
from tenantguard.services.plans import get_plan_registry


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Load and verify the plan registry before serving; a mismatch aborts startup.
    get_plan_registry()
    sweeper = asyncio.create_task(run_sweep_loop(interval_s=get_settings().entitlement_sweep_interval_s))
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await dispose_engine()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="tenantguard API", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        request.state.correlation_id = request.headers.get(CORRELATION_ID_HEADER) or request_id
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(TenantGuardError)
    async def _tenantguard_exception_handler(request: Request, exc: TenantGuardError):
        return await tenantguard_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(entitlements_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    app.include_router(resources_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
