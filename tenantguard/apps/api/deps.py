from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.response import get_correlation_id, get_request_id
from tenantguard.core.config import get_settings
from tenantguard.core.errors import EntitlementDeniedError
from tenantguard.domain.context import TenantContext
from tenantguard.persistence.access import DataAccess
from tenantguard.persistence.adapters.sql import SqlAlchemyDataAccess
from tenantguard.persistence.db import get_session
from tenantguard.services.attack_detection import AttackDetector, DetectionConfig, SecurityMetrics
from tenantguard.services.attempts import get_attempt_tracker
from tenantguard.services.audit import AuditEmitter
from tenantguard.services.entitlements import EntitlementDecision, EntitlementEngine
from tenantguard.services.isolation import ScopedClient
from tenantguard.services.tenant_context import TenantContextResolver
from tenantguard.services.tenant_context import require_permission as check_permission


ENTITLEMENT_WARNING_HEADER = "X-Entitlement-Warning"

_security_metrics = SecurityMetrics()


def get_security_metrics() -> SecurityMetrics:
    return _security_metrics


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_data_access(db: AsyncSession = Depends(get_db)) -> DataAccess:
    return SqlAlchemyDataAccess(db)


@asynccontextmanager
async def _audit_sink() -> AsyncIterator[DataAccess]:
    # Audit rows use their own session so a request rollback cannot drop them.
    async with get_session() as session:
        yield SqlAlchemyDataAccess(session)


def get_audit_emitter() -> AuditEmitter:
    return AuditEmitter(sink_factory=_audit_sink)


async def reject_tenant_id_in_body(request: Request) -> None:
    # Tenant identity comes only from the tenant header, never from payloads.
    content_type = (request.headers.get("content-type") or "").lower()
    if not content_type.startswith("application/json"):
        return
    try:
        payload = await request.json()
    except ValueError:
        return
    if isinstance(payload, dict) and "tenant_id" in payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_ID_NOT_ALLOWED", "message": "Invalid request"},
        )


def _authenticated_user_id(request: Request) -> str | None:
    # Upstream auth sets request.state.user_id; the header is a dev-only shortcut.
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return user_id
    settings = get_settings()
    if settings.auth_dev_bypass:
        return request.headers.get(settings.user_header)
    return None


async def get_tenant_context(
    request: Request,
    db: DataAccess = Depends(get_data_access),
    emitter: AuditEmitter = Depends(get_audit_emitter),
) -> TenantContext:
    settings = get_settings()
    resolver = TenantContextResolver(db, emitter=emitter)
    context = await resolver.resolve(
        user_id=_authenticated_user_id(request),
        claimed_tenant_id=request.headers.get(settings.tenant_header),
        request_id=get_request_id(request),
        correlation_id=get_correlation_id(request),
    )
    request.state.tenant_context = context
    return context


def require_permission(permission: str):
    # Dependency factory enforcing the role permission map at the route level.
    async def _dependency(context: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        check_permission(context, permission)
        return context

    return _dependency


async def get_scoped_client(
    context: TenantContext = Depends(get_tenant_context),
    db: DataAccess = Depends(get_data_access),
    emitter: AuditEmitter = Depends(get_audit_emitter),
) -> ScopedClient:
    return ScopedClient(db, context, emitter=emitter)


async def get_attack_detector(
    db: DataAccess = Depends(get_data_access),
    emitter: AuditEmitter = Depends(get_audit_emitter),
    metrics: SecurityMetrics = Depends(get_security_metrics),
) -> AttackDetector:
    return AttackDetector(
        db,
        config=DetectionConfig.from_settings(),
        tracker=get_attempt_tracker(),
        emitter=emitter,
        metrics=metrics,
    )


async def get_entitlement_engine(
    db: DataAccess = Depends(get_data_access),
    emitter: AuditEmitter = Depends(get_audit_emitter),
) -> EntitlementEngine:
    return EntitlementEngine(db, emitter=emitter)


def require_entitlement(action: str, quantity: int = 1):
    # Dependency factory gating a route on the tenant's plan.
    async def _dependency(
        response: Response,
        context: TenantContext = Depends(get_tenant_context),
        engine: EntitlementEngine = Depends(get_entitlement_engine),
    ) -> EntitlementDecision:
        decision = await engine.check_entitlement(context, action, quantity)
        if not decision.allowed:
            raise EntitlementDeniedError(decision)
        if decision.warn:
            response.headers[ENTITLEMENT_WARNING_HEADER] = decision.reason
        return decision

    return _dependency
