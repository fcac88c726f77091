from __future__ import annotations

from collections.abc import Iterable
import logging
from uuid import uuid4

from tenantguard.core.errors import TenantContextError
from tenantguard.domain.context import TenantContext, is_valid_tenant_id
from tenantguard.persistence.access import DataAccess
from tenantguard.services.audit import SEVERITY_LOW, SEVERITY_MEDIUM, AuditEmitter
from tenantguard.services.isolation import tenant_session


logger = logging.getLogger(__name__)


class TenantContextResolver:
    """Turn an authenticated user and a claimed tenant into a :class:`TenantContext`.

    Resolution never falls back to a default tenant: any missing, malformed or
    unbacked claim is a hard failure. Unknown tenants and missing memberships
    share one error code so callers cannot discover which tenants exist.
    """

    def __init__(self, db: DataAccess, *, emitter: AuditEmitter | None = None) -> None:
        self._db = db
        self._emitter = emitter

    async def resolve(
        self,
        *,
        user_id: str | None,
        claimed_tenant_id: str | None,
        request_id: str | None = None,
        correlation_id: str | None = None,
        allowed_roles: Iterable[str] | None = None,
    ) -> TenantContext:
        request_id = request_id or uuid4().hex
        correlation_id = correlation_id or request_id
        claimed = (claimed_tenant_id or "").strip()
        user_id = (user_id or "").strip()

        if not user_id:
            await self._reject("AUTH_REQUIRED", None, None, request_id, correlation_id)
        if not claimed:
            await self._reject("TENANT_CONTEXT_REQUIRED", None, user_id, request_id, correlation_id)
        if not is_valid_tenant_id(claimed):
            # The malformed value is never echoed back or stored.
            await self._reject("INVALID_TENANT_ID", None, user_id, request_id, correlation_id)

        provisional = TenantContext(
            tenant_id=claimed,
            user_id=user_id,
            request_id=request_id,
            correlation_id=correlation_id,
        )
        async with tenant_session(self._db, provisional) as db:
            tenant = await db.find_one("tenants", where={"id": claimed})
            membership = await db.find_one(
                "tenant_memberships",
                where={"tenant_id": claimed, "user_id": user_id, "is_active": True},
            )

        if tenant is None or not tenant.get("is_active", False) or tenant.get("deleted_at") is not None:
            await self._reject("TENANT_MEMBERSHIP_INVALID", claimed, user_id, request_id, correlation_id)
        if membership is None:
            await self._reject("TENANT_MEMBERSHIP_INVALID", claimed, user_id, request_id, correlation_id)

        role = (membership.get("role") or "").lower() or None
        if allowed_roles is not None and role not in {r.lower() for r in allowed_roles}:
            await self._reject(
                "TENANT_ACCESS_DENIED",
                claimed,
                user_id,
                request_id,
                correlation_id,
                metadata={"role": role},
            )

        context = TenantContext(
            tenant_id=claimed,
            user_id=user_id,
            request_id=request_id,
            correlation_id=correlation_id,
            role=role,
        )
        if self._emitter is not None:
            await self._emitter.emit(
                action="tenant.context.resolved",
                outcome="success",
                severity=SEVERITY_LOW,
                context=context,
                resource_type="tenant",
                resource_id=claimed,
                metadata={"role": role},
            )
        return context

    async def _reject(
        self,
        code: str,
        tenant_id: str | None,
        user_id: str | None,
        request_id: str,
        correlation_id: str,
        *,
        metadata: dict[str, object] | None = None,
    ) -> None:
        # Record the rejection, then raise; the raised error never names the tenant.
        logger.info("tenant_context_rejected code=%s user_id=%s request_id=%s", code, user_id, request_id)
        if self._emitter is not None:
            await self._emitter.emit(
                action="tenant.context.rejected",
                outcome="failure",
                severity=SEVERITY_MEDIUM,
                tenant_id=tenant_id,
                actor_id=user_id or None,
                resource_type="tenant",
                correlation_id=correlation_id,
                request_id=request_id,
                error_code=code,
                metadata=metadata,
            )
        raise TenantContextError(f"tenant context rejected: {code}", code=code)


async def resolve_tenant_context(
    db: DataAccess,
    *,
    user_id: str | None,
    claimed_tenant_id: str | None,
    request_id: str | None = None,
    correlation_id: str | None = None,
    allowed_roles: Iterable[str] | None = None,
    emitter: AuditEmitter | None = None,
) -> TenantContext:
    resolver = TenantContextResolver(db, emitter=emitter)
    return await resolver.resolve(
        user_id=user_id,
        claimed_tenant_id=claimed_tenant_id,
        request_id=request_id,
        correlation_id=correlation_id,
        allowed_roles=allowed_roles,
    )


def require_permission(context: TenantContext, permission: str) -> None:
    if not context.has_permission(permission):
        logger.info(
            "permission_denied tenant_id=%s user_id=%s permission=%s",
            context.tenant_id,
            context.user_id,
            permission,
        )
        raise TenantContextError(f"missing permission {permission}", code="PERMISSION_DENIED")
