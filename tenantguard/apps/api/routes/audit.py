from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from tenantguard.apps.api.deps import get_audit_emitter, get_data_access, require_entitlement, require_permission
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES, ENTITLEMENT_ERROR_RESPONSES
from tenantguard.apps.api.response import success_response
from tenantguard.domain.context import TenantContext
from tenantguard.persistence.access import DataAccess
from tenantguard.services.audit import AuditEmitter, verify_event_hash
from tenantguard.services.isolation import ScopedClient


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class SecurityEventResponse(BaseModel):
    id: int
    occurred_at: str
    tenant_id: str | None
    actor_id: str | None
    action: str
    outcome: str
    severity: str
    resource_type: str | None
    resource_id: str | None
    correlation_id: str | None
    request_id: str | None
    error_code: str | None
    metadata: dict[str, Any] | None
    hash_valid: bool


class SecurityEventsPage(BaseModel):
    items: list[SecurityEventResponse]
    next_offset: int | None


def _to_response(row: dict[str, Any]) -> SecurityEventResponse:
    return SecurityEventResponse(
        id=row["id"],
        occurred_at=row["occurred_at"].isoformat(),
        tenant_id=row.get("tenant_id"),
        actor_id=row.get("actor_id"),
        action=row["action"],
        outcome=row["outcome"],
        severity=row["severity"],
        resource_type=row.get("resource_type"),
        resource_id=row.get("resource_id"),
        correlation_id=row.get("correlation_id"),
        request_id=row.get("request_id"),
        error_code=row.get("error_code"),
        metadata=row.get("metadata_json"),
        hash_valid=verify_event_hash(row),
    )


@router.get(
    "/events",
    responses=ENTITLEMENT_ERROR_RESPONSES,
    dependencies=[Depends(require_entitlement("audit.view"))],
)
async def list_security_events(
    request: Request,
    action: str | None = None,
    severity: str | None = None,
    outcome: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    context: TenantContext = Depends(require_permission("view_audit")),
    db: DataAccess = Depends(get_data_access),
    emitter: AuditEmitter = Depends(get_audit_emitter),
) -> dict:
    # Reads go through the scoped client, so only the caller's tenant is visible.
    where: dict[str, Any] = {}
    if action:
        where["action"] = action
    if severity:
        where["severity"] = severity.upper()
    if outcome:
        where["outcome"] = outcome
    occurred: dict[str, Any] = {}
    if occurred_from:
        occurred["gte"] = occurred_from
    if occurred_to:
        occurred["lt"] = occurred_to
    if occurred:
        where["occurred_at"] = occurred

    rows = await ScopedClient(db, context, emitter=emitter).find_many(
        "security_events",
        where=where,
        order_by=[("occurred_at", "desc"), ("id", "desc")],
        offset=offset,
        limit=limit + 1,
    )
    next_offset = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_offset = offset + limit
    page = SecurityEventsPage(items=[_to_response(row) for row in rows], next_offset=next_offset)
    return success_response(request=request, data=page.model_dump())
