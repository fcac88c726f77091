from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from tenantguard.apps.api.deps import get_data_access, require_permission
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.apps.api.response import success_response
from tenantguard.domain.context import TenantContext
from tenantguard.persistence.access import DataAccess
from tenantguard.services.usage import UsageMeter


router = APIRouter(tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


class UsageResponse(BaseModel):
    period_start: str
    period_end: str
    metrics: dict[str, int]


@router.get("/usage")
async def get_usage(
    request: Request,
    context: TenantContext = Depends(require_permission("read")),
    db: DataAccess = Depends(get_data_access),
) -> dict:
    snapshot = await UsageMeter(db).snapshot(context.tenant_id)
    body = UsageResponse(
        period_start=snapshot.period_start.isoformat(),
        period_end=snapshot.period_end.isoformat(),
        metrics=snapshot.metrics,
    )
    return success_response(request=request, data=body.model_dump())
