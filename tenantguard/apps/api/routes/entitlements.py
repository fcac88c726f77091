from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from tenantguard.apps.api.deps import (
    ENTITLEMENT_WARNING_HEADER,
    get_entitlement_engine,
    get_tenant_context,
    reject_tenant_id_in_body,
)
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES, ENTITLEMENT_ERROR_RESPONSES
from tenantguard.apps.api.response import success_response
from tenantguard.core.errors import EntitlementDeniedError
from tenantguard.domain.context import TenantContext
from tenantguard.services.entitlements import EntitlementEngine


router = APIRouter(
    prefix="/entitlements",
    tags=["entitlements"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_tenant_id_in_body)],
)


class EntitlementCheckRequest(BaseModel):
    action: str = Field(min_length=1, max_length=128)
    quantity: int = Field(default=1, ge=0)


class EntitlementDecisionResponse(BaseModel):
    status: str
    allowed: bool
    warn: bool
    reason: str
    feature: str | None
    tier: str | None
    requested: int
    limit: int | None = None
    soft_limit: int | None = None
    current: int | None = None
    required_tier: str | None = None
    missing_compliance: list[str] = []


@router.post("/check")
async def check_entitlement(
    payload: EntitlementCheckRequest,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> dict:
    # Report the decision without consuming usage; denials are data, not errors, here.
    decision = await engine.check_entitlement(context, payload.action, payload.quantity)
    body = EntitlementDecisionResponse(**decision.to_dict())
    return success_response(request=request, data=body.model_dump())


@router.post("/consume", responses=ENTITLEMENT_ERROR_RESPONSES)
async def consume_entitlement(
    payload: EntitlementCheckRequest,
    request: Request,
    response: Response,
    context: TenantContext = Depends(get_tenant_context),
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> dict:
    # Record metered usage only when the plan allows it.
    decision = await engine.consume(context, payload.action, payload.quantity)
    if not decision.allowed:
        raise EntitlementDeniedError(decision)
    if decision.warn:
        response.headers[ENTITLEMENT_WARNING_HEADER] = decision.reason
    body = EntitlementDecisionResponse(**decision.to_dict())
    return success_response(request=request, data=body.model_dump())
