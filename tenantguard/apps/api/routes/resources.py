from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from tenantguard.apps.api.deps import get_attack_detector, reject_tenant_id_in_body, require_permission
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.apps.api.response import success_response
from tenantguard.core.errors import ResourceAccessError
from tenantguard.domain.context import TenantContext
from tenantguard.services.attack_detection import AttackDetector


router = APIRouter(prefix="/resources", tags=["resources"], responses=DEFAULT_ERROR_RESPONSES)


class BulkValidateRequest(BaseModel):
    # Size limits are enforced by the detector so oversized batches are audited.
    ids: list[Any] = Field(default_factory=list)


class OwnershipResponse(BaseModel):
    resource_type: str
    resource_id: str
    owned: bool


class BulkValidateResponse(BaseModel):
    resource_type: str
    valid: bool
    count: int


@router.get("/{resource_type}/{resource_id}")
async def check_resource(
    resource_type: str,
    resource_id: str,
    request: Request,
    context: TenantContext = Depends(require_permission("read")),
    detector: AttackDetector = Depends(get_attack_detector),
) -> dict:
    # Foreign and missing resources are indistinguishable to the caller.
    await detector.require_ownership(context, resource_type, resource_id)
    body = OwnershipResponse(resource_type=resource_type, resource_id=resource_id, owned=True)
    return success_response(request=request, data=body.model_dump())


@router.post("/{resource_type}/bulk-validate", dependencies=[Depends(reject_tenant_id_in_body)])
async def bulk_validate(
    resource_type: str,
    payload: BulkValidateRequest,
    request: Request,
    context: TenantContext = Depends(require_permission("read")),
    detector: AttackDetector = Depends(get_attack_detector),
) -> dict:
    result = await detector.validate_bulk_ownership(context, resource_type, payload.ids)
    if not result.ok:
        raise ResourceAccessError(
            f"bulk validation failed code={result.code} reason={result.reason}",
            code=result.code,
        )
    body = BulkValidateResponse(resource_type=resource_type, valid=True, count=len(payload.ids))
    return success_response(request=request, data=body.model_dump())
