from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.apps.api.response import SuccessEnvelope, success_response
from tenantguard.services.maintenance import last_sweep_at
from tenantguard.services.plans import get_plan_registry

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    plan_registry_hash: str
    last_sweep_at: str | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Report the loaded registry hash so operators can confirm plan integrity.
    swept = last_sweep_at()
    payload = HealthResponse(
        status="ok",
        plan_registry_hash=get_plan_registry().integrity_hash(),
        last_sweep_at=swept.isoformat() if swept else None,
    )
    return success_response(request=request, data=payload.model_dump())
