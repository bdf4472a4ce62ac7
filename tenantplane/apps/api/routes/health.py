from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    router_sealed: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    plane = getattr(request.app.state, "plane", None)
    payload = HealthResponse(status="ok", router_sealed=bool(plane and plane.router.sealed))
    return success_response(request=request, data=payload.model_dump())
