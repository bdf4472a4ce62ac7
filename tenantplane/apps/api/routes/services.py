from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tenantplane.apps.api.deps import get_plane
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES, DEPLOY_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.services.orchestrator import ApplicationPlane


router = APIRouter(prefix="/services", tags=["services"], responses=DEFAULT_ERROR_RESPONSES)


class ServiceResponse(BaseModel):
    service_name: str
    deploy_project: str
    image_name: str
    url_prefix: str
    service_account_mode: str


class DeploymentRequest(BaseModel):
    # Omit tenant_id to roll the service out to every tenant namespace. image_tag
    # applies to those rollouts; single-tenant deploys use the configured default tag.
    tenant_id: str | None = Field(default=None, min_length=1)
    image_tag: str | None = Field(default=None, min_length=1)

    model_config = {"extra": "forbid"}


@router.get("", response_model=SuccessEnvelope[list[ServiceResponse]])
async def list_services(request: Request, plane: ApplicationPlane = Depends(get_plane)) -> dict:
    data = [
        ServiceResponse(
            service_name=registration.service_name,
            deploy_project=registration.deploy_project or registration.service_name,
            image_name=registration.image_name,
            url_prefix=registration.url_prefix,
            service_account_mode=registration.service_account_mode,
        ).model_dump()
        for registration in plane.catalog
    ]
    return success_response(request=request, data=data)


@router.post("/{service_name}/deployments", responses=DEPLOY_ERROR_RESPONSES)
async def create_deployment(
    request: Request,
    service_name: str,
    payload: DeploymentRequest,
    plane: ApplicationPlane = Depends(get_plane),
):
    if payload.tenant_id:
        # Single-tenant deploys run through the service's deploy runner.
        event_id = await plane.request_deploy(service_name, payload.tenant_id)
        data = {"service_name": service_name, "tenant_id": payload.tenant_id, "event_id": event_id}
        return JSONResponse(content=success_response(request=request, data=data), status_code=202)
    report = await plane.deploy_all(service_name, payload.image_tag)
    return success_response(request=request, data=report.to_dict())
