from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.apps.api.deps import get_db, get_plane
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.core.errors import UnknownTenantError
from tenantplane.domain.models import Tenant
from tenantplane.domain.state import TenantStatus
from tenantplane.persistence.repos import jobs as jobs_repo
from tenantplane.services.fanout import fanout_summary, require_healthy_fanout
from tenantplane.services.orchestrator import ApplicationPlane


router = APIRouter(prefix="/tenants", tags=["tenants"], responses=DEFAULT_ERROR_RESPONSES)

# Tenant ids double as Kubernetes namespace names (RFC 1123 labels).
_TENANT_ID_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


class TenantCreateRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=63, pattern=_TENANT_ID_PATTERN)
    tenant_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    tier: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class LifecycleRequestResponse(BaseModel):
    tenant_id: str
    status: str
    event_id: str | None
    noop: bool


class TenantResponse(BaseModel):
    tenant_id: str
    company_name: str
    admin_email: str
    tier: str
    status: str
    failed_phase: str | None
    lifecycle_attempt: int
    tenant_config: str | None
    created_at: str
    updated_at: str
    deleted_at: str | None


class ExecutionResponse(BaseModel):
    id: str
    job_name: str
    detail_type: str
    attempt: int
    status: str
    error: str | None
    started_at: str
    finished_at: str | None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        tenant_id=tenant.tenant_id,
        company_name=tenant.company_name,
        admin_email=tenant.admin_email,
        tier=tenant.tier,
        status=tenant.status,
        failed_phase=tenant.failed_phase,
        lifecycle_attempt=tenant.lifecycle_attempt,
        tenant_config=tenant.tenant_config,
        created_at=_iso(tenant.created_at) or "",
        updated_at=_iso(tenant.updated_at) or "",
        deleted_at=_iso(tenant.deleted_at),
    )


async def _require_tenant(plane: ApplicationPlane, tenant_id: str) -> Tenant:
    tenant = await plane.registry.get(tenant_id)
    if tenant is None:
        raise UnknownTenantError(f"Tenant {tenant_id} not found")
    return tenant


async def _request_response(
    plane: ApplicationPlane, tenant_id: str, event_id: str | None
) -> dict[str, Any]:
    tenant = await _require_tenant(plane, tenant_id)
    return LifecycleRequestResponse(
        tenant_id=tenant_id, status=tenant.status, event_id=event_id, noop=event_id is None
    ).model_dump()


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[LifecycleRequestResponse],
)
async def create_tenant(
    request: Request,
    payload: TenantCreateRequest,
    plane: ApplicationPlane = Depends(get_plane),
) -> dict:
    event_id = await plane.request_onboarding(
        payload.tenant_id,
        tenant_name=payload.tenant_name,
        email=payload.email,
        tier=payload.tier,
    )
    data = await _request_response(plane, payload.tenant_id, event_id)
    return success_response(request=request, data=data)


@router.get("", response_model=SuccessEnvelope[list[TenantResponse]])
async def list_tenants(
    request: Request,
    status_filter: TenantStatus | None = Query(default=None, alias="status"),
    plane: ApplicationPlane = Depends(get_plane),
) -> dict:
    tenants = await plane.registry.list(status=status_filter.value if status_filter else None)
    data = [_to_response(tenant).model_dump() for tenant in tenants]
    return success_response(request=request, data=data)


@router.get("/{tenant_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_tenant(
    request: Request,
    tenant_id: str,
    plane: ApplicationPlane = Depends(get_plane),
) -> dict:
    tenant = await _require_tenant(plane, tenant_id)
    summary = await fanout_summary(tenant_id, session_factory=plane.session_factory)
    data = {**_to_response(tenant).model_dump(), "deployments": summary.to_dict()}
    return success_response(request=request, data=data)


@router.get("/{tenant_id}/deployments", response_model=SuccessEnvelope[dict[str, Any]])
async def get_tenant_deployments(
    request: Request,
    tenant_id: str,
    plane: ApplicationPlane = Depends(get_plane),
) -> dict:
    # Degraded services surface as PARTIAL_FANOUT_FAILURE; the tenant itself stays Active.
    await _require_tenant(plane, tenant_id)
    summary = await fanout_summary(tenant_id, session_factory=plane.session_factory)
    require_healthy_fanout(summary)
    return success_response(request=request, data=summary.to_dict())


@router.get("/{tenant_id}/executions", response_model=SuccessEnvelope[list[ExecutionResponse]])
async def list_tenant_executions(
    request: Request,
    tenant_id: str,
    plane: ApplicationPlane = Depends(get_plane),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_tenant(plane, tenant_id)
    executions = await jobs_repo.list_executions(db, tenant_id)
    data = [
        ExecutionResponse(
            id=execution.id,
            job_name=execution.job_name,
            detail_type=execution.detail_type,
            attempt=execution.attempt,
            status=execution.status,
            error=execution.error,
            started_at=_iso(execution.started_at) or "",
            finished_at=_iso(execution.finished_at),
        ).model_dump()
        for execution in executions
    ]
    return success_response(request=request, data=data)


@router.delete(
    "/{tenant_id}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[LifecycleRequestResponse],
)
async def delete_tenant(
    request: Request,
    tenant_id: str,
    plane: ApplicationPlane = Depends(get_plane),
) -> dict:
    event_id = await plane.request_offboarding(tenant_id)
    data = await _request_response(plane, tenant_id, event_id)
    return success_response(request=request, data=data)


@router.post(
    "/{tenant_id}/retry",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[LifecycleRequestResponse],
)
async def retry_tenant(
    request: Request,
    tenant_id: str,
    plane: ApplicationPlane = Depends(get_plane),
) -> dict:
    event_id = await plane.retry_lifecycle(tenant_id)
    data = await _request_response(plane, tenant_id, event_id)
    return success_response(request=request, data=data)
