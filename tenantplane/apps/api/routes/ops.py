from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from tenantplane.apps.api.deps import get_plane
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.services.orchestrator import ApplicationPlane
from tenantplane.services.telemetry import counters_snapshot, job_duration_stats


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def metrics(request: Request, plane: ApplicationPlane = Depends(get_plane)) -> dict:
    # In-process view only; each API or worker process reports its own numbers.
    job_names = [plane.provisioning.name, plane.deprovisioning.name]
    job_names.extend(runner.name for runner in plane.deploy_runners.values())
    data = {
        "counters": counters_snapshot(),
        "jobs": {name: job_duration_stats(name) for name in job_names},
        "subscriptions": plane.router.subscriptions(),
    }
    return success_response(request=request, data=data)
