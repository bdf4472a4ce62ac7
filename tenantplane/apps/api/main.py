from __future__ import annotations

from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantplane.apps.api.errors import (
    http_exception_handler,
    tenant_predicate_exception_handler,
    tenantplane_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantplane.apps.api.response import API_VERSION, REQUEST_ID_HEADER, request_id_for
from tenantplane.apps.api.routes.health import router as health_router
from tenantplane.apps.api.routes.ops import router as ops_router
from tenantplane.apps.api.routes.services import router as services_router
from tenantplane.apps.api.routes.tenants import router as tenants_router
from tenantplane.core.config import get_settings
from tenantplane.core.errors import TenantPlaneError
from tenantplane.core.logging import configure_logging
from tenantplane.persistence.guards import TenantPredicateError
from tenantplane.services.orchestrator import ApplicationPlane, build_application_plane
from tenantplane.services.telemetry import record_request


def create_app(plane: ApplicationPlane | None = None) -> FastAPI:
    """Build the control-plane API.

    Without ``plane`` the lifespan composes and seals one per process and
    closes it on shutdown. An injected plane is owned by the caller.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if plane is not None:
            yield
            return
        app.state.plane = build_application_plane(get_settings())
        try:
            yield
        finally:
            await app.state.plane.close()

    app = FastAPI(title="tenantplane control API", lifespan=lifespan)
    if plane is not None:
        # ASGI test transports skip the lifespan.
        app.state.plane = plane

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request_id_for(request)
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TenantPlaneError, tenantplane_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (health_router, tenants_router, services_router, ops_router):
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Load balancers probe the bare path.
    app.include_router(health_router, include_in_schema=False)
    return app


app = create_app()
