from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantplane.apps.api.response import error_response, is_versioned_request
from tenantplane.core.errors import (
    DuplicateRequestError,
    EventValidationError,
    InvalidStateError,
    JobFailedError,
    JobTimeoutError,
    NamespaceApplyError,
    PartialFanoutFailure,
    TenantPlaneError,
    UnknownServiceError,
    UnknownTenantError,
)
from tenantplane.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_HTTP_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}

# Checked in order; JobTimeoutError must precede its JobFailedError base.
_DOMAIN_ERRORS: tuple[tuple[type[TenantPlaneError], int, str], ...] = (
    (DuplicateRequestError, 409, "DUPLICATE_REQUEST"),
    (UnknownTenantError, 404, "TENANT_NOT_FOUND"),
    (UnknownServiceError, 404, "SERVICE_NOT_FOUND"),
    (InvalidStateError, 409, "INVALID_STATE"),
    (EventValidationError, 422, "EVENT_VALIDATION_ERROR"),
    (JobTimeoutError, 504, "JOB_TIMEOUT"),
    (JobFailedError, 502, "JOB_FAILED"),
    (NamespaceApplyError, 502, "NAMESPACE_APPLY_FAILED"),
    (PartialFanoutFailure, 502, "PARTIAL_FANOUT_FAILURE"),
)


def _respond(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    if is_versioned_request(request):
        content = error_response(request=request, code=code, message=message, details=details)
    else:
        content = {"detail": message}
    return JSONResponse(content=content, status_code=status_code, headers=headers)


def _domain_details(exc: TenantPlaneError) -> dict[str, Any] | None:
    if isinstance(exc, PartialFanoutFailure):
        return {"tenant_id": exc.tenant_id, "degraded_services": exc.degraded_services}
    if isinstance(exc, NamespaceApplyError) and exc.report is not None:
        return {"report": exc.report.to_dict()}
    return None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers FastAPI's HTTPException and Starlette's own 404/405 for unknown routes.
    detail = exc.detail
    code = _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
    details = None
    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        details = {key: value for key, value in detail.items() if key not in {"code", "message"}} or None
        detail = detail.get("message") or "Request failed"
    return _respond(
        request,
        exc.status_code,
        code=code,
        message=str(detail),
        details=details,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    return _respond(
        request,
        422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )


async def tenantplane_exception_handler(request: Request, exc: TenantPlaneError) -> JSONResponse:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return _respond(
                request, status_code, code=code, message=str(exc), details=_domain_details(exc)
            )
    # Configuration and router errors are operator problems; keep them out of responses.
    logger.error("unmapped_domain_error type=%s error=%s", type(exc).__name__, exc)
    return _respond(request, 500, code="INTERNAL_ERROR", message="Internal server error")


async def tenant_predicate_exception_handler(
    request: Request, exc: TenantPredicateError
) -> JSONResponse:
    return _respond(request, 400, code="TENANT_PREDICATE_REQUIRED", message=exc.message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_request_error path=%s", request.url.path)
    return _respond(request, 500, code="INTERNAL_ERROR", message="Internal server error")
