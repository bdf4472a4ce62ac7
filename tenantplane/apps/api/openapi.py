from __future__ import annotations

from typing import Any

from tenantplane.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: _response("Not found", code="TENANT_NOT_FOUND", message="Tenant t-100 not found"),
    409: _response(
        "Conflict",
        code="DUPLICATE_REQUEST",
        message="Tenant t-100 is already Provisioning",
    ),
    422: _response(
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": []},
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

DEPLOY_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    502: _response(
        "Deployment failed",
        code="NAMESPACE_APPLY_FAILED",
        message="ProductService failed in 1 namespace(s): t-200",
        details={"report": {"applied": ["t-100"], "failed": {"t-200": "kubectl exited with 1"}}},
    ),
}
