from __future__ import annotations

from typing import Any

from tenantplane.core.config import get_settings


class TenantPredicateError(RuntimeError):
    """Raised when a pooled-table query is built without a tenant id."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def tenant_predicate(model: Any, tenant_id: str | None) -> Any:
    # Pooled tables share rows across tenants; every query filters through here.
    if not tenant_id and get_settings().authz_require_tenant_predicate:
        raise TenantPredicateError(f"Query on {model.__tablename__} requires a tenant_id")
    return model.tenant_id == tenant_id
