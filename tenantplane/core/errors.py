from __future__ import annotations

from typing import Any


class TenantPlaneError(Exception):
    """Base error for tenantplane."""


class DuplicateRequestError(TenantPlaneError):
    """Tenant is already mid-lifecycle; the request is rejected and not retried."""


class UnknownTenantError(TenantPlaneError):
    """Operation targets a tenant that does not exist in the expected state."""


class InvalidStateError(TenantPlaneError):
    """Tenant status does not allow the requested transition."""


class EventValidationError(TenantPlaneError):
    """Lifecycle event is missing required fields or is malformed."""


class RouterSealedError(TenantPlaneError):
    """Subscriptions are only accepted before the router is sealed at startup."""


class JobConfigurationError(TenantPlaneError):
    """Job descriptor or executor is misconfigured; fatal at registration."""


class JobFailedError(TenantPlaneError):
    """Job execution returned a failure."""


class JobTimeoutError(JobFailedError):
    """Job exceeded its hard timeout."""


class DuplicateServiceError(TenantPlaneError):
    """Service names must be unique within the catalog."""


class NamespaceApplyError(TenantPlaneError):
    """Applying a service patch to one or more namespaces failed."""

    def __init__(self, message: str, *, report: Any | None = None) -> None:
        super().__init__(message)
        self.report = report


class PartialFanoutFailure(TenantPlaneError):
    """One or more per-service deploy triggers failed for a tenant."""

    def __init__(self, tenant_id: str, degraded_services: list[str]) -> None:
        super().__init__(
            f"Tenant {tenant_id} has degraded services: {', '.join(degraded_services)}"
        )
        self.tenant_id = tenant_id
        self.degraded_services = degraded_services


class DatabaseError(TenantPlaneError):
    """Database layer failure."""


class KubernetesCommandError(TenantPlaneError):
    """A kubectl invocation exited non-zero or timed out."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class UnknownServiceError(TenantPlaneError):
    """Service name is not registered in the catalog."""
