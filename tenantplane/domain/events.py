from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


class DetailType(str, Enum):
    ONBOARDING_REQUEST = "onboardingRequest"
    PROVISION_SUCCESS = "provisionSuccess"
    OFFBOARDING_REQUEST = "offboardingRequest"
    DEPROVISION_SUCCESS = "deprovisionSuccess"


DEPLOY_REQUEST_PREFIX = "deployRequest"
EVENT_SOURCE = "tenantplane.orchestrator"

# Wire contract: required fields per lifecycle detail type.
EVENT_SCHEMA: dict[str, tuple[str, ...]] = {
    DetailType.ONBOARDING_REQUEST.value: ("tenantId", "tier", "tenantName", "email", "tenantStatus"),
    DetailType.PROVISION_SUCCESS.value: ("tenantId", "tenantConfig", "tenantStatus"),
    DetailType.OFFBOARDING_REQUEST.value: ("tenantId", "tier"),
    DetailType.DEPROVISION_SUCCESS.value: ("tenantId", "tenantStatus"),
}

DEPLOY_REQUEST_FIELDS: tuple[str, ...] = ("tenantId",)


def deploy_request_type(service_name: str) -> str:
    # One deploy detail type per registered service keeps subscriptions static.
    return f"{DEPLOY_REQUEST_PREFIX}:{service_name}"


def is_deploy_request(detail_type: str) -> bool:
    return detail_type.startswith(f"{DEPLOY_REQUEST_PREFIX}:")


def required_fields(detail_type: str) -> tuple[str, ...]:
    if is_deploy_request(detail_type):
        return DEPLOY_REQUEST_FIELDS
    try:
        return EVENT_SCHEMA[detail_type]
    except KeyError as exc:
        raise KeyError(f"Unknown detail type: {detail_type}") from exc


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleEvent(BaseModel):
    # Envelope shared by the router, the arq queue and job runners.
    id: str = Field(default_factory=lambda: uuid4().hex)
    detail_type: str
    tenant_id: str
    fields: dict[str, str] = Field(default_factory=dict)
    source: str = EVENT_SOURCE
    occurred_at: datetime = Field(default_factory=_utc_now)

    @model_validator(mode="after")
    def _bind_tenant(self) -> "LifecycleEvent":
        # Every event is attributable to exactly one tenant.
        if not self.tenant_id:
            raise ValueError("tenant_id is required")
        existing = self.fields.get("tenantId")
        if existing is None:
            self.fields["tenantId"] = self.tenant_id
        elif existing != self.tenant_id:
            raise ValueError("fields.tenantId does not match tenant_id")
        return self

    def missing_fields(self) -> list[str]:
        # Blank values count as missing; job inputs are exported to shells as-is.
        return [name for name in required_fields(self.detail_type) if not self.fields.get(name)]

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def build_event(detail_type: DetailType | str, tenant_id: str, **fields: str) -> LifecycleEvent:
    value = detail_type.value if isinstance(detail_type, DetailType) else detail_type
    return LifecycleEvent(
        detail_type=value,
        tenant_id=tenant_id,
        fields={key: str(item) for key, item in fields.items()},
    )
