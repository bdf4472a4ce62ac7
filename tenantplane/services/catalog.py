from __future__ import annotations

from collections.abc import Iterable, Iterator
import logging
from typing import Literal

from pydantic import BaseModel, TypeAdapter, field_validator, model_validator

from tenantplane.core.config import Settings, get_settings
from tenantplane.core.errors import DuplicateServiceError, JobConfigurationError, UnknownServiceError


logger = logging.getLogger(__name__)


class ServiceRegistration(BaseModel):
    # One application service that is deployed into every tenant namespace.
    model_config = {"extra": "forbid", "frozen": True}

    service_name: str
    image_name: str
    url_prefix: str
    manifest_dir: str
    deploy_project: str | None = None
    image_repository: str | None = None
    service_account_mode: Literal["tenant", "shared"] = "tenant"

    @field_validator("service_name")
    @classmethod
    def _check_service_name(cls, value: str) -> str:
        # The name is embedded in the deployRequest:<name> detail type.
        if not value or ":" in value or any(ch.isspace() for ch in value):
            raise ValueError("service_name must be non-empty without ':' or whitespace")
        return value

    @field_validator("url_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        stripped = value.strip("/")
        if not stripped:
            raise ValueError("url_prefix must not be empty")
        return stripped

    @model_validator(mode="after")
    def _default_project(self) -> "ServiceRegistration":
        if self.deploy_project is None:
            object.__setattr__(self, "deploy_project", f"{self.service_name}TenantDeploy")
        return self

    def resolved_image_repository(self, registry: str = "") -> str:
        if self.image_repository:
            return self.image_repository
        if registry:
            return f"{registry.rstrip('/')}/{self.image_name}"
        return self.image_name


_registrations_adapter = TypeAdapter(list[ServiceRegistration])


class ServiceCatalog:
    """Ordered set of registered services keyed by unique service name."""

    def __init__(self, registrations: Iterable[ServiceRegistration] = ()) -> None:
        self._services: dict[str, ServiceRegistration] = {}
        for registration in registrations:
            self.register(registration)

    @classmethod
    def from_json(cls, raw: str) -> "ServiceCatalog":
        try:
            registrations = _registrations_adapter.validate_json(raw)
        except ValueError as exc:
            raise JobConfigurationError(f"Invalid service catalog: {exc}") from exc
        return cls(registrations)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ServiceCatalog":
        settings = settings or get_settings()
        return cls.from_json(settings.services_json)

    def register(self, registration: ServiceRegistration) -> None:
        if registration.service_name in self._services:
            raise DuplicateServiceError(f"Service {registration.service_name} already registered")
        self._services[registration.service_name] = registration
        logger.debug("service_registered service=%s", registration.service_name)

    def get(self, service_name: str) -> ServiceRegistration:
        try:
            return self._services[service_name]
        except KeyError as exc:
            raise UnknownServiceError(f"Service {service_name} is not registered") from exc

    def names(self) -> list[str]:
        return list(self._services)

    def __iter__(self) -> Iterator[ServiceRegistration]:
        return iter(list(self._services.values()))

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, service_name: object) -> bool:
        return service_name in self._services
