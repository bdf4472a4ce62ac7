from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import (
    InvalidStateError,
    PartialFanoutFailure,
    UnknownTenantError,
)
from tenantplane.domain.events import DetailType, LifecycleEvent, build_event, deploy_request_type
from tenantplane.domain.models import DeployTrigger
from tenantplane.domain.state import TenantStatus
from tenantplane.persistence.db import SessionLocal
from tenantplane.persistence.repos import jobs as jobs_repo
from tenantplane.services.catalog import ServiceCatalog, ServiceRegistration
from tenantplane.services.events.router import EventRouter
from tenantplane.services.jobs.runner import AdmitDecision
from tenantplane.services.registry import TenantRegistry
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

TRIGGER_FIELD = "triggerId"


class TenantDeploymentFanout:
    """On provisioning success, triggers one deploy per registered service."""

    def __init__(
        self,
        catalog: ServiceCatalog,
        *,
        router: EventRouter,
        registry: TenantRegistry,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._catalog = catalog
        self._router = router
        self._registry = registry
        self._session_factory = session_factory or SessionLocal

    def register(self) -> None:
        self._router.subscribe(
            DetailType.PROVISION_SUCCESS.value,
            self.on_provision_success,
            name="tenant-deployment-fanout",
        )

    async def on_provision_success(self, event: LifecycleEvent) -> list[str]:
        tenant_id = event.tenant_id
        tenant = await self._registry.get(tenant_id)
        if tenant is None:
            raise UnknownTenantError(f"Tenant {tenant_id} not found")
        # Deploys only ever start for a tenant the registry already reports Active.
        if tenant.status != TenantStatus.ACTIVE.value:
            raise InvalidStateError(
                f"Tenant {tenant_id} is {tenant.status}; deploy fan-out requires Active"
            )

        triggered: list[str] = []
        unpublished: list[str] = []
        for registration in self._catalog:
            trigger = await self._claim_trigger(event, registration, tenant.lifecycle_attempt)
            if trigger is None:
                logger.info(
                    "fanout_already_triggered tenant_id=%s service=%s attempt=%s",
                    tenant_id,
                    registration.service_name,
                    tenant.lifecycle_attempt,
                )
                continue
            deploy_event = build_event(
                deploy_request_type(registration.service_name),
                tenant_id,
                **{TRIGGER_FIELD: trigger.id},
            )
            try:
                await self._router.publish(deploy_event)
            except Exception as exc:  # noqa: BLE001 - one service's publish must not block the rest
                # Left unpublished so a redelivered PROVISION_SUCCESS sends it again.
                await self._mark_trigger(trigger.id, tenant_id, "failed", error=str(exc))
                unpublished.append(registration.service_name)
                logger.exception(
                    "fanout_publish_failed tenant_id=%s service=%s",
                    tenant_id,
                    registration.service_name,
                )
                continue
            async with self._session_factory() as session:
                await jobs_repo.mark_trigger_published(session, trigger.id, tenant_id=tenant_id)
            triggered.append(registration.service_name)
            increment_counter(f"fanout_triggered_total.{registration.service_name}")
        logger.info("fanout_triggered tenant_id=%s services=%s", tenant_id, ",".join(triggered))
        if unpublished:
            # Surfacing the failure lets the queue redeliver this event.
            raise PartialFanoutFailure(tenant_id, unpublished)
        return triggered

    async def _claim_trigger(
        self, event: LifecycleEvent, registration: ServiceRegistration, lifecycle_attempt: int
    ) -> DeployTrigger | None:
        async with self._session_factory() as session:
            trigger = await jobs_repo.create_trigger(
                session,
                tenant_id=event.tenant_id,
                service_name=registration.service_name,
                lifecycle_attempt=lifecycle_attempt,
                event_id=event.id,
            )
            if trigger is not None:
                return trigger
            return await jobs_repo.reclaim_unpublished_trigger(
                session,
                tenant_id=event.tenant_id,
                service_name=registration.service_name,
                lifecycle_attempt=lifecycle_attempt,
            )

    async def _mark_trigger(
        self, trigger_id: str, tenant_id: str, status: str, *, error: str | None = None
    ) -> None:
        async with self._session_factory() as session:
            await jobs_repo.update_trigger_status(
                session, trigger_id, tenant_id=tenant_id, status=status, error=error
            )
            await session.commit()


class DeployJobGuard:
    """Admission and trigger bookkeeping for one service's deploy runner."""

    def __init__(
        self,
        registration: ServiceRegistration,
        *,
        registry: TenantRegistry,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._registration = registration
        self._registry = registry
        self._session_factory = session_factory or SessionLocal

    async def admit(self, event: LifecycleEvent) -> AdmitDecision:
        tenant_id = event.tenant_id
        tenant = await self._registry.get(tenant_id)
        if tenant is None:
            raise UnknownTenantError(f"Tenant {tenant_id} not found")
        if tenant.status != TenantStatus.ACTIVE.value:
            raise InvalidStateError(f"Tenant {tenant_id} is {tenant.status}; deploys require Active")
        trigger_id = event.fields.get(TRIGGER_FIELD)
        async with self._session_factory() as session:
            if trigger_id:
                trigger = await jobs_repo.get_trigger(session, trigger_id, tenant_id=tenant_id)
                if trigger is None:
                    raise InvalidStateError(f"Unknown deploy trigger {trigger_id} for {tenant_id}")
                if trigger.status != "triggered":
                    return AdmitDecision.noop(f"trigger already {trigger.status}")
            latest = await jobs_repo.latest_execution(session, tenant_id, event.detail_type)
        return AdmitDecision.proceed((latest.attempt if latest else 0) + 1)

    async def on_success(
        self, event: LifecycleEvent, decision: AdmitDecision, outputs: Mapping[str, str]
    ) -> None:
        await self._record(event, "succeeded")

    async def on_failure(
        self,
        event: LifecycleEvent,
        decision: AdmitDecision,
        error: Exception,
        *,
        timed_out: bool,
    ) -> None:
        await self._record(event, "failed", error=str(error))

    async def _record(self, event: LifecycleEvent, status: str, *, error: str | None = None) -> None:
        trigger_id = event.fields.get(TRIGGER_FIELD)
        if not trigger_id:
            # Manually requested deploys have no trigger row.
            return
        async with self._session_factory() as session:
            await jobs_repo.update_trigger_status(
                session, trigger_id, tenant_id=event.tenant_id, status=status, error=error
            )
            await session.commit()


@dataclass
class FanoutSummary:
    tenant_id: str
    lifecycle_attempt: int | None = None
    services: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def degraded_services(self) -> list[str]:
        return [name for name, status in self.services.items() if status == "failed"]

    @property
    def pending_services(self) -> list[str]:
        return [name for name, status in self.services.items() if status == "triggered"]

    @property
    def complete(self) -> bool:
        return bool(self.services) and not self.pending_services

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "lifecycle_attempt": self.lifecycle_attempt,
            "services": dict(self.services),
            "errors": dict(self.errors),
            "degraded_services": self.degraded_services,
            "complete": self.complete,
        }


async def fanout_summary(
    tenant_id: str, *, session_factory: async_sessionmaker[AsyncSession] | None = None
) -> FanoutSummary:
    # Reports the latest lifecycle attempt only; older triggers are history.
    factory = session_factory or SessionLocal
    async with factory() as session:
        triggers = await jobs_repo.list_triggers(session, tenant_id)
    summary = FanoutSummary(tenant_id=tenant_id)
    if not triggers:
        return summary
    summary.lifecycle_attempt = max(trigger.lifecycle_attempt for trigger in triggers)
    for trigger in triggers:
        if trigger.lifecycle_attempt != summary.lifecycle_attempt:
            continue
        summary.services[trigger.service_name] = trigger.status
        if trigger.error:
            summary.errors[trigger.service_name] = trigger.error
    return summary


def require_healthy_fanout(summary: FanoutSummary) -> FanoutSummary:
    degraded = summary.degraded_services
    if degraded:
        raise PartialFanoutFailure(summary.tenant_id, degraded)
    return summary
