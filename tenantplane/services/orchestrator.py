from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.config import Settings, get_settings
from tenantplane.core.errors import DuplicateRequestError, InvalidStateError, UnknownTenantError
from tenantplane.domain.events import (
    EVENT_SCHEMA,
    DetailType,
    LifecycleEvent,
    build_event,
    deploy_request_type,
)
from tenantplane.domain.models import Tenant
from tenantplane.domain.state import IN_PROGRESS_STATUS, TERMINAL_STATUS, LifecyclePhase, TenantStatus
from tenantplane.persistence.db import SessionLocal
from tenantplane.persistence.repos import jobs as jobs_repo
from tenantplane.services.catalog import ServiceCatalog
from tenantplane.services.events.router import EventRouter, EventTransport
from tenantplane.services.events.transport import build_transport
from tenantplane.services.fanout import DeployJobGuard, TenantDeploymentFanout
from tenantplane.services.jobs.descriptor import JobDescriptor
from tenantplane.services.jobs.executors import (
    ClusterCredential,
    JobExecutor,
    ScriptJobExecutor,
    ServiceDeployExecutor,
)
from tenantplane.services.jobs.runner import AdmitDecision, JobRunner
from tenantplane.services.kube import KubectlClient, KubernetesClient
from tenantplane.services.patcher import GlobalDeployReport, NamespacePatcher
from tenantplane.services.registry import TenantRegistry


logger = logging.getLogger(__name__)

PROVISIONING_JOB = JobDescriptor(
    name="provisioning",
    incoming=DetailType.ONBOARDING_REQUEST.value,
    input_fields=EVENT_SCHEMA[DetailType.ONBOARDING_REQUEST.value],
    output_fields=("tenantConfig", "tenantStatus"),
    outgoing=DetailType.PROVISION_SUCCESS.value,
)

DEPROVISIONING_JOB = JobDescriptor(
    name="deprovisioning",
    incoming=DetailType.OFFBOARDING_REQUEST.value,
    input_fields=EVENT_SCHEMA[DetailType.OFFBOARDING_REQUEST.value],
    output_fields=("tenantStatus",),
    outgoing=DetailType.DEPROVISION_SUCCESS.value,
)

_REQUEST_TYPE = {
    LifecyclePhase.PROVISIONING: DetailType.ONBOARDING_REQUEST.value,
    LifecyclePhase.DEPROVISIONING: DetailType.OFFBOARDING_REQUEST.value,
}


async def last_execution_timed_out(
    session_factory: async_sessionmaker[AsyncSession], tenant_id: str, phase: LifecyclePhase
) -> bool:
    async with session_factory() as session:
        latest = await jobs_repo.latest_execution(session, tenant_id, _REQUEST_TYPE[phase])
    return latest is not None and latest.status == "timed_out"


class LifecycleJobGuard:
    """Registry admission for the provisioning and deprovisioning runners.

    A request for a tenant that already reached the phase's terminal status is
    a no-op; a request for a tenant that is mid-phase is a duplicate unless
    its last job timed out, in which case the phase is re-entered.
    """

    def __init__(
        self,
        phase: LifecyclePhase,
        *,
        registry: TenantRegistry,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._phase = phase
        self._registry = registry
        self._session_factory = session_factory or SessionLocal

    async def _load_tenant(self, event: LifecycleEvent) -> Tenant:
        tenant = await self._registry.get(event.tenant_id)
        if tenant is not None:
            return tenant
        if self._phase is LifecyclePhase.PROVISIONING:
            # Onboarding requests arriving from outside the plane create their own record.
            return await self._registry.request_provisioning(
                event.tenant_id,
                company_name=event.fields["tenantName"],
                admin_email=event.fields["email"],
                tier=event.fields["tier"],
            )
        raise UnknownTenantError(f"Tenant {event.tenant_id} not found")

    async def admit(self, event: LifecycleEvent) -> AdmitDecision:
        tenant_id = event.tenant_id
        tenant = await self._load_tenant(event)
        terminal = TERMINAL_STATUS[self._phase]
        in_progress = IN_PROGRESS_STATUS[self._phase]
        if tenant.status == terminal.value:
            return AdmitDecision.noop(f"tenant already {terminal.value}")
        allow_reentry = False
        if tenant.status == in_progress.value:
            allow_reentry = await last_execution_timed_out(self._session_factory, tenant_id, self._phase)
            if not allow_reentry:
                raise DuplicateRequestError(f"Tenant {tenant_id} is already {in_progress.value}")
        ticket = await self._registry.begin_phase(tenant_id, self._phase, allow_reentry=allow_reentry)
        if ticket is not None:
            return AdmitDecision.proceed(ticket.attempt)

        current = await self._registry.get(tenant_id)
        status = current.status if current is not None else None
        if status == terminal.value:
            return AdmitDecision.noop(f"tenant already {terminal.value}")
        if status == in_progress.value:
            raise DuplicateRequestError(f"Tenant {tenant_id} is already {in_progress.value}")
        if self._phase is LifecyclePhase.PROVISIONING:
            # Same answer the registry gives a second onboarding request for a known tenant.
            raise DuplicateRequestError(f"Tenant {tenant_id} already exists with status {status}")
        raise InvalidStateError(
            f"Tenant {tenant_id} cannot enter {self._phase.value} from status {status}"
        )

    async def on_success(
        self, event: LifecycleEvent, decision: AdmitDecision, outputs: Mapping[str, str]
    ) -> None:
        if self._phase is LifecyclePhase.PROVISIONING:
            await self._registry.mark_provisioned(event.tenant_id, outputs.get("tenantConfig"))

    async def on_failure(
        self,
        event: LifecycleEvent,
        decision: AdmitDecision,
        error: Exception,
        *,
        timed_out: bool,
    ) -> None:
        if timed_out:
            # The job's effects are unknown; the tenant stays in its in-progress phase.
            logger.warning(
                "lifecycle_job_timed_out tenant_id=%s phase=%s attempt=%s",
                event.tenant_id,
                self._phase.value,
                decision.attempt,
            )
            return
        await self._registry.mark_failed(event.tenant_id, self._phase, attempt=decision.attempt)


class DeprovisionRecorder:
    """Records deprovisioning success as the tenant's terminal Deleted state."""

    def __init__(self, registry: TenantRegistry) -> None:
        self._registry = registry

    async def on_deprovision_success(self, event: LifecycleEvent) -> None:
        tenant = await self._registry.get(event.tenant_id)
        if tenant is not None and tenant.status == TenantStatus.DELETED.value:
            logger.info("tenant_already_deleted tenant_id=%s", event.tenant_id)
            return
        await self._registry.mark_deleted(event.tenant_id)


@dataclass
class ApplicationPlane:
    settings: Settings
    router: EventRouter
    registry: TenantRegistry
    catalog: ServiceCatalog
    patcher: NamespacePatcher
    fanout: TenantDeploymentFanout
    provisioning: JobRunner
    deprovisioning: JobRunner
    deploy_runners: dict[str, JobRunner] = field(default_factory=dict)
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal

    async def request_onboarding(
        self,
        tenant_id: str,
        *,
        tenant_name: str,
        email: str,
        tier: str,
        tenant_status: str = "In progress",
    ) -> str | None:
        """Record the tenant and publish ONBOARDING_REQUEST.

        Returns the published event id, or None when the tenant is already Active.
        """
        tenant = await self.registry.get(tenant_id)
        if tenant is not None and tenant.status == TenantStatus.ACTIVE.value:
            logger.info("onboarding_noop tenant_id=%s status=%s", tenant_id, tenant.status)
            return None
        retrying_timeout = (
            tenant is not None
            and tenant.status == TenantStatus.PROVISIONING.value
            and await last_execution_timed_out(
                self.session_factory, tenant_id, LifecyclePhase.PROVISIONING
            )
        )
        if not retrying_timeout:
            await self.registry.request_provisioning(
                tenant_id, company_name=tenant_name, admin_email=email, tier=tier
            )
        event = build_event(
            DetailType.ONBOARDING_REQUEST,
            tenant_id,
            tier=tier,
            tenantName=tenant_name,
            email=email,
            tenantStatus=tenant_status,
        )
        return await self.router.publish(event)

    async def request_offboarding(self, tenant_id: str) -> str | None:
        tenant = await self.registry.get(tenant_id)
        if tenant is None:
            raise UnknownTenantError(f"Tenant {tenant_id} not found")
        if tenant.status == TenantStatus.DELETED.value:
            logger.info("offboarding_noop tenant_id=%s", tenant_id)
            return None
        if tenant.status == TenantStatus.DEPROVISIONING.value:
            if not await last_execution_timed_out(
                self.session_factory, tenant_id, LifecyclePhase.DEPROVISIONING
            ):
                raise DuplicateRequestError(f"Tenant {tenant_id} is already deprovisioning")
        elif not (
            tenant.status == TenantStatus.ACTIVE.value
            or (
                tenant.status == TenantStatus.FAILED.value
                and tenant.failed_phase == LifecyclePhase.DEPROVISIONING.value
            )
        ):
            raise InvalidStateError(
                f"Tenant {tenant_id} cannot be deprovisioned from status {tenant.status}"
            )
        event = build_event(DetailType.OFFBOARDING_REQUEST, tenant_id, tier=tenant.tier)
        return await self.router.publish(event)

    async def retry_lifecycle(self, tenant_id: str) -> str | None:
        # Re-publish the request event of whichever phase the tenant is stuck in.
        tenant = await self.registry.get(tenant_id)
        if tenant is None:
            raise UnknownTenantError(f"Tenant {tenant_id} not found")
        phase = _stuck_phase(tenant)
        if phase is None:
            raise InvalidStateError(f"Tenant {tenant_id} has nothing to retry in status {tenant.status}")
        if phase is LifecyclePhase.PROVISIONING:
            return await self.request_onboarding(
                tenant_id,
                tenant_name=tenant.company_name,
                email=tenant.admin_email,
                tier=tenant.tier,
            )
        return await self.request_offboarding(tenant_id)

    async def request_deploy(self, service_name: str, tenant_id: str) -> str:
        self.catalog.get(service_name)
        event = build_event(deploy_request_type(service_name), tenant_id)
        return await self.router.publish(event)

    async def deploy_all(self, service_name: str, image_tag: str | None = None) -> GlobalDeployReport:
        registration = self.catalog.get(service_name)
        return await self.patcher.deploy_all(registration, image_tag)

    async def drain(self) -> None:
        await self.router.drain()

    async def close(self) -> None:
        await self.router.close()


def _stuck_phase(tenant: Tenant) -> LifecyclePhase | None:
    if tenant.status == TenantStatus.FAILED.value and tenant.failed_phase:
        return LifecyclePhase(tenant.failed_phase)
    if tenant.status in (TenantStatus.REQUESTED.value, TenantStatus.PROVISIONING.value):
        return LifecyclePhase.PROVISIONING
    if tenant.status == TenantStatus.DEPROVISIONING.value:
        return LifecyclePhase.DEPROVISIONING
    return None


def build_application_plane(
    settings: Settings | None = None,
    *,
    transport: EventTransport | None = None,
    kube: KubernetesClient | None = None,
    catalog: ServiceCatalog | None = None,
    provisioning_executor: JobExecutor | None = None,
    deprovisioning_executor: JobExecutor | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    manifest_root: str | None = None,
) -> ApplicationPlane:
    """Compose router, registry, runners and fan-out, then seal the router."""
    settings = settings or get_settings()
    factory = session_factory or SessionLocal
    catalog = catalog if catalog is not None else ServiceCatalog.from_settings(settings)
    vocabulary = [*EVENT_SCHEMA, *(deploy_request_type(name) for name in catalog.names())]
    router = EventRouter(
        vocabulary=vocabulary,
        transport=transport or build_transport(settings.event_transport),
    )
    registry = TenantRegistry(factory)
    credential = ClusterCredential.from_settings(settings)

    provisioning = JobRunner(
        PROVISIONING_JOB,
        provisioning_executor
        or ScriptJobExecutor(settings.provisioning_script_path, shell=settings.job_shell),
        router=router,
        guard=LifecycleJobGuard(LifecyclePhase.PROVISIONING, registry=registry, session_factory=factory),
        timeout_s=settings.job_timeout_s,
        credential=credential,
        image=settings.job_image,
        session_factory=factory,
    )
    deprovisioning = JobRunner(
        DEPROVISIONING_JOB,
        deprovisioning_executor
        or ScriptJobExecutor(settings.deprovisioning_script_path, shell=settings.job_shell),
        router=router,
        guard=LifecycleJobGuard(
            LifecyclePhase.DEPROVISIONING, registry=registry, session_factory=factory
        ),
        timeout_s=settings.job_timeout_s,
        credential=credential,
        image=settings.job_image,
        session_factory=factory,
    )
    provisioning.register()
    deprovisioning.register()

    patcher = NamespacePatcher(
        kube or KubectlClient.from_settings(settings),
        settings=settings,
        manifest_root=manifest_root,
    )
    fanout = TenantDeploymentFanout(catalog, router=router, registry=registry, session_factory=factory)
    fanout.register()

    deploy_runners: dict[str, JobRunner] = {}
    for registration in catalog:
        runner = JobRunner(
            JobDescriptor(
                name=registration.deploy_project or registration.service_name,
                incoming=deploy_request_type(registration.service_name),
                input_fields=("tenantId",),
            ),
            ServiceDeployExecutor(patcher, registration),
            router=router,
            guard=DeployJobGuard(registration, registry=registry, session_factory=factory),
            timeout_s=settings.deploy_job_timeout_s,
            credential=credential,
            image=settings.job_image,
            session_factory=factory,
        )
        runner.register()
        deploy_runners[registration.service_name] = runner

    recorder = DeprovisionRecorder(registry)
    router.subscribe(
        DetailType.DEPROVISION_SUCCESS.value,
        recorder.on_deprovision_success,
        name="deprovision-recorder",
    )
    router.seal()
    logger.info(
        "application_plane_ready transport=%s services=%s",
        settings.event_transport,
        ",".join(catalog.names()),
    )
    return ApplicationPlane(
        settings=settings,
        router=router,
        registry=registry,
        catalog=catalog,
        patcher=patcher,
        fanout=fanout,
        provisioning=provisioning,
        deprovisioning=deprovisioning,
        deploy_runners=deploy_runners,
        session_factory=factory,
    )
