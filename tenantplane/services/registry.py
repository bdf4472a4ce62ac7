from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import DuplicateRequestError, InvalidStateError, UnknownTenantError
from tenantplane.domain.models import Tenant
from tenantplane.domain.state import IN_PROGRESS_STATUS, LifecyclePhase, TenantStatus, transition_allowed
from tenantplane.persistence.db import SessionLocal
from tenantplane.persistence.repos import resources as resources_repo
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.services.audit import record_event


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseTicket:
    # Proof that this caller won the transition into an in-progress phase.
    tenant_id: str
    phase: LifecyclePhase
    attempt: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TenantRegistry:
    """Durable tenant records and their guarded status transitions.

    Every transition is a compare-and-set on (status, lifecycle_attempt) so two
    concurrently delivered copies of the same event cannot both advance a tenant.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def get(self, tenant_id: str) -> Tenant | None:
        async with self._session_factory() as session:
            return await tenants_repo.get_tenant(session, tenant_id)

    async def list(self, *, status: str | None = None) -> list[Tenant]:
        async with self._session_factory() as session:
            return await tenants_repo.list_tenants(session, status=status)

    async def request_provisioning(
        self,
        tenant_id: str,
        *,
        company_name: str,
        admin_email: str,
        tier: str,
    ) -> Tenant:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            if tenant is None:
                try:
                    tenant = await tenants_repo.create_tenant(
                        session,
                        tenant_id=tenant_id,
                        company_name=company_name,
                        admin_email=admin_email,
                        tier=tier,
                        status=TenantStatus.REQUESTED.value,
                    )
                    await self._audit_transition(session, tenant_id, None, TenantStatus.REQUESTED)
                    await session.commit()
                    logger.info("tenant_requested tenant_id=%s tier=%s", tenant_id, tier)
                    return tenant
                except IntegrityError:
                    # A concurrent duplicate created the row first.
                    await session.rollback()
                    tenant = await tenants_repo.get_tenant(session, tenant_id)
                    if tenant is None:
                        raise
            if tenant.status == TenantStatus.REQUESTED.value:
                return tenant
            if (
                tenant.status == TenantStatus.FAILED.value
                and tenant.failed_phase == LifecyclePhase.PROVISIONING.value
            ):
                moved = await tenants_repo.compare_and_set_status(
                    session,
                    tenant_id,
                    expected=[TenantStatus.FAILED.value],
                    expected_attempt=tenant.lifecycle_attempt,
                    target=TenantStatus.REQUESTED.value,
                )
                if moved:
                    await self._audit_transition(
                        session, tenant_id, TenantStatus.FAILED, TenantStatus.REQUESTED
                    )
                    await session.commit()
                    return await tenants_repo.get_tenant(session, tenant_id)  # type: ignore[return-value]
                await session.rollback()
                tenant = await tenants_repo.get_tenant(session, tenant_id)
                if tenant is not None and tenant.status == TenantStatus.REQUESTED.value:
                    return tenant
            raise DuplicateRequestError(
                f"Tenant {tenant_id} already exists with status {tenant.status if tenant else 'unknown'}"
            )

    async def begin_phase(
        self,
        tenant_id: str,
        phase: LifecyclePhase,
        *,
        allow_reentry: bool = False,
    ) -> PhaseTicket | None:
        # Returns None when the tenant is not in an entry state or a concurrent caller won.
        in_progress = IN_PROGRESS_STATUS[phase]
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            if tenant is None:
                raise UnknownTenantError(f"Tenant {tenant_id} not found")
            expected = self._entry_statuses(tenant, phase)
            if allow_reentry:
                expected.add(in_progress.value)
            if tenant.status not in expected:
                return None
            previous = TenantStatus(tenant.status)
            moved = await tenants_repo.compare_and_set_status(
                session,
                tenant_id,
                expected=expected,
                expected_attempt=tenant.lifecycle_attempt,
                target=in_progress.value,
                bump_attempt=True,
            )
            if not moved:
                await session.rollback()
                logger.info("tenant_phase_entry_lost tenant_id=%s phase=%s", tenant_id, phase.value)
                return None
            await self._audit_transition(
                session,
                tenant_id,
                previous,
                in_progress,
                metadata={"attempt": tenant.lifecycle_attempt + 1},
            )
            await session.commit()
            return PhaseTicket(tenant_id=tenant_id, phase=phase, attempt=tenant.lifecycle_attempt + 1)

    async def mark_provisioned(self, tenant_id: str, tenant_config: str | None = None) -> Tenant:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            moved = tenant is not None and await tenants_repo.compare_and_set_status(
                session,
                tenant_id,
                expected=[TenantStatus.REQUESTED.value, TenantStatus.PROVISIONING.value],
                target=TenantStatus.ACTIVE.value,
                tenant_config=tenant_config,
            )
            if not moved:
                await session.rollback()
                raise UnknownTenantError(f"No requested or provisioning tenant {tenant_id}")
            await self._audit_transition(
                session, tenant_id, TenantStatus(tenant.status), TenantStatus.ACTIVE
            )
            await session.commit()
            return await tenants_repo.get_tenant(session, tenant_id)  # type: ignore[return-value]

    async def request_deprovisioning(self, tenant_id: str) -> PhaseTicket:
        tenant = await self.get(tenant_id)
        if tenant is None:
            raise UnknownTenantError(f"Tenant {tenant_id} not found")
        if tenant.status not in self._entry_statuses(tenant, LifecyclePhase.DEPROVISIONING):
            raise InvalidStateError(
                f"Tenant {tenant_id} cannot be deprovisioned from status {tenant.status}"
            )
        ticket = await self.begin_phase(tenant_id, LifecyclePhase.DEPROVISIONING)
        if ticket is None:
            raise DuplicateRequestError(f"Tenant {tenant_id} deprovisioning already started")
        return ticket

    async def mark_deleted(self, tenant_id: str) -> Tenant:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            if tenant is None:
                raise UnknownTenantError(f"Tenant {tenant_id} not found")
            moved = await tenants_repo.compare_and_set_status(
                session,
                tenant_id,
                expected=[TenantStatus.DEPROVISIONING.value],
                target=TenantStatus.DELETED.value,
                deleted_at=_utc_now(),
            )
            if not moved:
                await session.rollback()
                raise InvalidStateError(f"Tenant {tenant_id} is not deprovisioning")
            purged = await resources_repo.purge_tenant_resources(session, tenant_id)
            await self._audit_transition(
                session,
                tenant_id,
                TenantStatus.DEPROVISIONING,
                TenantStatus.DELETED,
                metadata={"resources_purged": purged},
            )
            await session.commit()
            logger.info("tenant_deleted tenant_id=%s resources_purged=%s", tenant_id, purged)
            return await tenants_repo.get_tenant(session, tenant_id)  # type: ignore[return-value]

    async def mark_failed(
        self, tenant_id: str, phase: LifecyclePhase, *, attempt: int | None = None
    ) -> bool:
        in_progress = IN_PROGRESS_STATUS[phase]
        async with self._session_factory() as session:
            moved = await tenants_repo.compare_and_set_status(
                session,
                tenant_id,
                expected=[in_progress.value],
                expected_attempt=attempt,
                target=TenantStatus.FAILED.value,
                failed_phase=phase.value,
            )
            if not moved:
                await session.rollback()
                return False
            await self._audit_transition(
                session, tenant_id, in_progress, TenantStatus.FAILED, metadata={"phase": phase.value}
            )
            await session.commit()
            logger.warning("tenant_failed tenant_id=%s phase=%s", tenant_id, phase.value)
            return True

    @staticmethod
    def _entry_statuses(tenant: Tenant, phase: LifecyclePhase) -> set[str]:
        if phase is LifecyclePhase.PROVISIONING:
            entry = {TenantStatus.REQUESTED.value}
        else:
            entry = {TenantStatus.ACTIVE.value}
        if tenant.status == TenantStatus.FAILED.value and tenant.failed_phase == phase.value:
            entry.add(TenantStatus.FAILED.value)
        return entry

    @staticmethod
    async def _audit_transition(
        session: AsyncSession,
        tenant_id: str,
        previous: TenantStatus | None,
        target: TenantStatus,
        *,
        metadata: dict | None = None,
    ) -> None:
        if previous is not None and not transition_allowed(previous, target):
            # Runs before commit, so an illegal edge rolls the whole transition back.
            raise InvalidStateError(f"Illegal transition {previous.value} -> {target.value} for {tenant_id}")
        await record_event(
            session=session,
            tenant_id=tenant_id,
            event_type="tenant.status.changed",
            outcome="success",
            resource_type="tenant",
            resource_id=tenant_id,
            metadata={
                "from": previous.value if previous else None,
                "to": target.value,
                **(metadata or {}),
            },
        )
