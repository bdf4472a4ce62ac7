from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import DeployTrigger, JobExecution


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def claim_execution(
    session: AsyncSession,
    *,
    job_name: str,
    detail_type: str,
    tenant_id: str,
    attempt: int,
    event_id: str,
    inputs: dict[str, Any],
) -> JobExecution | None:
    # The unique (detail_type, tenant_id, attempt) key makes the claim atomic across workers.
    execution = JobExecution(
        id=uuid4().hex,
        job_name=job_name,
        detail_type=detail_type,
        tenant_id=tenant_id,
        attempt=attempt,
        event_id=event_id,
        status="running",
        inputs_json=inputs,
        started_at=_utc_now(),
    )
    session.add(execution)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return None
    return execution


async def finish_execution(
    session: AsyncSession,
    execution_id: str,
    *,
    status: str,
    outputs: dict[str, Any] | None = None,
    error: str | None = None,
) -> JobExecution | None:
    execution = await session.get(JobExecution, execution_id)
    if execution is None:
        return None
    execution.status = status
    execution.outputs_json = outputs
    execution.error = error
    execution.finished_at = _utc_now()
    await session.flush()
    return execution


async def latest_execution(
    session: AsyncSession, tenant_id: str, detail_type: str
) -> JobExecution | None:
    result = await session.execute(
        select(JobExecution)
        .where(JobExecution.tenant_id == tenant_id, JobExecution.detail_type == detail_type)
        .order_by(JobExecution.attempt.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_executions(session: AsyncSession, tenant_id: str) -> list[JobExecution]:
    result = await session.execute(
        select(JobExecution)
        .where(JobExecution.tenant_id == tenant_id)
        .order_by(JobExecution.started_at, JobExecution.attempt)
    )
    return list(result.scalars().all())


async def create_trigger(
    session: AsyncSession,
    *,
    tenant_id: str,
    service_name: str,
    lifecycle_attempt: int,
    event_id: str,
) -> DeployTrigger | None:
    # Returns None when the trigger for this tenant/service/attempt already exists.
    trigger = DeployTrigger(
        id=uuid4().hex,
        tenant_id=tenant_id,
        service_name=service_name,
        lifecycle_attempt=lifecycle_attempt,
        event_id=event_id,
        status="triggered",
    )
    session.add(trigger)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return None
    return trigger


async def reclaim_unpublished_trigger(
    session: AsyncSession,
    *,
    tenant_id: str,
    service_name: str,
    lifecycle_attempt: int,
) -> DeployTrigger | None:
    # A row whose publish never succeeded goes back to triggered so the deploy guard admits it.
    result = await session.execute(
        select(DeployTrigger)
        .where(
            DeployTrigger.tenant_id == tenant_id,
            DeployTrigger.service_name == service_name,
            DeployTrigger.lifecycle_attempt == lifecycle_attempt,
            DeployTrigger.published_at.is_(None),
        )
        .execution_options(populate_existing=True)
    )
    trigger = result.scalar_one_or_none()
    if trigger is None:
        return None
    trigger.status = "triggered"
    trigger.error = None
    trigger.updated_at = _utc_now()
    await session.commit()
    return trigger


async def mark_trigger_published(session: AsyncSession, trigger_id: str, *, tenant_id: str) -> None:
    await session.execute(
        update(DeployTrigger)
        .where(DeployTrigger.id == trigger_id, DeployTrigger.tenant_id == tenant_id)
        .values(published_at=_utc_now())
    )
    await session.commit()


async def update_trigger_status(
    session: AsyncSession,
    trigger_id: str,
    *,
    tenant_id: str,
    status: str,
    error: str | None = None,
) -> DeployTrigger | None:
    # Scope by tenant as well so a forged trigger id cannot touch another tenant's row.
    result = await session.execute(
        select(DeployTrigger).where(DeployTrigger.id == trigger_id, DeployTrigger.tenant_id == tenant_id)
    )
    trigger = result.scalar_one_or_none()
    if trigger is None:
        return None
    trigger.status = status
    trigger.error = error
    trigger.updated_at = _utc_now()
    await session.flush()
    return trigger


async def list_triggers(
    session: AsyncSession, tenant_id: str, *, lifecycle_attempt: int | None = None
) -> list[DeployTrigger]:
    stmt = select(DeployTrigger).where(DeployTrigger.tenant_id == tenant_id)
    if lifecycle_attempt is not None:
        stmt = stmt.where(DeployTrigger.lifecycle_attempt == lifecycle_attempt)
    result = await session.execute(
        stmt.order_by(DeployTrigger.created_at, DeployTrigger.service_name).execution_options(
            populate_existing=True
        )
    )
    return list(result.scalars().all())


async def execution_for_event(
    session: AsyncSession, tenant_id: str, event_id: str
) -> JobExecution | None:
    result = await session.execute(
        select(JobExecution)
        .where(JobExecution.tenant_id == tenant_id, JobExecution.event_id == event_id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_trigger(session: AsyncSession, trigger_id: str, *, tenant_id: str) -> DeployTrigger | None:
    result = await session.execute(
        select(DeployTrigger)
        .where(DeployTrigger.id == trigger_id, DeployTrigger.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
