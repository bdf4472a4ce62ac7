from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import Tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    # Always re-read so callers observe transitions committed by other workers.
    result = await session.execute(
        select(Tenant).where(Tenant.tenant_id == tenant_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_tenants(session: AsyncSession, *, status: str | None = None) -> list[Tenant]:
    stmt = select(Tenant)
    if status:
        stmt = stmt.where(Tenant.status == status)
    result = await session.execute(stmt.order_by(Tenant.created_at, Tenant.tenant_id))
    return list(result.scalars().all())


async def create_tenant(
    session: AsyncSession,
    *,
    tenant_id: str,
    company_name: str,
    admin_email: str,
    tier: str,
    status: str,
) -> Tenant:
    # Flush immediately so a concurrent duplicate surfaces as an IntegrityError here.
    tenant = Tenant(
        tenant_id=tenant_id,
        company_name=company_name,
        admin_email=admin_email,
        tier=tier,
        status=status,
        lifecycle_attempt=0,
    )
    session.add(tenant)
    await session.flush()
    return tenant


async def compare_and_set_status(
    session: AsyncSession,
    tenant_id: str,
    *,
    expected: Iterable[str],
    target: str,
    expected_attempt: int | None = None,
    bump_attempt: bool = False,
    failed_phase: str | None = None,
    tenant_config: str | None = None,
    deleted_at: datetime | None = None,
) -> bool:
    # Guarded single-row update; False means another delivery already moved the tenant.
    conditions = [Tenant.tenant_id == tenant_id, Tenant.status.in_(list(expected))]
    if expected_attempt is not None:
        conditions.append(Tenant.lifecycle_attempt == expected_attempt)
    values: dict[str, Any] = {"status": target, "failed_phase": failed_phase}
    if bump_attempt:
        values["lifecycle_attempt"] = Tenant.lifecycle_attempt + 1
    if tenant_config is not None:
        values["tenant_config"] = tenant_config
    if deleted_at is not None:
        values["deleted_at"] = deleted_at
    result = await session.execute(
        update(Tenant)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
