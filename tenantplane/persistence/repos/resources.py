from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import TenantResource
from tenantplane.persistence.guards import tenant_predicate


async def put_resource(
    session: AsyncSession,
    tenant_id: str,
    *,
    resource_id: str,
    resource_type: str,
    data_json: dict[str, Any] | None,
) -> TenantResource:
    # Upsert within the tenant partition only.
    result = await session.execute(
        select(TenantResource).where(
            tenant_predicate(TenantResource, tenant_id),
            TenantResource.resource_id == resource_id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = TenantResource(
            tenant_id=tenant_id,
            resource_id=resource_id,
            resource_type=resource_type,
            data_json=data_json,
        )
        session.add(row)
    else:
        row.resource_type = resource_type
        row.data_json = data_json
    await session.flush()
    return row


async def list_resources(
    session: AsyncSession, tenant_id: str, *, resource_type: str | None = None
) -> list[TenantResource]:
    stmt = select(TenantResource).where(tenant_predicate(TenantResource, tenant_id))
    if resource_type:
        stmt = stmt.where(TenantResource.resource_type == resource_type)
    result = await session.execute(stmt.order_by(TenantResource.resource_id))
    return list(result.scalars().all())


async def purge_tenant_resources(session: AsyncSession, tenant_id: str) -> int:
    # Drop the tenant's partition when deprovisioning completes.
    result = await session.execute(
        delete(TenantResource).where(tenant_predicate(TenantResource, tenant_id))
    )
    return int(result.rowcount or 0)
