from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import AuditEvent
from tenantplane.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Job inputs and cluster settings can carry credentials; never persist them.
_REDACTED_KEYS = ("token", "secret", "password", "credential", "kubeconfig")
_REDACTED = "[REDACTED]"


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): _REDACTED if any(part in str(key).lower() for part in _REDACTED_KEYS) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


async def record_event(
    *,
    tenant_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    session: AsyncSession | None = None,
) -> None:
    """Write one audit row for a lifecycle action.

    With ``session`` the row joins the caller's transaction, so a status change
    and its audit entry commit together. Without one the row is written on its
    own and a failed write is logged, never raised.
    """
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type="system",
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata_json=redact(metadata or {}),
        error_code=error_code,
    )
    if session is not None:
        session.add(event)
        return
    async with SessionLocal() as own_session:
        own_session.add(event)
        try:
            await own_session.commit()
        except SQLAlchemyError:
            await own_session.rollback()
            logger.warning(
                "audit_write_failed event_type=%s tenant_id=%s", event_type, tenant_id, exc_info=True
            )
