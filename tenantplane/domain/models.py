from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Integer,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON for the sqlite test database.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"
    __table_args__ = (Index("ix_tenants_status", "status"),)

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    company_name: Mapped[str] = mapped_column(String)
    admin_email: Mapped[str] = mapped_column(String)
    # Plan identifier; mutable only by the provisioning job.
    tier: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    # Phase a Failed tenant failed in; retries re-enter that phase only.
    failed_phase: Mapped[str | None] = mapped_column(String, nullable=True)
    # Bumped on every phase entry; guards compare-and-set transitions.
    lifecycle_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Opaque configuration emitted by the provisioning job.
    tenant_config: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    # Tombstone marker; rows are never hard-deleted.
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TenantResource(Base):
    __tablename__ = "tenant_resources"

    # Pooled table: the tenant id is part of the key and every query filters on it.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    resource_id: Mapped[str] = mapped_column(String, primary_key=True)
    resource_type: Mapped[str] = mapped_column(String)
    data_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class JobExecution(Base):
    __tablename__ = "job_executions"
    __table_args__ = (
        # One execution per (detail type, tenant, attempt) is the delivery dedup key.
        UniqueConstraint("detail_type", "tenant_id", "attempt", name="uq_job_executions_attempt"),
        Index("ix_job_executions_tenant_type", "tenant_id", "detail_type"),
        Index("ix_job_executions_event", "tenant_id", "event_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_name: Mapped[str] = mapped_column(String)
    detail_type: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str] = mapped_column(String)
    attempt: Mapped[int] = mapped_column(Integer)
    event_id: Mapped[str] = mapped_column(String)
    # running | succeeded | failed | timed_out
    status: Mapped[str] = mapped_column(String)
    inputs_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    outputs_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DeployTrigger(Base):
    __tablename__ = "deploy_triggers"
    __table_args__ = (
        # A redelivered provisioning success must not issue a second trigger.
        UniqueConstraint(
            "tenant_id", "service_name", "lifecycle_attempt", name="uq_deploy_triggers_scope"
        ),
        Index("ix_deploy_triggers_tenant", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    service_name: Mapped[str] = mapped_column(String)
    lifecycle_attempt: Mapped[int] = mapped_column(Integer)
    event_id: Mapped[str] = mapped_column(String)
    # triggered | succeeded | failed
    status: Mapped[str] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Unset until the deploy request reached the transport; redelivery re-sends such rows.
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Stable event taxonomy, e.g. tenant.status.changed, job.execution.finished.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
