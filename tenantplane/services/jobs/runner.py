from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import (
    DuplicateRequestError,
    InvalidStateError,
    JobFailedError,
    JobTimeoutError,
    UnknownTenantError,
)
from tenantplane.domain.events import LifecycleEvent, build_event, required_fields
from tenantplane.persistence.db import SessionLocal
from tenantplane.persistence.repos import jobs as jobs_repo
from tenantplane.services.audit import record_event
from tenantplane.services.events.router import EventRouter
from tenantplane.services.jobs.descriptor import JobDescriptor, validate_descriptor
from tenantplane.services.jobs.executors import ClusterCredential, JobContext, JobExecutor
from tenantplane.services.telemetry import record_job


logger = logging.getLogger(__name__)


class Admission(str, Enum):
    PROCEED = "proceed"
    NOOP = "noop"


@dataclass(frozen=True)
class AdmitDecision:
    admission: Admission
    attempt: int = 0
    reason: str | None = None

    @classmethod
    def proceed(cls, attempt: int) -> "AdmitDecision":
        return cls(Admission.PROCEED, attempt=attempt)

    @classmethod
    def noop(cls, reason: str) -> "AdmitDecision":
        return cls(Admission.NOOP, reason=reason)


class JobGuard(Protocol):
    """Registry-facing hooks around one job execution."""

    async def admit(self, event: LifecycleEvent) -> AdmitDecision: ...

    async def on_success(
        self, event: LifecycleEvent, decision: AdmitDecision, outputs: Mapping[str, str]
    ) -> None: ...

    async def on_failure(
        self,
        event: LifecycleEvent,
        decision: AdmitDecision,
        error: Exception,
        *,
        timed_out: bool,
    ) -> None: ...


@dataclass
class JobOutcome:
    job_name: str
    tenant_id: str
    status: str
    attempt: int | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    published_event_id: str | None = None


_REJECTIONS = (DuplicateRequestError, InvalidStateError, UnknownTenantError)


class JobRunner:
    """Turns one incoming lifecycle event into one job execution.

    The runner owns everything around the job body: admission against the
    tenant registry, the execution ledger claim, the hard timeout, output
    extraction and publishing the outgoing event. The body itself is opaque.
    """

    def __init__(
        self,
        descriptor: JobDescriptor,
        executor: JobExecutor,
        *,
        router: EventRouter,
        guard: JobGuard,
        timeout_s: float,
        credential: ClusterCredential,
        image: str,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        # Misconfiguration is fatal at registration, never at dispatch.
        validate_descriptor(descriptor)
        executor.validate(descriptor)
        self.descriptor = descriptor
        self._executor = executor
        self._router = router
        self._guard = guard
        self._timeout_s = timeout_s
        self._credential = credential
        self._image = image
        self._session_factory = session_factory or SessionLocal

    @property
    def name(self) -> str:
        return self.descriptor.name

    def register(self) -> None:
        self._router.subscribe(self.descriptor.incoming, self.handle, name=self.name)

    async def handle(self, event: LifecycleEvent) -> JobOutcome:
        tenant_id = event.tenant_id
        async with self._session_factory() as session:
            prior = await jobs_repo.execution_for_event(session, tenant_id, event.id)
        if prior is not None:
            # Redelivery of an event this runner already started.
            logger.info(
                "job_duplicate_delivery job=%s tenant_id=%s event_id=%s", self.name, tenant_id, event.id
            )
            record_job(job_name=self.name, outcome="noop", duration_ms=0.0)
            return JobOutcome(
                self.name, tenant_id, "noop", attempt=prior.attempt, error="duplicate delivery"
            )
        try:
            decision = await self._guard.admit(event)
        except _REJECTIONS as exc:
            logger.warning(
                "job_rejected job=%s tenant_id=%s reason=%s", self.name, tenant_id, exc
            )
            record_job(job_name=self.name, outcome="rejected", duration_ms=0.0)
            await self._audit(
                tenant_id, "rejected", error_code=type(exc).__name__, metadata={"reason": str(exc)}
            )
            return JobOutcome(self.name, tenant_id, "rejected", error=str(exc))
        if decision.admission is Admission.NOOP:
            logger.info("job_noop job=%s tenant_id=%s reason=%s", self.name, tenant_id, decision.reason)
            record_job(job_name=self.name, outcome="noop", duration_ms=0.0)
            return JobOutcome(self.name, tenant_id, "noop", error=decision.reason)

        inputs = {name: event.fields[name] for name in self.descriptor.input_fields}
        async with self._session_factory() as session:
            execution = await jobs_repo.claim_execution(
                session,
                job_name=self.name,
                detail_type=event.detail_type,
                tenant_id=tenant_id,
                attempt=decision.attempt,
                event_id=event.id,
                inputs=inputs,
            )
        if execution is None:
            # Another delivery of the same event already owns this attempt.
            logger.info(
                "job_duplicate_delivery job=%s tenant_id=%s attempt=%s",
                self.name,
                tenant_id,
                decision.attempt,
            )
            record_job(job_name=self.name, outcome="noop", duration_ms=0.0)
            return JobOutcome(
                self.name, tenant_id, "noop", attempt=decision.attempt, error="duplicate delivery"
            )

        context = JobContext(
            job_name=self.name,
            tenant_id=tenant_id,
            attempt=decision.attempt,
            variables=inputs,
            output_fields=self.descriptor.output_fields,
            credential=self._credential,
            image=self._image,
        )
        logger.info("job_started job=%s tenant_id=%s attempt=%s", self.name, tenant_id, decision.attempt)
        start = time.monotonic()
        try:
            raw = await asyncio.wait_for(self._executor.execute(context), timeout=self._timeout_s)
            outputs = self._extract_outputs(raw)
            await self._guard.on_success(event, decision, outputs)
        except asyncio.TimeoutError:
            error = JobTimeoutError(f"Job {self.name} exceeded {self._timeout_s}s for {tenant_id}")
            return await self._finish_failed(
                event, decision, execution.id, error, start=start, timed_out=True
            )
        except Exception as exc:  # noqa: BLE001 - every job failure is recorded on the ledger
            return await self._finish_failed(
                event, decision, execution.id, exc, start=start, timed_out=False
            )

        duration_ms = (time.monotonic() - start) * 1000.0
        async with self._session_factory() as session:
            await jobs_repo.finish_execution(session, execution.id, status="succeeded", outputs=outputs)
            await session.commit()
        record_job(job_name=self.name, outcome="succeeded", duration_ms=duration_ms)
        await self._audit(tenant_id, "success", metadata={"attempt": decision.attempt})
        logger.info(
            "job_succeeded job=%s tenant_id=%s attempt=%s duration_ms=%.1f",
            self.name,
            tenant_id,
            decision.attempt,
            duration_ms,
        )

        published_id = None
        if self.descriptor.outgoing is not None:
            # Published only after the job returned and the registry was updated.
            outgoing = build_event(self.descriptor.outgoing, tenant_id, **outputs)
            published_id = await self._router.publish(outgoing)
        return JobOutcome(
            self.name,
            tenant_id,
            "succeeded",
            attempt=decision.attempt,
            outputs=outputs,
            published_event_id=published_id,
        )

    def _extract_outputs(self, raw: Mapping[str, Any] | None) -> dict[str, str]:
        raw = raw or {}
        outputs: dict[str, str] = {}
        for name in self.descriptor.output_fields:
            value = raw.get(name)
            if value is None:
                raise JobFailedError(f"Job {self.name} did not produce output {name}")
            outputs[name] = str(value)
        if self.descriptor.outgoing is not None:
            empty = [
                name
                for name in required_fields(self.descriptor.outgoing)
                if name in outputs and not outputs[name]
            ]
            if empty:
                raise JobFailedError(f"Job {self.name} produced empty outputs: {', '.join(empty)}")
        return outputs

    async def _finish_failed(
        self,
        event: LifecycleEvent,
        decision: AdmitDecision,
        execution_id: str,
        error: Exception,
        *,
        start: float,
        timed_out: bool,
    ) -> JobOutcome:
        status = "timed_out" if timed_out else "failed"
        duration_ms = (time.monotonic() - start) * 1000.0
        async with self._session_factory() as session:
            await jobs_repo.finish_execution(session, execution_id, status=status, error=str(error))
            await session.commit()
        await self._guard.on_failure(event, decision, error, timed_out=timed_out)
        record_job(job_name=self.name, outcome=status, duration_ms=duration_ms)
        await self._audit(
            event.tenant_id,
            "failure",
            error_code=type(error).__name__,
            metadata={"attempt": decision.attempt, "status": status},
        )
        log = logger.warning if timed_out else logger.error
        log(
            "job_%s job=%s tenant_id=%s attempt=%s error=%s",
            status,
            self.name,
            event.tenant_id,
            decision.attempt,
            error,
        )
        return JobOutcome(
            self.name, event.tenant_id, status, attempt=decision.attempt, error=str(error)
        )

    async def _audit(
        self,
        tenant_id: str,
        outcome: str,
        *,
        error_code: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await record_event(
            tenant_id=tenant_id,
            event_type="job.execution.finished",
            outcome=outcome,
            resource_type="job",
            resource_id=self.name,
            metadata=metadata,
            error_code=error_code,
        )
