from __future__ import annotations

import logging

from arq import Retry
from arq.connections import RedisSettings

from tenantplane.core.config import get_settings
from tenantplane.core.logging import configure_logging
from tenantplane.domain.events import LifecycleEvent
from tenantplane.services.events.transport import QueueTransport
from tenantplane.services.orchestrator import build_application_plane


logger = logging.getLogger(__name__)

# Seconds between arq redeliveries of an event whose handlers failed.
_RETRY_DEFER_S = 5


async def deliver_lifecycle_event(ctx, payload: dict) -> int:
    # Validate the envelope in the worker so malformed payloads fail loudly.
    event = LifecycleEvent.model_validate(payload)
    settings = get_settings()
    plane = ctx["plane"]
    attempt = ctx.get("job_try", 1)
    result = await plane.router.dispatch(event)
    if result.ok:
        return result.delivered
    failed = ",".join(name for name, _ in result.failures)
    if attempt < settings.lifecycle_max_tries:
        # Handlers are idempotent, so redelivering to all of them is safe.
        logger.warning(
            "event_redelivery_scheduled event_id=%s detail_type=%s attempt=%s handlers=%s",
            event.id,
            event.detail_type,
            attempt,
            failed,
        )
        raise Retry(defer=_RETRY_DEFER_S * attempt)
    logger.error(
        "event_delivery_exhausted event_id=%s detail_type=%s tenant_id=%s handlers=%s",
        event.id,
        event.detail_type,
        event.tenant_id,
        failed,
    )
    return result.delivered


async def _startup(ctx) -> None:
    # Follow-up events go back onto the queue rather than running in-process.
    configure_logging()
    ctx["plane"] = build_application_plane(transport=QueueTransport())


async def _shutdown(ctx) -> None:
    plane = ctx.get("plane")
    if plane is not None:
        await plane.close()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.lifecycle_queue_name
    max_tries = settings.lifecycle_max_tries
    # Long enough for the slowest job plus its own timeout handling.
    job_timeout = settings.job_timeout_s + 60
    functions = [deliver_lifecycle_event]
    on_startup = _startup
    on_shutdown = _shutdown
