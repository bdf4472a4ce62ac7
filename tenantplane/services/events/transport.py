from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from arq import create_pool
from arq.connections import RedisSettings

from tenantplane.core.config import get_settings
from tenantplane.domain.events import LifecycleEvent

if TYPE_CHECKING:
    from tenantplane.services.events.router import EventRouter


logger = logging.getLogger(__name__)

DELIVER_FUNCTION = "deliver_lifecycle_event"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


async def get_lifecycle_pool():
    # Cache the arq pool per event loop to avoid reconnecting on every publish.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.lifecycle_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


class InlineTransport:
    """Delivers each event as its own asyncio task inside this process."""

    def __init__(self) -> None:
        self._router: EventRouter | None = None
        self._pending: set[asyncio.Task] = set()

    def attach(self, router: "EventRouter") -> None:
        self._router = router

    async def send(self, event: LifecycleEvent) -> None:
        if self._router is None:
            raise RuntimeError("InlineTransport is not attached to a router")
        # Publishers never wait for consumers.
        task = asyncio.create_task(self._router.dispatch(event), name=f"event-{event.id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        # Handlers publish follow-up events, so keep waiting until nothing new was scheduled.
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class QueueTransport:
    """Publishes events onto the arq lifecycle queue; the worker dispatches them."""

    def __init__(self, *, queue_name: str | None = None) -> None:
        self._queue_name = queue_name or get_settings().lifecycle_queue_name

    def attach(self, router: "EventRouter") -> None:
        # Dispatch happens in the worker process, which builds its own router.
        return None

    async def send(self, event: LifecycleEvent) -> None:
        redis = await get_lifecycle_pool()
        job = await redis.enqueue_job(
            DELIVER_FUNCTION,
            event.to_payload(),
            _job_id=event.id,
            _queue_name=self._queue_name,
        )
        if job is None:
            # arq returns None when the job id is already queued; the event is in flight.
            logger.info("event_already_queued event_id=%s", event.id)

    async def drain(self) -> None:
        return None

    async def close(self) -> None:
        return None


def build_transport(mode: str | None = None) -> InlineTransport | QueueTransport:
    resolved = (mode or get_settings().event_transport).lower()
    if resolved == "inline":
        return InlineTransport()
    if resolved == "queue":
        return QueueTransport()
    raise ValueError(f"Unsupported event transport: {resolved}")
