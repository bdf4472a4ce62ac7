from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
import logging
from typing import Protocol

from tenantplane.core.errors import EventValidationError, RouterSealedError
from tenantplane.domain.events import LifecycleEvent
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Return values are ignored; job runners return their outcome for direct callers.
EventHandler = Callable[[LifecycleEvent], Awaitable[object]]


class EventTransport(Protocol):
    def attach(self, router: "EventRouter") -> None: ...

    async def send(self, event: LifecycleEvent) -> None: ...

    async def drain(self) -> None: ...

    async def close(self) -> None: ...


@dataclass
class DispatchResult:
    event_id: str
    detail_type: str
    delivered: int = 0
    failures: list[tuple[str, BaseException]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class _Subscription:
    name: str
    handler: EventHandler


class EventRouter:
    """Binds lifecycle detail types to handlers and validates every published event.

    Subscriptions are accepted only until ``seal()``; the bound vocabulary is
    fixed at startup so it can be audited without running the system.
    """

    def __init__(self, *, vocabulary: Iterable[str], transport: EventTransport | None = None) -> None:
        self._vocabulary = frozenset(vocabulary)
        self._subscriptions: dict[str, list[_Subscription]] = {}
        self._sealed = False
        self._transport: EventTransport | None = None
        if transport is not None:
            self.bind_transport(transport)

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def transport(self) -> EventTransport | None:
        return self._transport

    def bind_transport(self, transport: EventTransport) -> None:
        if self._sealed:
            raise RouterSealedError("Cannot change transport after the router is sealed")
        transport.attach(self)
        self._transport = transport

    def subscribe(self, detail_type: str, handler: EventHandler, *, name: str | None = None) -> None:
        if self._sealed:
            raise RouterSealedError(f"Router is sealed; cannot subscribe to {detail_type}")
        if detail_type not in self._vocabulary:
            raise EventValidationError(f"Unknown detail type: {detail_type}")
        label = name or getattr(handler, "__qualname__", repr(handler))
        self._subscriptions.setdefault(detail_type, []).append(_Subscription(label, handler))
        logger.debug("router_subscribed detail_type=%s handler=%s", detail_type, label)

    def seal(self) -> None:
        if self._transport is None:
            raise RouterSealedError("Router needs a transport before it can be sealed")
        self._sealed = True
        logger.info(
            "router_sealed detail_types=%s",
            ",".join(sorted(self._subscriptions)),
        )

    def subscriptions(self) -> dict[str, list[str]]:
        # Expose the static binding table for ops and tests.
        return {key: [sub.name for sub in subs] for key, subs in self._subscriptions.items()}

    def validate(self, event: LifecycleEvent) -> None:
        if event.detail_type not in self._vocabulary:
            raise EventValidationError(f"Unknown detail type: {event.detail_type}")
        missing = event.missing_fields()
        if missing:
            raise EventValidationError(
                f"Event {event.detail_type} for {event.tenant_id} missing fields: {', '.join(missing)}"
            )

    async def publish(self, event: LifecycleEvent) -> str:
        if not self._sealed or self._transport is None:
            raise RouterSealedError("Router must be sealed before publishing")
        self.validate(event)
        if not self._subscriptions.get(event.detail_type):
            logger.warning(
                "event_unrouted detail_type=%s tenant_id=%s", event.detail_type, event.tenant_id
            )
            increment_counter("events_unrouted_total")
            return event.id
        await self._transport.send(event)
        increment_counter(f"events_published_total.{event.detail_type}")
        logger.info(
            "event_published detail_type=%s tenant_id=%s event_id=%s",
            event.detail_type,
            event.tenant_id,
            event.id,
        )
        return event.id

    async def dispatch(self, event: LifecycleEvent) -> DispatchResult:
        # Deliver to every bound handler; one handler's failure never blocks the others.
        result = DispatchResult(event_id=event.id, detail_type=event.detail_type)
        for sub in self._subscriptions.get(event.detail_type, []):
            try:
                await sub.handler(event)
                result.delivered += 1
            except Exception as exc:  # noqa: BLE001 - isolate handler failures per subscription
                result.failures.append((sub.name, exc))
                increment_counter("event_handler_failures_total")
                logger.exception(
                    "event_handler_failed detail_type=%s tenant_id=%s handler=%s",
                    event.detail_type,
                    event.tenant_id,
                    sub.name,
                )
        return result

    async def drain(self) -> None:
        if self._transport is not None:
            await self._transport.drain()

    async def close(self) -> None:
        if self._transport is not None:
            await self._transport.close()
