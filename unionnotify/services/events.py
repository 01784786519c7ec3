from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
import inspect
import logging
from typing import Any, Awaitable, Callable, Literal

from unionnotify.core.config import get_settings


logger = logging.getLogger(__name__)

DeliveryMode = Literal["immediate", "debounced"]
Subscriber = Callable[["Event"], Awaitable[None] | None]

DELIVERY_SENT = "delivery.sent"
DELIVERY_FAILED = "delivery.failed"
DELIVERY_CYCLE_COMPLETED = "delivery.cycle_completed"
REMINDERS_QUEUED = "reminders.queued"
PHONE_LOCKED_OUT = "phone.locked_out"

DEFAULT_POLICIES: dict[str, DeliveryMode] = {
    DELIVERY_SENT: "immediate",
    DELIVERY_FAILED: "immediate",
    PHONE_LOCKED_OUT: "immediate",
    DELIVERY_CYCLE_COMPLETED: "debounced",
    REMINDERS_QUEUED: "debounced",
}


@dataclass(frozen=True)
class Event:
    type: str
    payload: dict[str, Any]
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Number of publishes folded into this delivery; always 1 for immediate events.
    coalesced: int = 1


@dataclass
class _Pending:
    event: Event
    count: int
    handle: asyncio.TimerHandle | None = None


class EventBus:
    """In-process publish/subscribe with a delivery policy per event type.

    Immediate events reach subscribers before ``publish`` returns. Debounced
    events are held until no publish of the same type arrives for the debounce
    window, then delivered once with the latest payload and a ``coalesced``
    count. A failing subscriber is logged and never blocks the others.
    """

    def __init__(
        self,
        *,
        policies: dict[str, DeliveryMode] | None = None,
        debounce_ms: int | None = None,
    ) -> None:
        self._policies: dict[str, DeliveryMode] = dict(DEFAULT_POLICIES)
        self._policies.update(policies or {})
        self._debounce_s = max(0, int(debounce_ms if debounce_ms is not None else get_settings().event_debounce_ms)) / 1000.0
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._pending: dict[str, _Pending] = {}
        self._tasks: set[asyncio.Task] = set()

    def set_policy(self, event_type: str, mode: DeliveryMode) -> None:
        if mode not in ("immediate", "debounced"):
            raise ValueError(f"Unsupported delivery mode: {mode}")
        self._policies[event_type] = mode

    def policy_for(self, event_type: str) -> DeliveryMode:
        return self._policies.get(event_type, "immediate")

    def subscribe(self, event_type: str, callback: Subscriber) -> Callable[[], None]:
        self._subscribers[event_type].append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers.get(event_type, []):
                self._subscribers[event_type].remove(callback)

        return _unsubscribe

    async def publish(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        event = Event(type=event_type, payload=dict(payload or {}))
        if self.policy_for(event_type) == "immediate":
            await self._dispatch(event)
            return
        pending = self._pending.get(event_type)
        count = 1
        if pending is not None:
            count = pending.count + 1
            if pending.handle is not None:
                pending.handle.cancel()
        entry = _Pending(event=event, count=count)
        self._pending[event_type] = entry
        loop = asyncio.get_running_loop()
        entry.handle = loop.call_later(self._debounce_s, self._schedule_flush, event_type)

    def _schedule_flush(self, event_type: str) -> None:
        task = asyncio.ensure_future(self._flush_type(event_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _flush_type(self, event_type: str) -> None:
        pending = self._pending.pop(event_type, None)
        if pending is None:
            return
        if pending.handle is not None:
            pending.handle.cancel()
        event = pending.event
        await self._dispatch(
            Event(type=event.type, payload=event.payload, ts=event.ts, coalesced=pending.count)
        )

    async def flush(self) -> None:
        # Deliver every held debounced event now.
        for event_type in list(self._pending):
            await self._flush_type(event_type)

    async def _dispatch(self, event: Event) -> None:
        for callback in list(self._subscribers.get(event.type, [])):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001 - one subscriber must not break the others.
                logger.exception("event_subscriber_failed type=%s", event.type)


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    global _event_bus
    _event_bus = None
