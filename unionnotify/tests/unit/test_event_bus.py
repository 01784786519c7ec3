from __future__ import annotations

import asyncio

import pytest

from unionnotify.services.events import (
    DELIVERY_CYCLE_COMPLETED,
    DELIVERY_SENT,
    EventBus,
)


@pytest.mark.asyncio
async def test_immediate_event_reaches_subscriber_before_publish_returns() -> None:
    bus = EventBus(debounce_ms=50)
    received = []
    bus.subscribe(DELIVERY_SENT, received.append)

    await bus.publish(DELIVERY_SENT, {"id": "p-1"})

    assert [event.payload for event in received] == [{"id": "p-1"}]
    assert received[0].coalesced == 1


@pytest.mark.asyncio
async def test_debounced_burst_is_delivered_once_with_latest_payload() -> None:
    bus = EventBus(debounce_ms=20)
    received = []
    bus.subscribe(DELIVERY_CYCLE_COMPLETED, received.append)

    for processed in (1, 2, 3):
        await bus.publish(DELIVERY_CYCLE_COMPLETED, {"processed": processed})
    assert received == []

    await asyncio.sleep(0.1)

    assert len(received) == 1
    assert received[0].payload == {"processed": 3}
    assert received[0].coalesced == 3


@pytest.mark.asyncio
async def test_flush_delivers_held_events() -> None:
    bus = EventBus(debounce_ms=10_000)
    received = []
    bus.subscribe(DELIVERY_CYCLE_COMPLETED, received.append)
    await bus.publish(DELIVERY_CYCLE_COMPLETED, {"processed": 1})

    await bus.flush()

    assert len(received) == 1


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others() -> None:
    bus = EventBus()
    received = []

    def broken(_event) -> None:
        raise RuntimeError("subscriber bug")

    async def working(event) -> None:
        received.append(event.type)

    bus.subscribe(DELIVERY_SENT, broken)
    bus.subscribe(DELIVERY_SENT, working)

    await bus.publish(DELIVERY_SENT, {})

    assert received == [DELIVERY_SENT]


@pytest.mark.asyncio
async def test_policy_override_and_unsubscribe() -> None:
    bus = EventBus(policies={DELIVERY_SENT: "debounced"}, debounce_ms=10_000)
    received = []
    unsubscribe = bus.subscribe("custom.event", received.append)

    await bus.publish("custom.event", {})
    unsubscribe()
    await bus.publish("custom.event", {})

    assert len(received) == 1
    assert bus.policy_for(DELIVERY_SENT) == "debounced"
    with pytest.raises(ValueError):
        bus.set_policy(DELIVERY_SENT, "batched")
