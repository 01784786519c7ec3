from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from unionnotify.core.config import get_settings
from unionnotify.domain.models import NotificationAnalytics, PushDelivery, SmsDelivery, UserPreference
from unionnotify.persistence.db import SessionLocal
from unionnotify.providers.push.base import PushMessage, PushResult
from unionnotify.providers.push.fake import FakePushProvider
from unionnotify.providers.sms.fake import FakeSmsProvider
from unionnotify.providers.sms.twilio import TwilioSmsProvider
from unionnotify.services import resilience
from unionnotify.services.budget import get_budget_snapshot
from unionnotify.services.delivery import worker
from unionnotify.services.delivery.store import enqueue_push, enqueue_sms
from unionnotify.services.events import DELIVERY_FAILED, DELIVERY_SENT, EventBus


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock(monkeypatch) -> _Clock:
    current = _Clock(datetime.now(timezone.utc) + timedelta(seconds=1))
    monkeypatch.setattr(worker, "_utc_now", current)
    return current


async def _reload(model, record_id: str):
    async with SessionLocal() as db:
        return await db.get(model, record_id)


@pytest.mark.asyncio
async def test_successful_push_is_marked_sent(session, clock) -> None:
    row, _ = await enqueue_push(session=session, user_id="u-1", push_token="ExponentPushToken[ok]", title="t", body="b")
    provider = FakePushProvider()

    summary = await worker.run_delivery_cycle(push_provider=provider, sms_provider=FakeSmsProvider())

    assert summary["status"] == "completed"
    assert summary["processed"] == 1
    assert summary["failures"] == 0
    stored = await _reload(PushDelivery, row.id)
    assert stored.status == "sent"
    assert stored.retry_count == 1
    assert stored.sent_at == clock.now
    assert provider.sent[0].token == "ExponentPushToken[ok]"


@pytest.mark.asyncio
async def test_push_failures_follow_retry_tiers(session, clock) -> None:
    row, _ = await enqueue_push(session=session, user_id="u-1", push_token="ExponentPushToken[x]", title="t", body="b")
    provider = FakePushProvider(fail_with="DeviceNotRegistered")

    for _ in range(3):
        summary = await worker.run_delivery_cycle(push_provider=provider, sms_provider=FakeSmsProvider())
        assert summary["failures"] == 1
        stored = await _reload(PushDelivery, row.id)
        clock.now = stored.next_attempt_at

    stored = await _reload(PushDelivery, row.id)
    assert stored.retry_count == 3
    assert stored.status == "failed"
    assert stored.error_message == "DeviceNotRegistered"
    assert stored.next_attempt_at == stored.last_attempted_at + timedelta(seconds=20)

    # The fourth failure moves into the three minute tier.
    await worker.run_delivery_cycle(push_provider=provider, sms_provider=FakeSmsProvider())
    stored = await _reload(PushDelivery, row.id)
    assert stored.retry_count == 4
    assert stored.next_attempt_at == stored.last_attempted_at + timedelta(minutes=3)


@pytest.mark.asyncio
async def test_push_not_due_is_left_alone(session, clock) -> None:
    row, _ = await enqueue_push(session=session, user_id="u-1", push_token="ExponentPushToken[x]", title="t", body="b")
    provider = FakePushProvider(fail_with="timeout")
    await worker.run_delivery_cycle(push_provider=provider, sms_provider=FakeSmsProvider())

    clock.now = clock.now + timedelta(seconds=5)
    summary = await worker.run_delivery_cycle(push_provider=provider, sms_provider=FakeSmsProvider())

    assert summary["processed"] == 0
    assert summary["failures"] == 0
    assert len(provider.sent) == 1
    assert (await _reload(PushDelivery, row.id)).retry_count == 1


@pytest.mark.asyncio
async def test_provider_exception_counts_as_failed_attempt(session, clock) -> None:
    class ExplodingPush:
        async def send(self, message: PushMessage) -> PushResult:
            raise ConnectionError("connection reset")

    row, _ = await enqueue_push(session=session, user_id="u-1", push_token="ExponentPushToken[x]", title="t", body="b")

    summary = await worker.run_delivery_cycle(push_provider=ExplodingPush(), sms_provider=FakeSmsProvider())

    assert summary["failures"] == 1
    stored = await _reload(PushDelivery, row.id)
    assert stored.status == "failed"
    assert stored.error_message == "connection reset"
    assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_sms_success_charges_budget(session, clock) -> None:
    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="hello")
    provider = FakeSmsProvider(cost=Decimal("0.0079"))

    summary = await worker.run_delivery_cycle(push_provider=FakePushProvider(), sms_provider=provider)

    assert summary["processed"] == 1
    stored = await _reload(SmsDelivery, row.id)
    assert stored.status == "sent"
    assert stored.transport_id == "SMfake000001"
    assert Decimal(str(stored.cost_amount)).quantize(Decimal("0.0001")) == Decimal("0.0079")
    snapshot = await get_budget_snapshot(session=session, now=clock.now)
    assert snapshot.daily_spend == Decimal("0.0079")
    analytics = (await session.execute(select(NotificationAnalytics))).scalars().all()
    assert [(item.channel, item.success) for item in analytics] == [("sms", True)]


@pytest.mark.asyncio
async def test_sms_failure_is_not_retried(session, clock) -> None:
    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="hello")
    provider = FakeSmsProvider(fail_with="Twilio 30003")

    await worker.run_delivery_cycle(push_provider=FakePushProvider(), sms_provider=provider)
    clock.now = clock.now + timedelta(hours=3)
    await worker.run_delivery_cycle(push_provider=FakePushProvider(), sms_provider=provider)

    stored = await _reload(SmsDelivery, row.id)
    assert stored.status == "failed"
    assert stored.next_attempt_at is None
    assert stored.retry_count == 1
    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_opt_out_after_enqueue_blocks_drain(session, clock) -> None:
    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="hello")
    session.add(UserPreference(user_id="u-1", sms_opt_out=True, phone_verified=True))
    await session.commit()
    provider = FakeSmsProvider()

    await worker.run_delivery_cycle(push_provider=FakePushProvider(), sms_provider=provider)

    stored = await _reload(SmsDelivery, row.id)
    assert provider.sent == []
    assert stored.status == "failed"
    assert stored.error_message == "Recipient ineligible: Recipient opted out of SMS"
    assert stored.retry_count == 0


@pytest.mark.asyncio
async def test_emergency_sms_ignores_opt_out_at_drain(session, clock) -> None:
    row, _ = await enqueue_sms(
        session=session, recipient_id="u-1", phone_number="+15555550123", content="Evacuate", priority="emergency"
    )
    session.add(UserPreference(user_id="u-1", sms_opt_out=True, phone_verified=True))
    await session.commit()
    provider = FakeSmsProvider()

    await worker.run_delivery_cycle(push_provider=FakePushProvider(), sms_provider=provider)

    assert (await _reload(SmsDelivery, row.id)).status == "sent"
    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_lockout_blocks_even_emergency_at_drain(session, clock) -> None:
    row, _ = await enqueue_sms(
        session=session, recipient_id="u-1", phone_number="+15555550123", content="Evacuate", priority="emergency"
    )
    session.add(UserPreference(user_id="u-1", sms_lockout_until=clock.now + timedelta(hours=1)))
    await session.commit()

    await worker.run_delivery_cycle(push_provider=FakePushProvider(), sms_provider=FakeSmsProvider())

    stored = await _reload(SmsDelivery, row.id)
    assert stored.status == "failed"
    assert stored.error_message == "Recipient ineligible: SMS lockout active"


@pytest.mark.asyncio
async def test_lane_error_does_not_stop_other_lane(session, clock, monkeypatch) -> None:
    row, _ = await enqueue_push(session=session, user_id="u-1", push_token="ExponentPushToken[ok]", title="t", body="b")

    async def broken_sms_lane(**_kwargs):
        raise RuntimeError("sms query failed")

    monkeypatch.setattr(worker, "run_sms_lane", broken_sms_lane)

    summary = await worker.run_delivery_cycle(push_provider=FakePushProvider(), sms_provider=FakeSmsProvider())

    assert summary["processed"] == 1
    assert summary["failures"] == 1
    assert summary["sms"] == {"error": "sms query failed"}
    assert (await _reload(PushDelivery, row.id)).status == "sent"


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(clock) -> None:
    lock = await worker.acquire_drain_lock()
    try:
        summary = await worker.run_delivery_cycle(push_provider=FakePushProvider(), sms_provider=FakeSmsProvider())
    finally:
        await worker.release_drain_lock(lock)

    assert summary == {"status": "skipped_lock", "processed": 0, "failures": 0}
    again = await worker.acquire_drain_lock()
    assert again is not None
    await worker.release_drain_lock(again)


@pytest.mark.asyncio
async def test_outcome_events_are_published(session, clock) -> None:
    await enqueue_push(session=session, user_id="u-ok", push_token="ExponentPushToken[ok]", title="t", body="b")
    await enqueue_push(session=session, user_id="u-bad", push_token="ExponentPushToken[invalid-1]", title="t", body="b")
    bus = EventBus(debounce_ms=0)
    seen: list[tuple[str, str]] = []
    bus.subscribe(DELIVERY_SENT, lambda event: seen.append((event.type, event.payload["user_id"])))
    bus.subscribe(DELIVERY_FAILED, lambda event: seen.append((event.type, event.payload["user_id"])))

    await worker.run_delivery_cycle(push_provider=FakePushProvider(), sms_provider=FakeSmsProvider(), bus=bus)

    assert sorted(seen) == [(DELIVERY_FAILED, "u-bad"), (DELIVERY_SENT, "u-ok")]


@pytest.mark.asyncio
async def test_dispatch_sms_now_sends_single_record(session, clock) -> None:
    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="code", priority="otp")
    provider = FakeSmsProvider()

    sent = await worker.dispatch_sms_now(record_id=row.id, provider=provider)

    assert sent is not None
    assert sent.status == "sent"
    assert await worker.dispatch_sms_now(record_id=row.id, provider=provider) is None
    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_unreachable_redis_does_not_fail_sms(session, clock, monkeypatch) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "secret-token")
    monkeypatch.setenv("TWILIO_MESSAGING_SERVICE_SID", "MG456")
    get_settings.cache_clear()
    monkeypatch.setattr(resilience, "_redis_pool", None)
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(201, json={"sid": "SM777", "price": "-0.0079"})

    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="hello")
    provider = TwilioSmsProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    lane = await worker.run_sms_lane(provider=provider)

    assert (lane.processed, lane.failures) == (1, 0)
    assert calls["count"] == 1
    stored = await _reload(SmsDelivery, row.id)
    assert stored.status == "sent"
    assert stored.transport_id == "SM777"


@pytest.mark.asyncio
async def test_lanes_close_providers_they_create(clock, monkeypatch) -> None:
    push_provider = FakePushProvider()
    sms_provider = FakeSmsProvider()
    monkeypatch.setattr(worker, "get_push_provider", lambda: push_provider)
    monkeypatch.setattr(worker, "get_sms_provider", lambda: sms_provider)

    await worker.run_delivery_cycle()

    assert push_provider.closed is True
    assert sms_provider.closed is True


@pytest.mark.asyncio
async def test_injected_provider_is_left_open(session, clock) -> None:
    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="code", priority="otp")
    provider = FakeSmsProvider()

    await worker.run_sms_lane(provider=provider)
    await worker.dispatch_sms_now(record_id=row.id, provider=provider)

    assert provider.closed is False


@pytest.mark.asyncio
async def test_dispatch_sms_now_closes_its_own_provider(session, clock, monkeypatch) -> None:
    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="code", priority="otp")
    provider = FakeSmsProvider()
    monkeypatch.setattr(worker, "get_sms_provider", lambda: provider)

    sent = await worker.dispatch_sms_now(record_id=row.id)

    assert sent.status == "sent"
    assert provider.closed is True
