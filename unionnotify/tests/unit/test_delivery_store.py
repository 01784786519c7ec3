from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from unionnotify.core.config import get_settings
from unionnotify.core.errors import DeliveryConflictError, NotFoundError
from unionnotify.domain.models import PushDelivery
from unionnotify.services.delivery import store
from unionnotify.services.delivery.store import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    claim_due,
    claim_record,
    enqueue_push,
    enqueue_sms,
    get_delivery,
    list_stuck_pushes,
    mark_failed,
    mark_sent,
    retry_failed_push,
    select_due,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _push(session, **overrides) -> PushDelivery:
    fields = {
        "user_id": "u-1",
        "push_token": "ExponentPushToken[abc]",
        "title": "Hello",
        "body": "World",
    }
    fields.update(overrides)
    row, _created = await enqueue_push(session=session, **fields)
    return row


@pytest.mark.asyncio
async def test_enqueue_push_defaults(session) -> None:
    row = await _push(session)
    assert row.status == STATUS_PENDING
    assert row.retry_count == 0
    assert row.max_attempts == get_settings().push_max_attempts
    assert row.next_attempt_at is not None


@pytest.mark.asyncio
async def test_dedupe_key_returns_existing_row(session) -> None:
    first, created_first = await enqueue_push(
        session=session, user_id="u-1", push_token="t", title="a", body="b", dedupe_key="meeting:o1:day:u-1"
    )
    second, created_second = await enqueue_push(
        session=session, user_id="u-1", push_token="t", title="a", body="b", dedupe_key="meeting:o1:day:u-1"
    )
    assert created_first is True
    assert created_second is False
    assert second.id == first.id


@pytest.mark.asyncio
async def test_enqueue_sms_shapes_and_normalizes(session) -> None:
    row, created = await enqueue_sms(
        session=session, recipient_id="u-1", phone_number="(555) 555-0123", content="z" * 170
    )
    assert created is True
    assert row.phone_number == "+15555550123"
    assert row.was_truncated is True
    assert row.full_content == "z" * 170
    assert row.max_attempts == 1


@pytest.mark.asyncio
async def test_overlapping_claims_never_share_a_row(session) -> None:
    for index in range(3):
        await _push(session, user_id=f"u-{index}")
    now = _now() + timedelta(seconds=1)

    first = await claim_due(session=session, channel="push", token="tok-a", now=now)
    second = await claim_due(session=session, channel="push", token="tok-b", now=now)

    assert len(first) == 3
    assert second == []
    assert {row.claim_token for row in first} == {"tok-a"}
    assert all(row.status == STATUS_PROCESSING for row in first)


@pytest.mark.asyncio
async def test_stale_claim_is_reclaimed_after_lease(session) -> None:
    # A worker that dies mid-dispatch leaves the row in processing; it must be picked up again.
    row = await _push(session)
    now = _now() + timedelta(seconds=1)
    await claim_due(session=session, channel="push", token="crashed", now=now)

    lease = timedelta(seconds=get_settings().delivery_claim_lease_seconds)
    assert await claim_due(session=session, channel="push", token="early", now=now + lease / 2) == []
    reclaimed = await claim_due(session=session, channel="push", token="rescuer", now=now + lease + timedelta(seconds=1))

    assert [item.id for item in reclaimed] == [row.id]
    assert reclaimed[0].claim_token == "rescuer"


@pytest.mark.asyncio
async def test_failed_push_waits_for_backoff(session) -> None:
    row = await _push(session)
    now = _now() + timedelta(seconds=1)
    [claimed] = await claim_due(session=session, channel="push", token="t1", now=now)
    await mark_failed(session=session, row=claimed, error="DeviceNotRegistered", now=now)

    assert claimed.status == STATUS_FAILED
    assert claimed.retry_count == 1
    assert claimed.next_attempt_at == now + timedelta(seconds=20)
    assert await select_due(session=session, channel="push", now=now + timedelta(seconds=19)) == []
    due = await select_due(session=session, channel="push", now=now + timedelta(seconds=20))
    assert [item.id for item in due] == [row.id]


@pytest.mark.asyncio
async def test_exhausted_push_is_never_selected(session) -> None:
    row = await _push(session, max_attempts=1)
    now = _now() + timedelta(seconds=1)
    [claimed] = await claim_due(session=session, channel="push", token="t1", now=now)
    await mark_failed(session=session, row=claimed, error="boom", now=now)

    assert row.retry_count == 1
    assert await select_due(session=session, channel="push", now=now + timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_sms_failure_is_terminal(session) -> None:
    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="hi")
    now = _now() + timedelta(seconds=1)
    claimed = await claim_record(session=session, channel="sms", record_id=row.id, token="t1", now=now)
    await mark_failed(session=session, row=claimed, error="Twilio 21610", now=now)

    assert claimed.status == STATUS_FAILED
    assert claimed.next_attempt_at is None
    assert await select_due(session=session, channel="sms", now=now + timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_rejection_before_dispatch_does_not_count_an_attempt(session) -> None:
    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="hi")
    claimed = await claim_record(session=session, channel="sms", record_id=row.id, token="t1", now=_now())
    await mark_failed(session=session, row=claimed, error="Recipient ineligible", attempted=False)

    assert claimed.retry_count == 0
    assert claimed.first_attempted_at is None
    assert claimed.claim_token is None


@pytest.mark.asyncio
async def test_mark_sent_records_attempt_and_cost(session) -> None:
    row, _ = await enqueue_sms(session=session, recipient_id="u-1", phone_number="+15555550123", content="hi")
    now = _now() + timedelta(seconds=1)
    claimed = await claim_record(session=session, channel="sms", record_id=row.id, token="t1", now=now)
    await mark_sent(session=session, row=claimed, transport_id="SM123", now=now)

    assert claimed.status == "sent"
    assert claimed.retry_count == 1
    assert claimed.sent_at == now
    assert claimed.transport_id == "SM123"
    assert claimed.claim_token is None


@pytest.mark.asyncio
async def test_manual_retry_reopens_exhausted_push(session) -> None:
    row = await _push(session, max_attempts=2)
    row.retry_count = 2
    row.status = STATUS_FAILED
    row.error_message = "DeviceNotRegistered"
    await session.commit()

    retried = await retry_failed_push(session=session, record_id=row.id)

    assert retried.status == STATUS_PENDING
    assert retried.error_message is None
    assert retried.max_attempts == 3
    due = await select_due(session=session, channel="push", now=_now() + timedelta(seconds=1))
    assert [item.id for item in due] == [row.id]


@pytest.mark.asyncio
async def test_manual_retry_rejects_delivered_push(session) -> None:
    row = await _push(session)
    now = _now() + timedelta(seconds=1)
    claimed = await claim_record(session=session, channel="push", record_id=row.id, token="tok", now=now)
    await mark_sent(session=session, row=claimed, now=now)

    with pytest.raises(DeliveryConflictError, match="is sent"):
        await retry_failed_push(session=session, record_id=row.id)

    stored = await get_delivery(session=session, channel="push", record_id=row.id)
    assert stored.status == "sent"
    assert await select_due(session=session, channel="push", now=_now() + timedelta(seconds=1)) == []


@pytest.mark.asyncio
async def test_manual_retry_rejects_push_in_flight(session) -> None:
    row = await _push(session)
    await claim_record(session=session, channel="push", record_id=row.id, token="tok", now=_now() + timedelta(seconds=1))

    with pytest.raises(DeliveryConflictError, match="is processing"):
        await retry_failed_push(session=session, record_id=row.id)


@pytest.mark.asyncio
async def test_manual_retry_rejects_pending_push_with_attempts_left(session) -> None:
    row = await _push(session)

    with pytest.raises(DeliveryConflictError, match="is pending"):
        await retry_failed_push(session=session, record_id=row.id)


@pytest.mark.asyncio
async def test_manual_retry_unknown_id(session) -> None:
    with pytest.raises(NotFoundError):
        await retry_failed_push(session=session, record_id="missing")


@pytest.mark.asyncio
async def test_stuck_pushes_filters_on_age_and_state(session, monkeypatch) -> None:
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(store, "_utc_now", lambda: now)
    old_failed = await _push(session, user_id="old-failed")
    old_pending = await _push(session, user_id="old-pending")
    fresh_failed = await _push(session, user_id="fresh-failed")
    old_failed.status = STATUS_FAILED
    old_failed.updated_at = now - timedelta(hours=30)
    old_pending.updated_at = now - timedelta(hours=30)
    fresh_failed.status = STATUS_FAILED
    fresh_failed.updated_at = now - timedelta(hours=1)
    await session.commit()

    stuck = await list_stuck_pushes(session=session, older_than_hours=24)

    assert [row.id for row in stuck] == [old_failed.id]


@pytest.mark.asyncio
async def test_get_delivery_raises_for_unknown_id(session) -> None:
    with pytest.raises(NotFoundError):
        await get_delivery(session=session, channel="sms", record_id="nope")
