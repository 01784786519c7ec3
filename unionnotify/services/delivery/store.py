from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Any, Literal, Union
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.core.config import get_settings
from unionnotify.core.errors import DeliveryConflictError, NotFoundError
from unionnotify.domain.models import PushDelivery, SmsDelivery
from unionnotify.services.delivery.backoff import next_attempt_at
from unionnotify.services.phone import normalize_phone, shape_sms_content


logger = logging.getLogger(__name__)

Channel = Literal["push", "sms"]
DeliveryRecord = Union[PushDelivery, SmsDelivery]

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

# Push failures stay selectable until attempts run out; SMS failures are terminal.
_READY_STATUSES: dict[str, tuple[str, ...]] = {
    "push": (STATUS_PENDING, STATUS_FAILED),
    "sms": (STATUS_PENDING,),
}
_MODELS: dict[str, type[DeliveryRecord]] = {"push": PushDelivery, "sms": SmsDelivery}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def model_for(channel: str) -> type[DeliveryRecord]:
    try:
        return _MODELS[channel]
    except KeyError as exc:
        raise ValueError(f"Unsupported delivery channel: {channel}") from exc


def _due_clause(model: type[DeliveryRecord], channel: str, now: datetime):
    # Ready rows whose attempt time has come, plus claims whose lease has run out.
    lease = timedelta(seconds=max(1, int(get_settings().delivery_claim_lease_seconds)))
    return and_(
        or_(
            and_(model.status.in_(_READY_STATUSES[channel]), model.next_attempt_at <= now),
            and_(model.status == STATUS_PROCESSING, model.claimed_at <= now - lease),
        ),
        model.retry_count < model.max_attempts,
    )


async def _insert_deduplicated(
    *,
    session: AsyncSession,
    row: DeliveryRecord,
) -> tuple[DeliveryRecord, bool]:
    # Return the existing row for a known dedupe key instead of inserting a duplicate.
    model = type(row)
    if row.dedupe_key:
        existing = (
            await session.execute(select(model).where(model.dedupe_key == row.dedupe_key))
        ).scalar_one_or_none()
        if existing is not None:
            return existing, False
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        if not row.dedupe_key:
            raise
        existing = (
            await session.execute(select(model).where(model.dedupe_key == row.dedupe_key))
        ).scalar_one()
        return existing, False
    await session.refresh(row)
    return row, True


async def enqueue_push(
    *,
    session: AsyncSession,
    user_id: str,
    push_token: str,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    notification_id: str | None = None,
    max_attempts: int | None = None,
    dedupe_key: str | None = None,
) -> tuple[PushDelivery, bool]:
    """Queue one push notification and return ``(row, created)``.

    A ``dedupe_key`` that was already used returns the original row with
    ``created=False``; nothing is inserted.
    """
    now = _utc_now()
    row = PushDelivery(
        id=uuid4().hex,
        notification_id=notification_id,
        user_id=user_id,
        push_token=push_token,
        title=title,
        body=body,
        data_json=dict(data or {}),
        status=STATUS_PENDING,
        retry_count=0,
        max_attempts=max(1, int(max_attempts or get_settings().push_max_attempts)),
        next_attempt_at=now,
        dedupe_key=dedupe_key,
        created_at=now,
        updated_at=now,
    )
    stored, created = await _insert_deduplicated(session=session, row=row)
    if created:
        logger.info("push_enqueued id=%s user_id=%s", stored.id, user_id)
    return stored, created


async def enqueue_sms(
    *,
    session: AsyncSession,
    recipient_id: str,
    phone_number: str,
    content: str,
    priority: str = "normal",
    message_id: str | None = None,
    dedupe_key: str | None = None,
) -> tuple[SmsDelivery, bool]:
    """Queue one SMS without any eligibility checks; see ``services.eligibility``."""
    now = _utc_now()
    shaped = shape_sms_content(content)
    row = SmsDelivery(
        id=uuid4().hex,
        message_id=message_id,
        recipient_id=recipient_id,
        phone_number=normalize_phone(phone_number),
        sms_content=shaped.sms_content,
        full_content=shaped.full_content,
        was_truncated=shaped.was_truncated,
        priority=priority,
        status=STATUS_PENDING,
        retry_count=0,
        max_attempts=1,
        next_attempt_at=now,
        dedupe_key=dedupe_key,
        created_at=now,
        updated_at=now,
    )
    stored, created = await _insert_deduplicated(session=session, row=row)
    if created:
        logger.info("sms_enqueued id=%s recipient_id=%s priority=%s", stored.id, recipient_id, priority)
    return stored, created


async def select_due(
    *,
    session: AsyncSession,
    channel: Channel,
    limit: int = 50,
    now: datetime | None = None,
) -> list[DeliveryRecord]:
    # Oldest due first so rows within one retry tier drain roughly FIFO.
    model = model_for(channel)
    now = now or _utc_now()
    rows = (
        await session.execute(
            select(model)
            .where(_due_clause(model, channel, now))
            .order_by(model.next_attempt_at.asc(), model.created_at.asc())
            .limit(max(1, int(limit)))
        )
    ).scalars().all()
    return list(rows)


async def claim_due(
    *,
    session: AsyncSession,
    channel: Channel,
    token: str,
    limit: int = 50,
    now: datetime | None = None,
) -> list[DeliveryRecord]:
    """Claim up to ``limit`` due rows for the invocation owning ``token``.

    Candidate ids are read with ``FOR UPDATE SKIP LOCKED`` where the backend
    supports it, then moved to ``processing`` with one conditional update that
    repeats the due predicate. Only rows that now carry ``token`` are
    returned, so two overlapping invocations never dispatch the same row.
    """
    model = model_for(channel)
    now = now or _utc_now()
    candidate_ids = (
        await session.execute(
            select(model.id)
            .where(_due_clause(model, channel, now))
            .order_by(model.next_attempt_at.asc(), model.created_at.asc())
            .limit(max(1, int(limit)))
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()
    if not candidate_ids:
        await session.commit()
        return []
    await session.execute(
        update(model)
        .where(model.id.in_(candidate_ids), _due_clause(model, channel, now))
        .values(status=STATUS_PROCESSING, claim_token=token, claimed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    rows = (
        await session.execute(
            select(model)
            .where(model.claim_token == token, model.status == STATUS_PROCESSING)
            .order_by(model.next_attempt_at.asc(), model.created_at.asc())
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(rows)


async def claim_record(
    *,
    session: AsyncSession,
    channel: Channel,
    record_id: str,
    token: str,
    now: datetime | None = None,
) -> DeliveryRecord | None:
    # Single-row variant of claim_due for on-demand dispatch.
    model = model_for(channel)
    now = now or _utc_now()
    result = await session.execute(
        update(model)
        .where(model.id == record_id, _due_clause(model, channel, now))
        .values(status=STATUS_PROCESSING, claim_token=token, claimed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if not result.rowcount:
        return None
    return (
        await session.execute(
            select(model).where(model.id == record_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


def _record_attempt(row: DeliveryRecord, now: datetime) -> None:
    row.retry_count = int(row.retry_count or 0) + 1
    if row.first_attempted_at is None:
        row.first_attempted_at = now
    row.last_attempted_at = now
    row.claim_token = None
    row.claimed_at = None
    row.updated_at = now


async def mark_sent(
    *,
    session: AsyncSession,
    row: DeliveryRecord,
    transport_id: str | None = None,
    cost: Decimal | None = None,
    now: datetime | None = None,
) -> DeliveryRecord:
    now = now or _utc_now()
    _record_attempt(row, now)
    row.status = STATUS_SENT
    row.sent_at = now
    row.error_message = None
    if isinstance(row, SmsDelivery):
        row.transport_id = transport_id
        row.cost_amount = cost
    await session.commit()
    return row


async def mark_failed(
    *,
    session: AsyncSession,
    row: DeliveryRecord,
    error: str,
    attempted: bool = True,
    now: datetime | None = None,
) -> DeliveryRecord:
    """Record a failed attempt.

    Push rows count the attempt and move ``next_attempt_at`` along the backoff
    tiers. SMS rows become terminal with no next attempt. ``attempted=False``
    is for pre-dispatch rejections that never reached a transport.
    """
    now = now or _utc_now()
    if attempted:
        _record_attempt(row, now)
    else:
        row.claim_token = None
        row.claimed_at = None
        row.updated_at = now
    row.status = STATUS_FAILED
    row.error_message = error
    if isinstance(row, PushDelivery) and attempted:
        row.next_attempt_at = next_attempt_at(row.retry_count, failed_at=now)
    elif isinstance(row, SmsDelivery):
        row.next_attempt_at = None
    await session.commit()
    return row


async def get_delivery(*, session: AsyncSession, channel: Channel, record_id: str) -> DeliveryRecord:
    row = await session.get(model_for(channel), record_id)
    if row is None:
        raise NotFoundError(f"{channel} delivery {record_id} not found")
    return row


async def retry_failed_push(*, session: AsyncSession, record_id: str) -> PushDelivery:
    # Manual retry: back to pending now, with one more attempt allowed when exhausted.
    row = await session.get(PushDelivery, record_id)
    if row is None:
        raise NotFoundError(f"push delivery {record_id} not found")
    now = _utc_now()
    lease = timedelta(seconds=max(1, int(get_settings().delivery_claim_lease_seconds)))
    claim_live = (
        row.status == STATUS_PROCESSING and row.claimed_at is not None and row.claimed_at > now - lease
    )
    exhausted = row.retry_count >= row.max_attempts
    if row.status == STATUS_SENT or claim_live or not (row.status == STATUS_FAILED or exhausted):
        raise DeliveryConflictError(f"push delivery {record_id} is {row.status} and cannot be retried")
    row.status = STATUS_PENDING
    row.next_attempt_at = now
    row.error_message = None
    row.claim_token = None
    row.claimed_at = None
    row.updated_at = now
    if exhausted:
        row.max_attempts = row.retry_count + 1
    await session.commit()
    await session.refresh(row)
    logger.info("push_manual_retry id=%s retry_count=%s", row.id, row.retry_count)
    return row


async def list_stuck_pushes(
    *,
    session: AsyncSession,
    older_than_hours: int = 24,
    limit: int = 50,
) -> list[PushDelivery]:
    # Failed, exhausted, or long-claimed rows untouched since the cutoff, newest first.
    cutoff = _utc_now() - timedelta(hours=max(0, int(older_than_hours)))
    rows = (
        await session.execute(
            select(PushDelivery)
            .where(
                or_(
                    PushDelivery.status.in_((STATUS_FAILED, STATUS_PROCESSING)),
                    PushDelivery.retry_count >= PushDelivery.max_attempts,
                ),
                PushDelivery.updated_at < cutoff,
            )
            .order_by(PushDelivery.created_at.desc())
            .limit(max(1, int(limit)))
        )
    ).scalars().all()
    return list(rows)


def delivery_to_dict(row: DeliveryRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": row.id,
        "status": row.status,
        "retry_count": row.retry_count,
        "max_attempts": row.max_attempts,
        "next_attempt_at": row.next_attempt_at.isoformat() if row.next_attempt_at else None,
        "first_attempted_at": row.first_attempted_at.isoformat() if row.first_attempted_at else None,
        "last_attempted_at": row.last_attempted_at.isoformat() if row.last_attempted_at else None,
        "sent_at": row.sent_at.isoformat() if row.sent_at else None,
        "error_message": row.error_message,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
    if isinstance(row, PushDelivery):
        payload.update(
            {
                "channel": "push",
                "recipient_id": row.user_id,
                "notification_id": row.notification_id,
                "title": row.title,
                "body": row.body,
                "data": row.data_json or {},
            }
        )
    else:
        payload.update(
            {
                "channel": "sms",
                "recipient_id": row.recipient_id,
                "message_id": row.message_id,
                "phone_number": row.phone_number,
                "sms_content": row.sms_content,
                "priority": row.priority,
                "was_truncated": row.was_truncated,
                "transport_id": row.transport_id,
                "cost_amount": str(row.cost_amount) if row.cost_amount is not None else None,
            }
        )
    return payload
