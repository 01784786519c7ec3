from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
import logging
from typing import Any, Literal
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.core.errors import InvalidReceiptError
from unionnotify.domain.models import PushDeliveryReceipt
from unionnotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ReceiptStatus = Literal["delivered", "opened", "failed"]

RECEIPT_DELIVERED = "delivered"
RECEIPT_OPENED = "opened"
RECEIPT_FAILED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeviceInfo:
    platform: str | None = None
    device_id: str | None = None
    app_version: str | None = None


@dataclass(frozen=True)
class ReceiptOutcome:
    action: Literal["created", "updated"]
    count: int


def _apply_device(row: PushDeliveryReceipt, device: DeviceInfo) -> None:
    if device.platform:
        row.device_platform = device.platform
    if device.device_id:
        row.device_id = device.device_id
    if device.app_version:
        row.app_version = device.app_version


def _apply_status(
    row: PushDeliveryReceipt,
    status: ReceiptStatus,
    error_message: str | None,
    now: datetime,
) -> None:
    # An opened receipt is never downgraded by a late delivered one.
    if status == RECEIPT_DELIVERED:
        if row.delivered_at is None:
            row.delivered_at = now
        if row.status != RECEIPT_OPENED:
            row.status = RECEIPT_DELIVERED
    elif status == RECEIPT_OPENED:
        if row.opened_at is None:
            row.opened_at = now
        row.status = RECEIPT_OPENED
    else:
        row.status = RECEIPT_FAILED
        row.error_message = error_message
    row.updated_at = now


async def record_push_receipt(
    *,
    session: AsyncSession,
    message_id: str,
    status: ReceiptStatus,
    user_id: str | None = None,
    push_token: str | None = None,
    error_message: str | None = None,
    device: DeviceInfo | None = None,
) -> ReceiptOutcome:
    """Record a device-reported push outcome.

    Receipts are matched on the message id plus the user id, or the push
    token when no user id is given. Every matching row is updated; when none
    match, a new row is created.
    """
    if not message_id:
        raise InvalidReceiptError("Missing required field: messageId")
    if not user_id and not push_token:
        raise InvalidReceiptError("Either userId or pushToken must be provided")
    device = device or DeviceInfo()
    now = _utc_now()

    query = select(PushDeliveryReceipt).where(PushDeliveryReceipt.message_id == message_id)
    if user_id:
        query = query.where(PushDeliveryReceipt.recipient_id == user_id)
    else:
        query = query.where(PushDeliveryReceipt.push_token == push_token)
    rows = list((await session.execute(query)).scalars().all())

    if not rows:
        row = PushDeliveryReceipt(
            id=uuid4().hex,
            message_id=message_id,
            recipient_id=user_id,
            push_token=push_token,
            status=status,
            error_message=error_message if status == RECEIPT_FAILED else None,
            delivered_at=now if status == RECEIPT_DELIVERED else None,
            opened_at=now if status == RECEIPT_OPENED else None,
            created_at=now,
            updated_at=now,
        )
        _apply_device(row, device)
        session.add(row)
        outcome = ReceiptOutcome(action="created", count=1)
    else:
        for row in rows:
            _apply_status(row, status, error_message, now)
            _apply_device(row, device)
        outcome = ReceiptOutcome(action="updated", count=len(rows))
    await session.commit()

    increment_counter(f"push_receipts_{status}_total")
    logger.info(
        "push_receipt_recorded message_id=%s status=%s action=%s count=%s",
        message_id,
        status,
        outcome.action,
        outcome.count,
    )
    return outcome


async def receipt_stats(*, session: AsyncSession, day: date | None = None) -> dict[str, Any]:
    # Daily roll-up: receipts first delivered, first opened, and failed on the given UTC day.
    day = day or _utc_now().date()
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1)

    async def _count(*conditions) -> int:
        result = await session.execute(select(func.count(PushDeliveryReceipt.id)).where(*conditions))
        return int(result.scalar_one() or 0)

    delivered = await _count(PushDeliveryReceipt.delivered_at >= start, PushDeliveryReceipt.delivered_at < end)
    opened = await _count(PushDeliveryReceipt.opened_at >= start, PushDeliveryReceipt.opened_at < end)
    failed = await _count(
        PushDeliveryReceipt.status == RECEIPT_FAILED,
        PushDeliveryReceipt.updated_at >= start,
        PushDeliveryReceipt.updated_at < end,
    )
    return {"date": day.isoformat(), "delivered_count": delivered, "opened_count": opened, "failed_count": failed}
