from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any
from uuid import uuid4

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.core.config import get_settings
from unionnotify.domain.models import PushDelivery, SmsDelivery, UserPreference
from unionnotify.persistence.db import SessionLocal
from unionnotify.providers.push.base import PushProvider, PushResult, build_push_message
from unionnotify.providers.push.factory import get_push_provider
from unionnotify.providers.sms.base import SmsMessage, SmsProvider, SmsResult
from unionnotify.providers.sms.factory import get_sms_provider
from unionnotify.services.budget import apply_spend
from unionnotify.services.delivery.metrics import record_delivery_metric
from unionnotify.services.delivery.store import (
    STATUS_PROCESSING,
    claim_due,
    claim_record,
    mark_failed,
    mark_sent,
)
from unionnotify.services.eligibility import evaluate_sms_eligibility
from unionnotify.services.events import (
    DELIVERY_CYCLE_COMPLETED,
    DELIVERY_FAILED,
    DELIVERY_SENT,
    EventBus,
    get_event_bus,
)
from unionnotify.services.phone import normalize_phone
from unionnotify.services.resilience import get_resilience_redis
from unionnotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DELIVERY_DRAIN_LOCK_KEY = "unionnotify:delivery:drain:lock"

_local_lock = asyncio.Lock()
_local_lock_owner: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class DrainLock:
    token: str
    redis: Any | None
    local: bool


@dataclass
class LaneResult:
    processed: int = 0
    failures: int = 0
    claimed: int = 0


async def _acquire_local_lock(token: str) -> DrainLock | None:
    global _local_lock_owner
    if _local_lock.locked():
        return None
    await _local_lock.acquire()
    _local_lock_owner = token
    return DrainLock(token=token, redis=None, local=True)


async def acquire_drain_lock() -> DrainLock | None:
    # One drain at a time across processes; claims still protect rows if the lock lapses.
    settings = get_settings()
    token = uuid4().hex
    redis = await get_resilience_redis()
    if redis is not None:
        try:
            acquired = await redis.set(
                DELIVERY_DRAIN_LOCK_KEY,
                token,
                nx=True,
                ex=max(5, int(settings.delivery_lock_ttl_s)),
            )
        except RedisError as exc:
            logger.warning("drain_lock_redis_unavailable error=%s", exc)
            return await _acquire_local_lock(token)
        if not acquired:
            return None
        return DrainLock(token=token, redis=redis, local=False)
    return await _acquire_local_lock(token)


async def release_drain_lock(lock: DrainLock) -> None:
    # Release only while this invocation still owns the token.
    global _local_lock_owner
    if lock.local:
        if _local_lock.locked() and _local_lock_owner == lock.token:
            _local_lock_owner = None
            _local_lock.release()
        return
    if lock.redis is None:
        return
    try:
        current = await lock.redis.get(DELIVERY_DRAIN_LOCK_KEY)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await lock.redis.delete(DELIVERY_DRAIN_LOCK_KEY)
    except RedisError as exc:
        logger.warning("drain_lock_release_failed error=%s", exc)


async def process_push_record(
    *,
    session: AsyncSession,
    row: PushDelivery,
    provider: PushProvider,
    bus: EventBus | None = None,
) -> bool:
    """Dispatch one claimed push row and persist the outcome."""
    message = build_push_message(token=row.push_token, title=row.title, body=row.body, data=row.data_json)
    try:
        result = await provider.send(message)
    except Exception as exc:  # noqa: BLE001 - transport errors become a failed attempt on this row.
        result = PushResult(success=False, error=str(exc) or exc.__class__.__name__)
    now = _utc_now()
    if result.success:
        await mark_sent(session=session, row=row, transport_id=result.transport_id, now=now)
    else:
        await mark_failed(session=session, row=row, error=result.error or "Push delivery failed", now=now)
        logger.info(
            "push_failed id=%s retry_count=%s next_attempt_at=%s error=%s",
            row.id,
            row.retry_count,
            row.next_attempt_at.isoformat() if row.next_attempt_at else None,
            row.error_message,
        )
    await record_delivery_metric(
        session=session,
        notification_id=row.notification_id or row.id,
        user_id=row.user_id,
        channel="push",
        success=result.success,
        error=None if result.success else row.error_message,
        timestamp=now,
    )
    if bus is not None:
        await bus.publish(
            DELIVERY_SENT if result.success else DELIVERY_FAILED,
            {"channel": "push", "id": row.id, "user_id": row.user_id, "retry_count": row.retry_count},
        )
    return result.success


async def process_sms_record(
    *,
    session: AsyncSession,
    row: SmsDelivery,
    provider: SmsProvider,
    bus: EventBus | None = None,
) -> bool:
    """Dispatch one claimed SMS row; success charges the budget, failure is terminal.

    Opt-out and lockout are re-read right before sending so a member who
    replied STOP or got locked out after enqueue is not texted.
    """
    preference = await session.get(UserPreference, row.recipient_id)
    eligibility = evaluate_sms_eligibility(
        preference,
        priority=row.priority,
        now=_utc_now(),
        require_verified=False,
    )
    if not eligibility.allowed:
        now = _utc_now()
        await mark_failed(
            session=session,
            row=row,
            error=f"Recipient ineligible: {eligibility.reason}",
            attempted=False,
            now=now,
        )
        increment_counter("sms_drain_rejections_total")
        await record_delivery_metric(
            session=session,
            notification_id=row.message_id or row.id,
            user_id=row.recipient_id,
            channel="sms",
            success=False,
            error=row.error_message,
            timestamp=now,
        )
        if bus is not None:
            await bus.publish(DELIVERY_FAILED, {"channel": "sms", "id": row.id, "user_id": row.recipient_id})
        return False

    try:
        result = await provider.send(SmsMessage(to=normalize_phone(row.phone_number), body=row.sms_content))
    except Exception as exc:  # noqa: BLE001 - transport errors become a terminal failure on this row.
        result = SmsResult(success=False, error=str(exc) or exc.__class__.__name__)
    now = _utc_now()
    cost: Decimal | None = result.cost if result.success else None
    if result.success:
        await mark_sent(session=session, row=row, transport_id=result.transport_id, cost=cost, now=now)
        if cost is not None and cost > 0:
            try:
                await apply_spend(session=session, cost=cost, now=now)
            except SQLAlchemyError:
                # The message went out; a lost budget write must not flip it to failed.
                await session.rollback()
                increment_counter("sms_budget_write_failures_total")
                logger.exception("sms_budget_update_failed id=%s cost=%s", row.id, cost)
    else:
        await mark_failed(session=session, row=row, error=result.error or "SMS delivery failed", now=now)
        logger.info("sms_failed id=%s error=%s", row.id, row.error_message)
    await record_delivery_metric(
        session=session,
        notification_id=row.message_id or row.id,
        user_id=row.recipient_id,
        channel="sms",
        success=result.success,
        error=None if result.success else row.error_message,
        cost=cost,
        timestamp=now,
    )
    if bus is not None:
        await bus.publish(
            DELIVERY_SENT if result.success else DELIVERY_FAILED,
            {"channel": "sms", "id": row.id, "user_id": row.recipient_id, "cost": str(cost) if cost else None},
        )
    return result.success


async def _run_lane(
    *,
    channel: str,
    token: str,
    provider: PushProvider | SmsProvider,
    bus: EventBus | None,
) -> LaneResult:
    settings = get_settings()
    model = PushDelivery if channel == "push" else SmsDelivery
    async with SessionLocal() as session:
        claimed = await claim_due(
            session=session,
            channel=channel,
            token=token,
            limit=settings.delivery_batch_size,
            now=_utc_now(),
        )
    claimed_ids = [row.id for row in claimed]
    lane = LaneResult(claimed=len(claimed_ids))
    semaphore = asyncio.Semaphore(max(1, int(settings.delivery_dispatch_concurrency)))

    async def _dispatch(record_id: str) -> bool:
        async with semaphore:
            async with SessionLocal() as session:
                row = await session.get(model, record_id)
                if row is None or row.claim_token != token or row.status != STATUS_PROCESSING:
                    return False
                try:
                    if channel == "push":
                        return await process_push_record(session=session, row=row, provider=provider, bus=bus)
                    return await process_sms_record(session=session, row=row, provider=provider, bus=bus)
                except Exception as exc:  # noqa: BLE001 - one bad record must not abort the batch.
                    logger.exception("%s_record_failed id=%s", channel, record_id)
                    await session.rollback()
                    row = await session.get(model, record_id)
                    if row is not None and row.status == STATUS_PROCESSING:
                        await mark_failed(session=session, row=row, error=str(exc), now=_utc_now())
                    return False

    outcomes = await asyncio.gather(*[_dispatch(record_id) for record_id in claimed_ids])
    lane.processed = sum(1 for outcome in outcomes if outcome)
    lane.failures = sum(1 for outcome in outcomes if not outcome)
    return lane


async def run_push_lane(
    *,
    token: str | None = None,
    provider: PushProvider | None = None,
    bus: EventBus | None = None,
) -> LaneResult:
    owned = provider is None
    provider = provider or get_push_provider()
    try:
        return await _run_lane(channel="push", token=token or uuid4().hex, provider=provider, bus=bus)
    finally:
        if owned:
            await provider.aclose()


async def run_sms_lane(
    *,
    token: str | None = None,
    provider: SmsProvider | None = None,
    bus: EventBus | None = None,
) -> LaneResult:
    owned = provider is None
    provider = provider or get_sms_provider()
    try:
        return await _run_lane(channel="sms", token=token or uuid4().hex, provider=provider, bus=bus)
    finally:
        if owned:
            await provider.aclose()


async def run_delivery_cycle(
    *,
    push_provider: PushProvider | None = None,
    sms_provider: SmsProvider | None = None,
    bus: EventBus | None = None,
) -> dict[str, Any]:
    """Drain both lanes once and return aggregate counts.

    The push and SMS lanes run concurrently and fail independently: a lane
    that raises (for example because its due query failed) counts as one
    failure and the other lane's results are still reported.
    """
    bus = bus or get_event_bus()
    lock = await acquire_drain_lock()
    if lock is None:
        return {"status": "skipped_lock", "processed": 0, "failures": 0}
    try:
        results = await asyncio.gather(
            run_push_lane(token=lock.token, provider=push_provider, bus=bus),
            run_sms_lane(token=lock.token, provider=sms_provider, bus=bus),
            return_exceptions=True,
        )
    finally:
        await release_drain_lock(lock)

    summary: dict[str, Any] = {"status": "completed", "processed": 0, "failures": 0}
    for lane_name, result in zip(("push", "sms"), results):
        if isinstance(result, BaseException):
            logger.error("%s_lane_failed", lane_name, exc_info=result)
            increment_counter(f"delivery_lane_failures_total.{lane_name}")
            summary["failures"] += 1
            summary[lane_name] = {"error": str(result) or result.__class__.__name__}
            continue
        summary["processed"] += result.processed
        summary["failures"] += result.failures
        summary[lane_name] = {"claimed": result.claimed, "processed": result.processed, "failures": result.failures}
    logger.info("delivery_cycle_completed processed=%s failures=%s", summary["processed"], summary["failures"])
    await bus.publish(
        DELIVERY_CYCLE_COMPLETED,
        {"processed": summary["processed"], "failures": summary["failures"]},
    )
    return summary


async def dispatch_sms_now(
    *,
    record_id: str,
    provider: SmsProvider | None = None,
    bus: EventBus | None = None,
) -> SmsDelivery | None:
    # Send one queued SMS immediately (OTP codes) through the same claim and outcome path.
    token = uuid4().hex
    async with SessionLocal() as session:
        row = await claim_record(session=session, channel="sms", record_id=record_id, token=token, now=_utc_now())
        if row is None:
            return None
        owned = provider is None
        provider = provider or get_sms_provider()
        try:
            await process_sms_record(session=session, row=row, provider=provider, bus=bus or get_event_bus())
        finally:
            if owned:
                await provider.aclose()
        return row
