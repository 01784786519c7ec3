from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.domain.models import NotificationAnalytics
from unionnotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def record_delivery_metric(
    *,
    session: AsyncSession,
    notification_id: str,
    user_id: str,
    channel: str,
    success: bool,
    error: str | None = None,
    cost: Decimal | None = None,
    timestamp: datetime | None = None,
) -> None:
    # One analytics row per dispatch attempt; a failed write is logged and never fails the delivery.
    increment_counter(f"deliveries_{channel}_{'sent' if success else 'failed'}_total")
    session.add(
        NotificationAnalytics(
            notification_id=notification_id,
            user_id=user_id,
            channel=channel,
            success=success,
            error=error,
            cost=cost,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
    )
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        increment_counter("delivery_metric_write_failures_total")
        logger.exception("delivery_metric_write_failed notification_id=%s channel=%s", notification_id, channel)
