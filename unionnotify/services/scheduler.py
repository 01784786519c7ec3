from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.core.config import get_settings
from unionnotify.core.errors import BudgetExceededError, IneligibleRecipientError, InvalidPhoneError
from unionnotify.domain.models import (
    Division,
    MeetingNotificationLog,
    MeetingNotificationPreference,
    MeetingOccurrence,
    Member,
    UserPreference,
)
from unionnotify.services.delivery.store import enqueue_push
from unionnotify.services.eligibility import PRIORITY_HIGH, enqueue_notification_sms, evaluate_sms_eligibility
from unionnotify.services.events import REMINDERS_QUEUED, get_event_bus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderWindow:
    time_frame: str
    lead: timedelta
    preference_field: str
    label: str


REMINDER_WINDOWS: tuple[ReminderWindow, ...] = (
    ReminderWindow("week", timedelta(weeks=1), "notify_week_before", "one week"),
    ReminderWindow("day", timedelta(days=1), "notify_day_before", "one day"),
    ReminderWindow("hour", timedelta(hours=1), "notify_hour_before", "one hour"),
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def window_bounds(window: ReminderWindow, now: datetime) -> tuple[datetime, datetime]:
    settings = get_settings()
    minutes = (
        settings.reminder_hour_buffer_minutes
        if window.lead <= timedelta(hours=1)
        else settings.reminder_day_buffer_minutes
    )
    target = now + window.lead
    buffer = timedelta(minutes=minutes)
    return target - buffer, target + buffer


def format_meeting_time(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    hour = value.hour % 12 or 12
    return f"{value:%b} {value.day}, {value.year}, {hour}:{value:%M} {value:%p} UTC"


def reminder_dedupe_key(occurrence_id: str, time_frame: str, recipient_id: str) -> str:
    return f"meeting:{occurrence_id}:{time_frame}:{recipient_id}"


async def find_occurrences(
    *,
    session: AsyncSession,
    window: ReminderWindow,
    now: datetime,
) -> list[MeetingOccurrence]:
    lower, upper = window_bounds(window, now)
    rows = (
        await session.execute(
            select(MeetingOccurrence)
            .where(
                MeetingOccurrence.scheduled_at >= lower,
                MeetingOccurrence.scheduled_at <= upper,
                MeetingOccurrence.is_cancelled.is_(False),
            )
            .order_by(MeetingOccurrence.scheduled_at.asc())
        )
    ).scalars().all()
    return list(rows)


async def _recipients(
    *,
    session: AsyncSession,
    division_id: str,
    window: ReminderWindow,
) -> list[tuple[Member, UserPreference | None]]:
    # Active division members who asked for this lead time, with their contact preferences.
    flag = getattr(MeetingNotificationPreference, window.preference_field)
    rows = (
        await session.execute(
            select(Member, UserPreference)
            .join(MeetingNotificationPreference, MeetingNotificationPreference.user_id == Member.id)
            .outerjoin(UserPreference, UserPreference.user_id == Member.id)
            .where(Member.division_id == division_id, Member.status == "active", flag.is_(True))
            .order_by(Member.id)
        )
    ).all()
    return [(member, preference) for member, preference in rows]


async def _queue_reminder(
    *,
    session: AsyncSession,
    member: Member,
    preference: UserPreference | None,
    title: str,
    body: str,
    data: dict[str, Any],
    dedupe_key: str,
    now: datetime,
) -> str | None:
    """Queue one reminder on the member's channel; returns the channel used or ``None``."""
    wants_text = preference is not None and preference.contact_preference == "text"
    if wants_text and member.phone_number and evaluate_sms_eligibility(
        preference, priority=PRIORITY_HIGH, now=now
    ).allowed:
        try:
            _row, created = await enqueue_notification_sms(
                session=session,
                recipient_id=member.id,
                phone_number=member.phone_number,
                content=f"{title}: {body}",
                priority=PRIORITY_HIGH,
                message_id=dedupe_key,
                dedupe_key=dedupe_key,
            )
            return "sms" if created else None
        except (IneligibleRecipientError, BudgetExceededError, InvalidPhoneError) as exc:
            logger.info("reminder_sms_fallback user_id=%s reason=%s", member.id, exc)
    if preference is not None and preference.push_token:
        _row, created = await enqueue_push(
            session=session,
            user_id=member.id,
            push_token=preference.push_token,
            title=title,
            body=body,
            data={**data, "importance": "high"},
            notification_id=dedupe_key,
            max_attempts=get_settings().reminder_push_max_attempts,
            dedupe_key=dedupe_key,
        )
        return "push" if created else None
    return None


async def _queue_window(*, session: AsyncSession, window: ReminderWindow, now: datetime) -> int:
    queued = 0
    for occurrence in await find_occurrences(session=session, window=window, now=now):
        division = await session.get(Division, occurrence.division_id)
        division_name = division.name if division is not None else "Division"
        title = f"{division_name} Meeting in {window.label}"
        body = (
            f"Upcoming meeting at {occurrence.location_name or 'Unknown Location'} "
            f"on {format_meeting_time(occurrence.scheduled_at)}"
        )
        data = {
            "meetingId": occurrence.id,
            "meetingPatternId": occurrence.meeting_pattern_id,
            "screen": "meetings",
            "type": "meeting_reminder",
            "divisionId": occurrence.division_id,
            "divisionName": division_name,
            "timeFrame": window.time_frame,
        }
        occurrence_queued = 0
        for member, preference in await _recipients(
            session=session, division_id=occurrence.division_id, window=window
        ):
            channel = await _queue_reminder(
                session=session,
                member=member,
                preference=preference,
                title=title,
                body=body,
                data=data,
                dedupe_key=reminder_dedupe_key(occurrence.id, window.time_frame, member.id),
                now=now,
            )
            if channel is not None:
                occurrence_queued += 1
        queued += occurrence_queued
        logger.info(
            "meeting_reminders_occurrence occurrence_id=%s time_frame=%s queued=%s",
            occurrence.id,
            window.time_frame,
            occurrence_queued,
        )
    return queued


async def run_meeting_reminders(*, session: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """Scan the week, day and hour windows and queue reminders.

    Reminders are keyed per occurrence, lead time and member, so overlapping
    scans queue nothing twice. Every run leaves one row in the reminder log,
    including failed runs.
    """
    now = now or _utc_now()
    counts: dict[str, int] = {}
    try:
        for window in REMINDER_WINDOWS:
            counts[window.time_frame] = await _queue_window(session=session, window=window, now=now)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("meeting_reminders_failed")
        session.add(
            MeetingNotificationLog(
                success=False,
                week_before_count=0,
                day_before_count=0,
                hour_before_count=0,
                notifications_queued=0,
                error_message=str(exc) or exc.__class__.__name__,
                created_at=now,
            )
        )
        await session.commit()
        return {"success": False, "error": str(exc) or exc.__class__.__name__}

    total = sum(counts.values())
    session.add(
        MeetingNotificationLog(
            success=True,
            week_before_count=counts.get("week", 0),
            day_before_count=counts.get("day", 0),
            hour_before_count=counts.get("hour", 0),
            notifications_queued=total,
            created_at=now,
        )
    )
    await session.commit()
    logger.info(
        "meeting_reminders_completed total=%s week=%s day=%s hour=%s",
        total,
        counts.get("week", 0),
        counts.get("day", 0),
        counts.get("hour", 0),
    )
    await get_event_bus().publish(REMINDERS_QUEUED, {"total": total, **counts})
    return {
        "success": True,
        "week_before_count": counts.get("week", 0),
        "day_before_count": counts.get("day", 0),
        "hour_before_count": counts.get("hour", 0),
        "notifications_queued": total,
    }
