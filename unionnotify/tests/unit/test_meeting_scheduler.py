from __future__ import annotations

from datetime import timedelta
import logging

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from unionnotify.domain.models import (
    MeetingNotificationLog,
    MeetingNotificationPreference,
    MeetingOccurrence,
    PushDelivery,
    SmsDelivery,
)
from unionnotify.services import scheduler


async def _meeting(db, *, occurrence_id: str, at, division_id: str = "div-1", cancelled: bool = False) -> None:
    db.add(
        MeetingOccurrence(
            id=occurrence_id,
            division_id=division_id,
            meeting_pattern_id="pattern-1",
            scheduled_at=at,
            location_name="Union Hall",
            is_cancelled=cancelled,
        )
    )
    await db.commit()


async def _wants(db, user_id: str, **flags) -> None:
    db.add(MeetingNotificationPreference(user_id=user_id, **flags))
    await db.commit()


def test_window_bounds_use_lead_specific_buffers(frozen_now) -> None:
    week, day, hour = scheduler.REMINDER_WINDOWS

    assert scheduler.window_bounds(hour, frozen_now) == (
        frozen_now + timedelta(minutes=55),
        frozen_now + timedelta(minutes=65),
    )
    lower, upper = scheduler.window_bounds(week, frozen_now)
    assert upper - lower == timedelta(hours=2)
    assert lower == frozen_now + timedelta(weeks=1) - timedelta(hours=1)
    assert day.preference_field == "notify_day_before"


def test_meeting_time_format(frozen_now) -> None:
    assert scheduler.format_meeting_time(frozen_now + timedelta(hours=1)) == "Mar 10, 2026, 4:00 PM UTC"
    assert scheduler.format_meeting_time(frozen_now.replace(hour=0, minute=5)) == "Mar 10, 2026, 12:05 AM UTC"


@pytest.mark.asyncio
async def test_find_occurrences_skips_cancelled_and_out_of_window(session, frozen_now, member_factory) -> None:
    await member_factory(session, member_id="m-1")
    day = scheduler.REMINDER_WINDOWS[1]
    await _meeting(session, occurrence_id="inside", at=frozen_now + timedelta(days=1, minutes=50))
    await _meeting(session, occurrence_id="outside", at=frozen_now + timedelta(days=1, minutes=61))
    await _meeting(session, occurrence_id="cancelled", at=frozen_now + timedelta(days=1), cancelled=True)

    found = await scheduler.find_occurrences(session=session, window=day, now=frozen_now)

    assert [item.id for item in found] == ["inside"]


@pytest.mark.asyncio
async def test_hour_reminders_pick_channel_per_member(session, frozen_now, member_factory) -> None:
    await member_factory(session, member_id="m-push", push_token="ExponentPushToken[push]")
    await member_factory(session, member_id="m-text", contact_preference="text", phone_verified=True)
    await member_factory(
        session,
        member_id="m-fallback",
        contact_preference="text",
        phone_verified=False,
        push_token="ExponentPushToken[fallback]",
    )
    await member_factory(session, member_id="m-day-only", push_token="ExponentPushToken[day]")
    await member_factory(session, member_id="m-inactive", status="inactive", push_token="ExponentPushToken[x]")
    await member_factory(session, member_id="m-no-channel")
    for user_id in ("m-push", "m-text", "m-fallback", "m-inactive", "m-no-channel"):
        await _wants(session, user_id, notify_hour_before=True)
    await _wants(session, "m-day-only", notify_day_before=True)
    await _meeting(session, occurrence_id="occ-1", at=frozen_now + timedelta(hours=1))

    result = await scheduler.run_meeting_reminders(session=session, now=frozen_now)

    assert result == {
        "success": True,
        "week_before_count": 0,
        "day_before_count": 0,
        "hour_before_count": 3,
        "notifications_queued": 3,
    }
    pushes = {row.user_id: row for row in (await session.execute(select(PushDelivery))).scalars()}
    assert sorted(pushes) == ["m-fallback", "m-push"]
    push = pushes["m-push"]
    assert push.title == "Division 1 Meeting in one hour"
    assert push.body == "Upcoming meeting at Union Hall on Mar 10, 2026, 4:00 PM UTC"
    assert push.dedupe_key == "meeting:occ-1:hour:m-push"
    assert push.data_json["timeFrame"] == "hour"
    assert push.data_json["importance"] == "high"
    assert push.data_json["meetingId"] == "occ-1"
    sms = (await session.execute(select(SmsDelivery))).scalar_one()
    assert sms.recipient_id == "m-text"
    assert sms.priority == "high"
    assert sms.sms_content.startswith("Division 1 Meeting in one hour: Upcoming meeting at Union Hall")


@pytest.mark.asyncio
async def test_overlapping_runs_do_not_duplicate(session, frozen_now, member_factory) -> None:
    await member_factory(session, member_id="m-push", push_token="ExponentPushToken[push]")
    await _wants(session, "m-push", notify_hour_before=True)
    await _meeting(session, occurrence_id="occ-1", at=frozen_now + timedelta(hours=1))

    first = await scheduler.run_meeting_reminders(session=session, now=frozen_now)
    second = await scheduler.run_meeting_reminders(session=session, now=frozen_now + timedelta(minutes=2))

    assert first["notifications_queued"] == 1
    assert second["notifications_queued"] == 0
    assert len((await session.execute(select(PushDelivery))).scalars().all()) == 1
    logs = (await session.execute(select(MeetingNotificationLog))).scalars().all()
    assert [log.notifications_queued for log in logs] == [1, 0]


@pytest.mark.asyncio
async def test_occurrence_log_counts_only_its_own_reminders(session, frozen_now, member_factory, caplog) -> None:
    await member_factory(session, member_id="m-push", push_token="ExponentPushToken[push]")
    await _wants(session, "m-push", notify_hour_before=True)
    await _meeting(session, occurrence_id="occ-1", at=frozen_now + timedelta(hours=1))
    await _meeting(session, occurrence_id="occ-2", at=frozen_now + timedelta(hours=1, minutes=2))
    caplog.set_level(logging.INFO, logger="unionnotify.services.scheduler")

    result = await scheduler.run_meeting_reminders(session=session, now=frozen_now)

    assert result["hour_before_count"] == 2
    lines = [record.getMessage() for record in caplog.records if "meeting_reminders_occurrence" in record.getMessage()]
    assert sorted(lines) == [
        "meeting_reminders_occurrence occurrence_id=occ-1 time_frame=hour queued=1",
        "meeting_reminders_occurrence occurrence_id=occ-2 time_frame=hour queued=1",
    ]


@pytest.mark.asyncio
async def test_failed_scan_is_logged(session, frozen_now, monkeypatch) -> None:
    async def broken(**_kwargs):
        raise SQLAlchemyError("meeting table unavailable")

    monkeypatch.setattr(scheduler, "find_occurrences", broken)

    result = await scheduler.run_meeting_reminders(session=session, now=frozen_now)

    assert result == {"success": False, "error": "meeting table unavailable"}
    log = (await session.execute(select(MeetingNotificationLog))).scalar_one()
    assert log.success is False
    assert log.error_message == "meeting table unavailable"
