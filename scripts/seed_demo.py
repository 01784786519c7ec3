from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from unionnotify.domain.models import (
    Base,
    Division,
    MeetingNotificationPreference,
    MeetingOccurrence,
    Member,
    UserPreference,
)
from unionnotify.persistence.db import SessionLocal, engine


DEMO_DIVISION_ID = "div-demo"
DEMO_DIVISION_NAME = "Demo Division"


@dataclass(frozen=True)
class DemoMember:
    # Stable member fixtures make reminder and OTP flows reproducible locally.
    id: str
    first_name: str
    last_name: str
    role: str
    phone_number: str
    contact_preference: str
    push_token: str | None


def build_demo_members() -> tuple[DemoMember, ...]:
    return (
        DemoMember("m-admin", "Dana", "Reyes", "division_admin", "+15555550100", "in_app", None),
        DemoMember("m-push", "Sam", "Okafor", "member", "+15555550101", "push", "ExponentPushToken[demo-push]"),
        DemoMember("m-text", "Lee", "Novak", "member", "+15555550102", "text", None),
    )


async def _main() -> None:
    # Create tables and insert one division, a few members, and a meeting one day out.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with SessionLocal() as session:
        if await session.get(Division, DEMO_DIVISION_ID) is None:
            session.add(Division(id=DEMO_DIVISION_ID, name=DEMO_DIVISION_NAME))
        for demo in build_demo_members():
            if await session.get(Member, demo.id) is not None:
                continue
            session.add(
                Member(
                    id=demo.id,
                    first_name=demo.first_name,
                    last_name=demo.last_name,
                    pin_number=demo.id.upper(),
                    division_id=DEMO_DIVISION_ID,
                    role=demo.role,
                    phone_number=demo.phone_number,
                    status="active",
                )
            )
            session.add(
                UserPreference(
                    user_id=demo.id,
                    push_token=demo.push_token,
                    contact_preference=demo.contact_preference,
                    phone_verified=demo.contact_preference == "text",
                    phone_verification_status="verified" if demo.contact_preference == "text" else "unverified",
                )
            )
            session.add(
                MeetingNotificationPreference(
                    user_id=demo.id,
                    notify_week_before=True,
                    notify_day_before=True,
                    notify_hour_before=True,
                )
            )
        session.add(
            MeetingOccurrence(
                id=f"occ-{int(datetime.now(timezone.utc).timestamp())}",
                division_id=DEMO_DIVISION_ID,
                meeting_pattern_id="pattern-demo",
                scheduled_at=datetime.now(timezone.utc) + timedelta(days=1),
                location_name="Union Hall",
                location_address="100 Main St",
            )
        )
        await session.commit()
    print(f"Seeded {DEMO_DIVISION_NAME} with {len(build_demo_members())} members")


if __name__ == "__main__":
    asyncio.run(_main())
