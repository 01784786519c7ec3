from __future__ import annotations

import os

# Point the engine at a throwaway database before any unionnotify module builds it.
os.environ["DATABASE_URL"] = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["REDIS_URL"] = ""
os.environ["PUSH_PROVIDER"] = "fake"
os.environ["SMS_PROVIDER"] = "fake"
os.environ["SERVICE_API_TOKEN"] = ""
# Every session shares one in-memory connection, so dispatch rows one at a time.
os.environ["DELIVERY_DISPATCH_CONCURRENCY"] = "1"

from datetime import datetime, timezone

import pytest

from unionnotify.core.config import get_settings
from unionnotify.domain.models import Base, Division, Member, UserPreference
from unionnotify.persistence.db import SessionLocal, engine
from unionnotify.services.events import reset_event_bus
from unionnotify.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
async def database_schema() -> None:
    # Fresh tables per test; disposing drops the in-memory database with the connection.
    get_settings.cache_clear()
    reset_event_bus()
    reset_telemetry()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    get_settings.cache_clear()


@pytest.fixture
async def session():
    async with SessionLocal() as db:
        yield db


@pytest.fixture
def frozen_now() -> datetime:
    return datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


async def add_member(
    db,
    *,
    member_id: str,
    division_id: str = "div-1",
    division_name: str = "Division 1",
    role: str = "member",
    phone_number: str | None = "+15555550123",
    first_name: str = "Pat",
    last_name: str = "Jones",
    status: str = "active",
    **preference_fields,
) -> Member:
    """Insert a member, its division when missing, and optional contact preferences."""
    if await db.get(Division, division_id) is None:
        db.add(Division(id=division_id, name=division_name))
    member = Member(
        id=member_id,
        first_name=first_name,
        last_name=last_name,
        pin_number=f"PIN-{member_id}",
        division_id=division_id,
        role=role,
        phone_number=phone_number,
        status=status,
    )
    db.add(member)
    if preference_fields:
        preference_fields.setdefault("contact_preference", "in_app")
        preference_fields.setdefault("sms_opt_out", False)
        preference_fields.setdefault("phone_verified", False)
        db.add(UserPreference(user_id=member_id, **preference_fields))
    await db.commit()
    return member


@pytest.fixture
def member_factory():
    return add_member
