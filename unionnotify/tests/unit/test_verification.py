from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from unionnotify.core.errors import InvalidPhoneError, LockoutError, RateLimitedError, VerificationError
from unionnotify.domain.models import AdminMessage, PhoneVerification, SmsDelivery, UserPreference
from unionnotify.providers.sms.fake import FakeSmsProvider
from unionnotify.services import verification
from unionnotify.services.events import PHONE_LOCKED_OUT, get_event_bus


CODE = "123456"
WRONG = "654321"
PHONE = "(555) 555-0123"


@pytest.fixture(autouse=True)
def fixed_code(monkeypatch) -> None:
    monkeypatch.setattr(verification, "generate_otp", lambda length=6: CODE)


@pytest.fixture
def clock(monkeypatch, frozen_now):
    state = {"now": frozen_now}
    monkeypatch.setattr(verification, "_utc_now", lambda: state["now"])
    return state


async def _issue(session, user_id: str = "u-1", phone: str = PHONE, provider: FakeSmsProvider | None = None):
    return await verification.issue_otp(
        session=session,
        user_id=user_id,
        phone=phone,
        pin_number="12345",
        sms_provider=provider or FakeSmsProvider(),
    )


async def _wrong(session, user_id: str = "u-1", phone: str = PHONE) -> VerificationError:
    with pytest.raises(VerificationError) as excinfo:
        await verification.verify_otp(session=session, user_id=user_id, phone=phone, code=WRONG)
    return excinfo.value


@pytest.mark.asyncio
async def test_issue_stores_hash_and_texts_code(session, clock) -> None:
    provider = FakeSmsProvider()

    issued = await _issue(session, provider=provider)

    assert issued.expires_in_seconds == 120
    row = (await session.execute(select(PhoneVerification))).scalar_one()
    assert row.phone == "+15555550123"
    assert row.otp_hash != CODE
    assert verification.otp_matches(CODE, row.otp_hash)
    assert row.expires_at == clock["now"] + timedelta(seconds=120)
    assert provider.sent[0].to == "+15555550123"
    assert f"verification code is: {CODE}." in provider.sent[0].body
    delivery = await session.get(SmsDelivery, issued.delivery_id)
    assert delivery.priority == "otp"
    assert delivery.message_id == f"otp_{issued.session_id}"
    preference = await session.get(UserPreference, "u-1")
    assert preference.phone_verification_status == "pending"
    assert preference.pin_number == "12345"


@pytest.mark.asyncio
async def test_issue_reaches_opted_out_member(session, clock) -> None:
    session.add(UserPreference(user_id="u-1", sms_opt_out=True))
    await session.commit()
    provider = FakeSmsProvider()

    await _issue(session, provider=provider)

    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_correct_code_verifies_phone(session, clock) -> None:
    await _issue(session)

    outcome = await verification.verify_otp(session=session, user_id="u-1", phone=PHONE, code=CODE)

    assert outcome.verified is True
    assert outcome.message == verification.MSG_VERIFIED
    preference = await session.get(UserPreference, "u-1")
    assert preference.phone_verified is True
    assert preference.phone_verification_status == "verified"
    assert preference.sms_lockout_until is None


@pytest.mark.asyncio
async def test_wrong_code_reports_remaining_attempts(session, clock) -> None:
    await _issue(session)

    first = await _wrong(session)
    second = await _wrong(session)
    third = await _wrong(session)

    assert "2 attempt(s) remaining" in str(first)
    assert "1 attempt(s) remaining" in str(second)
    assert str(third) == verification.MSG_SESSION_EXHAUSTED
    # The exhausted session rejects even the right code.
    with pytest.raises(VerificationError, match="Too many incorrect attempts"):
        await verification.verify_otp(session=session, user_id="u-1", phone=PHONE, code=CODE)


@pytest.mark.asyncio
async def test_expired_code_is_rejected(session, clock) -> None:
    await _issue(session)
    clock["now"] = clock["now"] + timedelta(seconds=121)

    with pytest.raises(VerificationError) as excinfo:
        await verification.verify_otp(session=session, user_id="u-1", phone=PHONE, code=CODE)

    assert str(excinfo.value) == verification.MSG_EXPIRED


@pytest.mark.asyncio
async def test_verify_without_session(session, clock) -> None:
    with pytest.raises(VerificationError) as excinfo:
        await verification.verify_otp(session=session, user_id="u-1", phone=PHONE, code=CODE)

    assert str(excinfo.value) == verification.MSG_NO_SESSION


@pytest.mark.asyncio
async def test_malformed_inputs_are_rejected(session, clock) -> None:
    with pytest.raises(VerificationError, match="Missing required fields: phone, pin_number"):
        await verification.issue_otp(session=session, user_id="u-1", phone="", pin_number="")
    with pytest.raises(InvalidPhoneError):
        await _issue(session, phone="+44 20 7946 0958")
    with pytest.raises(VerificationError, match="6-digit"):
        await verification.verify_otp(session=session, user_id="u-1", phone=PHONE, code="12ab")


@pytest.mark.asyncio
async def test_fourth_request_in_window_is_rate_limited(session, clock) -> None:
    for _ in range(3):
        await _issue(session)

    with pytest.raises(RateLimitedError):
        await _issue(session)

    clock["now"] = clock["now"] + timedelta(seconds=301)
    await _issue(session)


@pytest.mark.asyncio
async def test_phone_verified_by_another_user(session, clock) -> None:
    await _issue(session, user_id="u-1")
    await verification.verify_otp(session=session, user_id="u-1", phone=PHONE, code=CODE)

    with pytest.raises(VerificationError, match="already verified by another user"):
        await _issue(session, user_id="u-2")


@pytest.mark.asyncio
async def test_transport_failure_is_reported(session, clock) -> None:
    with pytest.raises(VerificationError, match="Failed to send verification code"):
        await _issue(session, provider=FakeSmsProvider(fail_with="Twilio 21211"))


@pytest.mark.asyncio
async def test_six_failures_across_sessions_lock_out(session, clock, member_factory) -> None:
    await member_factory(session, member_id="u-1", first_name="Sam", last_name="Reed")
    await member_factory(session, member_id="admin-1", role="division_admin")
    await member_factory(session, member_id="admin-2", role="division_admin")
    await member_factory(session, member_id="admin-other", division_id="div-2", role="division_admin")
    locked_events = []
    get_event_bus().subscribe(PHONE_LOCKED_OUT, locked_events.append)

    await _issue(session)
    for _ in range(3):
        await _wrong(session)
    clock["now"] = clock["now"] + timedelta(seconds=30)
    await _issue(session)
    await _wrong(session)
    await _wrong(session)
    with pytest.raises(LockoutError) as excinfo:
        await verification.verify_otp(session=session, user_id="u-1", phone=PHONE, code=WRONG)

    assert str(excinfo.value) == verification.MSG_LOCKOUT_TRIGGERED
    preference = await session.get(UserPreference, "u-1")
    assert preference.sms_lockout_until == clock["now"] + timedelta(hours=24)
    assert preference.phone_verification_status == "locked_out"
    messages = (await session.execute(select(AdminMessage))).scalars().all()
    assert sorted(message.metadata_json["admin_user_id"] for message in messages) == ["admin-1", "admin-2"]
    assert all(message.priority == "high" for message in messages)
    assert "Sam Reed" in messages[0].message
    assert "after 6 failed OTP attempts" in messages[0].message
    assert locked_events[0].payload == {"user_id": "u-1", "failed_attempts": 6, "admins_notified": 2}

    with pytest.raises(LockoutError) as again:
        await _issue(session)
    assert str(again.value) == verification.MSG_LOCKED_OUT


@pytest.mark.asyncio
async def test_lockout_expires(session, clock) -> None:
    session.add(UserPreference(user_id="u-1", sms_lockout_until=clock["now"] + timedelta(minutes=5)))
    await session.commit()
    with pytest.raises(LockoutError):
        await _issue(session)

    clock["now"] = clock["now"] + timedelta(minutes=6)

    await _issue(session)


@pytest.mark.asyncio
async def test_failures_do_not_leak_between_users(session, clock) -> None:
    await _issue(session, user_id="u-1")
    for _ in range(3):
        await _wrong(session, user_id="u-1")
    await _issue(session, user_id="u-2", phone="555-555-0199")

    await _wrong(session, user_id="u-2", phone="555-555-0199")
    outcome = await verification.verify_otp(session=session, user_id="u-2", phone="555-555-0199", code=CODE)

    assert outcome.verified is True
    other = await session.get(UserPreference, "u-1")
    assert other.sms_lockout_until is None
