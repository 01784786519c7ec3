from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
import re
import secrets
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.core.config import get_settings
from unionnotify.core.errors import LockoutError, RateLimitedError, VerificationError
from unionnotify.domain.models import AdminMessage, Division, Member, PhoneVerification, UserPreference
from unionnotify.providers.sms.base import SmsProvider
from unionnotify.services.delivery.store import STATUS_SENT, enqueue_sms
from unionnotify.services.delivery.worker import dispatch_sms_now
from unionnotify.services.eligibility import PRIORITY_OTP
from unionnotify.services.events import PHONE_LOCKED_OUT, get_event_bus
from unionnotify.services.phone import require_us_phone


logger = logging.getLogger(__name__)

MSG_LOCKED_OUT = (
    "Your account has been temporarily locked due to too many failed verification attempts. "
    "Please try again later or contact your division admin for assistance."
)
MSG_LOCKOUT_TRIGGERED = (
    "You have entered an incorrect OTP too many times. Your account has been temporarily locked. "
    "Please try again later or contact your division admin for assistance."
)
MSG_NO_SESSION = "No active verification session found. Please request a new OTP."
MSG_EXPIRED = "Your OTP has expired. Please request a new one."
MSG_SESSION_EXHAUSTED = "Too many incorrect attempts for this session. Please request a new OTP."
MSG_VERIFIED = "Phone number verified successfully"
MSG_OTP_SENT = "Verification code sent"

_CODE_PATTERN = re.compile(r"^\d{6}$")


@dataclass(frozen=True)
class OtpIssue:
    session_id: str
    expires_in_seconds: int
    delivery_id: str
    message: str = MSG_OTP_SENT


@dataclass(frozen=True)
class VerifyOutcome:
    verified: bool
    message: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_otp(length: int = 6) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(max(1, int(length))))


def hash_otp(code: str) -> str:
    # Keyed SHA-256 so a leaked table cannot be brute-forced offline without the secret.
    secret = get_settings().otp_hash_secret.encode("utf-8")
    return hmac.new(secret, code.encode("utf-8"), hashlib.sha256).hexdigest()


def otp_matches(code: str, otp_hash: str) -> bool:
    return hmac.compare_digest(hash_otp(code), otp_hash)


def otp_sms_body(code: str) -> str:
    settings = get_settings()
    minutes = max(1, settings.otp_expiry_seconds // 60)
    return (
        f"Your {settings.otp_brand_name} verification code is: {code}. "
        f"This code expires in {minutes} minutes. Reply STOP to opt-out."
    )


async def _get_or_create_preferences(*, session: AsyncSession, user_id: str) -> UserPreference:
    preference = await session.get(UserPreference, user_id)
    if preference is None:
        preference = UserPreference(
            user_id=user_id,
            contact_preference="in_app",
            sms_opt_out=False,
            phone_verified=False,
            phone_verification_status="unverified",
        )
        session.add(preference)
        await session.flush()
    return preference


def _lockout_active(preference: UserPreference | None, now: datetime) -> bool:
    return bool(preference and preference.sms_lockout_until and preference.sms_lockout_until > now)


def _require_fields(**fields: str | None) -> None:
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise VerificationError(f"Missing required fields: {', '.join(missing)}")


async def issue_otp(
    *,
    session: AsyncSession,
    user_id: str,
    phone: str,
    pin_number: str,
    sms_provider: SmsProvider | None = None,
) -> OtpIssue:
    """Open a verification session and text the code.

    Only the keyed hash of the code is stored. The SMS goes through the
    delivery queue and is dispatched immediately, so a transport failure is
    reported to the caller instead of waiting for the next drain.
    """
    _require_fields(phone=phone, user_id=user_id, pin_number=pin_number)
    settings = get_settings()
    normalized = require_us_phone(phone)
    now = _utc_now()

    preference = await session.get(UserPreference, user_id)
    if _lockout_active(preference, now):
        raise LockoutError(MSG_LOCKED_OUT)

    window_start = now - timedelta(seconds=settings.otp_rate_limit_window_seconds)
    recent = await session.scalar(
        select(func.count(PhoneVerification.id)).where(
            PhoneVerification.phone == normalized,
            PhoneVerification.created_at >= window_start,
        )
    )
    if int(recent or 0) >= settings.otp_rate_limit_count:
        raise RateLimitedError("Too many verification requests. Please wait a few minutes before trying again.")

    claimed_elsewhere = await session.scalar(
        select(func.count(PhoneVerification.id)).where(
            PhoneVerification.phone == normalized,
            PhoneVerification.verified.is_(True),
            PhoneVerification.user_id != user_id,
        )
    )
    if int(claimed_elsewhere or 0) > 0:
        raise VerificationError("This phone number is already verified by another user.")

    code = generate_otp(settings.otp_length)
    verification = PhoneVerification(
        id=uuid4().hex,
        session_id=str(uuid4()),
        user_id=user_id,
        phone=normalized,
        otp_hash=hash_otp(code),
        expires_at=now + timedelta(seconds=settings.otp_expiry_seconds),
        attempts=0,
        verified=False,
        created_at=now,
        updated_at=now,
    )
    session.add(verification)
    preference = await _get_or_create_preferences(session=session, user_id=user_id)
    preference.pin_number = pin_number
    preference.phone_verification_status = "pending"
    await session.commit()

    delivery, _created = await enqueue_sms(
        session=session,
        recipient_id=user_id,
        phone_number=normalized,
        content=otp_sms_body(code),
        priority=PRIORITY_OTP,
        message_id=f"otp_{verification.session_id}",
    )
    sent = await dispatch_sms_now(record_id=delivery.id, provider=sms_provider)
    if sent is None or sent.status != STATUS_SENT:
        logger.warning(
            "otp_send_failed user_id=%s delivery_id=%s error=%s",
            user_id,
            delivery.id,
            sent.error_message if sent is not None else "not claimed",
        )
        raise VerificationError("Failed to send verification code. Please try again.")
    logger.info("otp_issued user_id=%s session_id=%s", user_id, verification.session_id)
    return OtpIssue(
        session_id=verification.session_id,
        expires_in_seconds=settings.otp_expiry_seconds,
        delivery_id=delivery.id,
    )


async def _notify_division_admins(
    *,
    session: AsyncSession,
    user_id: str,
    phone: str,
    total_failed: int,
) -> int:
    # Write straight to admin messages; the SMS channel is the one that just locked out.
    member = await session.get(Member, user_id)
    if member is None or member.division_id is None:
        logger.warning("otp_lockout_no_division user_id=%s", user_id)
        return 0
    division = await session.get(Division, member.division_id)
    division_name = division.name if division is not None else "Unknown Division"
    admins = (
        await session.execute(
            select(Member).where(Member.division_id == member.division_id, Member.role == "division_admin")
        )
    ).scalars().all()
    if not admins:
        logger.warning("otp_lockout_no_admins division_id=%s", member.division_id)
        return 0
    member_name = " ".join(part for part in (member.first_name, member.last_name) if part) or user_id
    body = (
        f"{member_name} (PIN: {member.pin_number}) from {division_name} has been locked out of SMS "
        f"verification after {total_failed} failed OTP attempts. The user may need assistance with "
        f"their phone verification. Phone: {phone}"
    )
    for admin in admins:
        session.add(
            AdminMessage(
                id=uuid4().hex,
                sender_user_id=user_id,
                recipient_roles=["division_admin"],
                recipient_division_ids=[member.division_id],
                subject="SMS Verification Lockout - User Assistance Required",
                message=body,
                priority="high",
                category="system_alert",
                requires_acknowledgment=False,
                metadata_json={
                    "type": "otp_lockout",
                    "phone_number": phone,
                    "failed_attempts": total_failed,
                    "locked_user_id": user_id,
                    "locked_user_name": member_name,
                    "locked_user_pin": member.pin_number,
                    "admin_user_id": admin.id,
                },
            )
        )
    await session.commit()
    return len(admins)


async def verify_otp(
    *,
    session: AsyncSession,
    user_id: str,
    phone: str,
    code: str,
    pin_number: str | None = None,
) -> VerifyOutcome:
    """Check a submitted code against the newest open session for the phone.

    Expired, exhausted, missing sessions and an active lockout are rejected
    before anything is written. A wrong code bumps the session counter; once
    the user's unverified sessions add up to the cross-session limit the
    user is locked out and their division admins are told.
    """
    _require_fields(phone=phone, user_id=user_id, code=code)
    settings = get_settings()
    if not _CODE_PATTERN.match(code.strip()):
        raise VerificationError("Invalid OTP format. Please enter the 6-digit code.")
    normalized = require_us_phone(phone)
    now = _utc_now()

    preference = await session.get(UserPreference, user_id)
    if _lockout_active(preference, now):
        raise LockoutError(MSG_LOCKED_OUT)

    verification = (
        await session.execute(
            select(PhoneVerification)
            .where(
                PhoneVerification.user_id == user_id,
                PhoneVerification.phone == normalized,
                PhoneVerification.verified.is_(False),
            )
            .order_by(PhoneVerification.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if verification is None:
        raise VerificationError(MSG_NO_SESSION)
    if verification.expires_at <= now:
        raise VerificationError(MSG_EXPIRED)
    if verification.attempts >= settings.otp_max_attempts_per_session:
        raise VerificationError(MSG_SESSION_EXHAUSTED)

    if otp_matches(code.strip(), verification.otp_hash):
        verification.verified = True
        verification.updated_at = now
        preference = await _get_or_create_preferences(session=session, user_id=user_id)
        preference.phone_verified = True
        preference.phone_verification_status = "verified"
        preference.sms_lockout_until = None
        if pin_number:
            preference.pin_number = pin_number
        await session.commit()
        logger.info("otp_verified user_id=%s session_id=%s", user_id, verification.session_id)
        return VerifyOutcome(verified=True, message=MSG_VERIFIED)

    verification.attempts = int(verification.attempts or 0) + 1
    verification.updated_at = now
    await session.flush()
    total_failed = int(
        await session.scalar(
            select(func.coalesce(func.sum(PhoneVerification.attempts), 0)).where(
                PhoneVerification.user_id == user_id,
                PhoneVerification.verified.is_(False),
            )
        )
        or 0
    )
    if total_failed >= settings.otp_max_total_failed_attempts:
        preference = await _get_or_create_preferences(session=session, user_id=user_id)
        preference.sms_lockout_until = now + timedelta(hours=settings.otp_lockout_hours)
        preference.phone_verification_status = "locked_out"
        await session.commit()
        logger.warning("otp_lockout user_id=%s total_failed=%s", user_id, total_failed)
        notified = await _notify_division_admins(
            session=session,
            user_id=user_id,
            phone=normalized,
            total_failed=total_failed,
        )
        await get_event_bus().publish(
            PHONE_LOCKED_OUT,
            {"user_id": user_id, "failed_attempts": total_failed, "admins_notified": notified},
        )
        raise LockoutError(MSG_LOCKOUT_TRIGGERED)

    await session.commit()
    remaining = settings.otp_max_attempts_per_session - verification.attempts
    if remaining <= 0:
        raise VerificationError(MSG_SESSION_EXHAUSTED)
    raise VerificationError(
        "Invalid OTP. Please double-check the code and try again. "
        f"{remaining} attempt(s) remaining for this session."
    )
