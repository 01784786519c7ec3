from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.domain.models import Member, PhoneVerification, UserPreference
from unionnotify.services.phone import normalize_phone
from unionnotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OPT_OUT_KEYWORDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
OPT_IN_KEYWORDS = frozenset({"START", "YES", "UNSTOP"})
HELP_KEYWORDS = frozenset({"HELP", "INFO"})

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


@dataclass(frozen=True)
class InboundResult:
    action: str
    user_id: str | None = None


def classify_keyword(body: str) -> str:
    keyword = (body or "").strip().upper()
    if keyword in OPT_OUT_KEYWORDS:
        return "opt_out"
    if keyword in OPT_IN_KEYWORDS:
        return "opt_in"
    if keyword in HELP_KEYWORDS:
        return "help"
    return "ignored"


async def _resolve_user_id(*, session: AsyncSession, phone: str) -> str | None:
    # Prefer the user who verified this number; fall back to the member roster.
    user_id = (
        await session.execute(
            select(PhoneVerification.user_id)
            .where(PhoneVerification.phone == phone, PhoneVerification.verified.is_(True))
            .order_by(PhoneVerification.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if user_id is not None:
        return user_id
    return (
        await session.execute(select(Member.id).where(Member.phone_number == phone).limit(1))
    ).scalar_one_or_none()


async def handle_inbound_sms(*, session: AsyncSession, from_number: str, body: str) -> InboundResult:
    """Apply carrier keywords (STOP, START, HELP) sent by a member.

    Unknown numbers and unrecognised text are logged and otherwise ignored so
    the transport always gets an acknowledgement.
    """
    action = classify_keyword(body)
    phone = normalize_phone(from_number)
    user_id = await _resolve_user_id(session=session, phone=phone)
    if user_id is None:
        logger.info("sms_inbound_unknown_phone phone=%s action=%s", phone, action)
        return InboundResult(action="unknown_phone")

    increment_counter(f"sms_inbound_{action}_total")
    if action in ("opt_out", "opt_in"):
        preference = await session.get(UserPreference, user_id)
        if preference is None:
            preference = UserPreference(user_id=user_id, phone_verified=False, sms_opt_out=False)
            session.add(preference)
        if action == "opt_out":
            preference.sms_opt_out = True
            preference.contact_preference = "in_app"
        else:
            preference.sms_opt_out = False
        await session.commit()
        logger.info("sms_inbound_%s user_id=%s phone=%s", action, user_id, phone)
    elif action == "help":
        logger.info("sms_inbound_help user_id=%s phone=%s", user_id, phone)
    else:
        logger.info("sms_inbound_unhandled user_id=%s phone=%s", user_id, phone)
    return InboundResult(action=action, user_id=user_id)
