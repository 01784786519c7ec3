from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.core.config import get_settings
from unionnotify.core.errors import BudgetExceededError, IneligibleRecipientError
from unionnotify.domain.models import Member, SmsDelivery, UserPreference
from unionnotify.services.budget import check_budget
from unionnotify.services.delivery.store import enqueue_sms


logger = logging.getLogger(__name__)

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"
PRIORITY_EMERGENCY = "emergency"
PRIORITY_OTP = "otp"

# Priorities that still go out to members who replied STOP.
_OPT_OUT_EXEMPT = {PRIORITY_EMERGENCY, PRIORITY_OTP}


@dataclass(frozen=True)
class SmsEligibility:
    allowed: bool
    reason: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_sms_eligibility(
    preference: UserPreference | None,
    *,
    priority: str,
    now: datetime,
    require_verified: bool = True,
) -> SmsEligibility:
    """Decide whether one SMS may go to a member.

    An active lockout always refuses. Opt-out refuses except for emergency and
    OTP messages. A verified phone is required for notification SMS at enqueue
    time; OTP messages are how a phone becomes verified, so they skip it.
    """
    if preference is not None and preference.sms_lockout_until is not None and preference.sms_lockout_until > now:
        return SmsEligibility(False, "SMS lockout active")
    if preference is not None and preference.sms_opt_out and priority not in _OPT_OUT_EXEMPT:
        return SmsEligibility(False, "Recipient opted out of SMS")
    if require_verified and priority != PRIORITY_OTP:
        if preference is None or not preference.phone_verified:
            return SmsEligibility(False, "Phone number not verified")
    return SmsEligibility(True)


async def check_sms_eligibility(
    *,
    session: AsyncSession,
    user_id: str,
    priority: str = PRIORITY_NORMAL,
    require_verified: bool = True,
    now: datetime | None = None,
) -> SmsEligibility:
    preference = await session.get(UserPreference, user_id)
    return evaluate_sms_eligibility(
        preference,
        priority=priority,
        now=now or _utc_now(),
        require_verified=require_verified,
    )


async def enqueue_notification_sms(
    *,
    session: AsyncSession,
    recipient_id: str,
    content: str,
    priority: str = PRIORITY_NORMAL,
    phone_number: str | None = None,
    message_id: str | None = None,
    dedupe_key: str | None = None,
) -> tuple[SmsDelivery, bool]:
    """Gate and queue a notification SMS.

    Raises ``IneligibleRecipientError`` or ``BudgetExceededError`` instead of
    inserting when the member or the organization budget cannot take it.
    Emergency messages skip the budget gate.
    """
    eligibility = await check_sms_eligibility(session=session, user_id=recipient_id, priority=priority)
    if not eligibility.allowed:
        logger.info("sms_enqueue_rejected recipient_id=%s reason=%s", recipient_id, eligibility.reason)
        raise IneligibleRecipientError(eligibility.reason or "Recipient cannot receive SMS")
    if phone_number is None:
        member = await session.get(Member, recipient_id)
        phone_number = member.phone_number if member is not None else None
    if not phone_number:
        raise IneligibleRecipientError("No phone number on file")
    if get_settings().sms_budget_enforced and priority != PRIORITY_EMERGENCY:
        decision = await check_budget(session=session)
        if not decision.allowed:
            logger.warning("sms_enqueue_budget_blocked recipient_id=%s reason=%s", recipient_id, decision.reason)
            raise BudgetExceededError(decision.reason or "SMS budget exceeded")
    return await enqueue_sms(
        session=session,
        recipient_id=recipient_id,
        phone_number=phone_number,
        content=content,
        priority=priority,
        message_id=message_id,
        dedupe_key=dedupe_key,
    )
