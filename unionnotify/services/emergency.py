from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Literal
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.core.errors import (
    BudgetExceededError,
    ForbiddenError,
    IneligibleRecipientError,
    InvalidPhoneError,
    VerificationError,
)
from unionnotify.domain.models import Member
from unionnotify.services.eligibility import PRIORITY_EMERGENCY, enqueue_notification_sms


logger = logging.getLogger(__name__)

TargetScope = Literal["all", "division", "specific"]

SYSTEM_ADMIN_ROLES = frozenset({"admin", "union_admin", "application_admin"})
DIVISION_ADMIN_ROLE = "division_admin"


@dataclass
class BroadcastResult:
    broadcast_id: str
    targeted: int = 0
    queued: int = 0
    skipped: int = 0
    skipped_reasons: dict[str, int] = field(default_factory=dict)


async def broadcast_emergency_sms(
    *,
    session: AsyncSession,
    admin_id: str,
    message: str,
    target: TargetScope = "division",
    division_id: str | None = None,
    user_ids: list[str] | None = None,
) -> BroadcastResult:
    """Queue an emergency SMS to every reachable active member in scope.

    System admins may target everyone, a division, or a list of members.
    Division admins are always confined to their own division. Opt-out and
    the budget gate are bypassed for emergency priority; lockout and phone
    verification are not.
    """
    if not message or not message.strip():
        raise VerificationError("Missing required field: message")
    admin = await session.get(Member, admin_id)
    if admin is None:
        raise ForbiddenError("Admin verification failed")
    is_system_admin = admin.role in SYSTEM_ADMIN_ROLES
    if not is_system_admin and admin.role != DIVISION_ADMIN_ROLE:
        raise ForbiddenError("Insufficient permissions for emergency SMS")

    stmt = select(Member).where(Member.status == "active", Member.phone_number.is_not(None))
    if not is_system_admin:
        if division_id is not None and division_id != admin.division_id:
            raise ForbiddenError("Division admins can only message their own division")
        stmt = stmt.where(Member.division_id == admin.division_id)
    elif target == "division":
        stmt = stmt.where(Member.division_id == (division_id or admin.division_id))
    elif target == "specific":
        if not user_ids:
            raise VerificationError("specific_user_ids is required for a specific broadcast")
        stmt = stmt.where(Member.id.in_(user_ids))
    members = (await session.execute(stmt.order_by(Member.id))).scalars().all()
    if not members:
        raise IneligibleRecipientError("No eligible users found for emergency SMS")

    result = BroadcastResult(broadcast_id=uuid4().hex, targeted=len(members))
    for member in members:
        try:
            await enqueue_notification_sms(
                session=session,
                recipient_id=member.id,
                phone_number=member.phone_number,
                content=message,
                priority=PRIORITY_EMERGENCY,
                message_id=f"emergency_{result.broadcast_id}_{member.id}",
                dedupe_key=f"emergency:{result.broadcast_id}:{member.id}",
            )
        except (IneligibleRecipientError, BudgetExceededError, InvalidPhoneError) as exc:
            result.skipped += 1
            reason = str(exc)
            result.skipped_reasons[reason] = result.skipped_reasons.get(reason, 0) + 1
            continue
        result.queued += 1
    logger.warning(
        "emergency_broadcast admin_id=%s target=%s queued=%s skipped=%s",
        admin_id,
        target,
        result.queued,
        result.skipped,
    )
    return result
