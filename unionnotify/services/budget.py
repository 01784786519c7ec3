from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Any

from sqlalchemy import Numeric, case, func, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.core.config import get_settings
from unionnotify.domain.models import Division, Member, OrganizationSmsBudget, SmsDelivery


logger = logging.getLogger(__name__)

BUDGET_ROW_ID = 1
_CENT = Decimal("0.0001")


@dataclass(frozen=True)
class BudgetSnapshot:
    daily_budget: Decimal
    monthly_budget: Decimal
    daily_spend: Decimal
    monthly_spend: Decimal
    last_daily_reset: str | None
    last_monthly_reset: str | None


@dataclass(frozen=True)
class BudgetDecision:
    # allowed=False only when a limit is already reached for the current period.
    allowed: bool
    reason: str | None
    snapshot: BudgetSnapshot


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Any) -> Decimal:
    if value is None:
        return Decimal("0").quantize(_CENT)
    return Decimal(str(value)).quantize(_CENT)


def period_markers(now: datetime) -> tuple[str, str]:
    # Calendar periods are evaluated in UTC.
    current = now.astimezone(timezone.utc)
    return current.date().isoformat(), current.strftime("%Y-%m")


async def ensure_budget_row(*, session: AsyncSession) -> OrganizationSmsBudget:
    row = await session.get(OrganizationSmsBudget, BUDGET_ROW_ID)
    if row is not None:
        return row
    settings = get_settings()
    row = OrganizationSmsBudget(
        id=BUDGET_ROW_ID,
        daily_budget=_money(settings.sms_default_daily_budget),
        monthly_budget=_money(settings.sms_default_monthly_budget),
        current_daily_spend=Decimal("0"),
        current_monthly_spend=Decimal("0"),
        last_daily_reset=None,
        last_monthly_reset=None,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        # Another worker created the singleton first.
        await session.rollback()
        row = await session.get(OrganizationSmsBudget, BUDGET_ROW_ID)
    return row


def _snapshot(row: OrganizationSmsBudget, *, now: datetime) -> BudgetSnapshot:
    # Spend from a stale period reads as zero until the next send resets it.
    today, month = period_markers(now)
    return BudgetSnapshot(
        daily_budget=_money(row.daily_budget),
        monthly_budget=_money(row.monthly_budget),
        daily_spend=_money(row.current_daily_spend) if row.last_daily_reset == today else _money(0),
        monthly_spend=_money(row.current_monthly_spend) if row.last_monthly_reset == month else _money(0),
        last_daily_reset=row.last_daily_reset,
        last_monthly_reset=row.last_monthly_reset,
    )


async def apply_spend(
    *,
    session: AsyncSession,
    cost: Decimal,
    now: datetime | None = None,
) -> BudgetSnapshot:
    """Add one SMS cost to the daily and monthly counters.

    Runs as a single UPDATE: a counter whose period marker no longer matches
    is reset to ``cost``, otherwise ``cost`` is added server-side. Concurrent
    callers therefore never lose an increment.
    """
    now = now or _utc_now()
    today, month = period_markers(now)
    await ensure_budget_row(session=session)
    amount = literal(_money(cost), Numeric(12, 4))
    await session.execute(
        update(OrganizationSmsBudget)
        .where(OrganizationSmsBudget.id == BUDGET_ROW_ID)
        .values(
            current_daily_spend=case(
                (OrganizationSmsBudget.last_daily_reset == today, OrganizationSmsBudget.current_daily_spend + amount),
                else_=amount,
            ),
            last_daily_reset=today,
            current_monthly_spend=case(
                (
                    OrganizationSmsBudget.last_monthly_reset == month,
                    OrganizationSmsBudget.current_monthly_spend + amount,
                ),
                else_=amount,
            ),
            last_monthly_reset=month,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    row = (
        await session.execute(
            select(OrganizationSmsBudget)
            .where(OrganizationSmsBudget.id == BUDGET_ROW_ID)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    snapshot = _snapshot(row, now=now)
    logger.info(
        "sms_budget_spend cost=%s daily_spend=%s monthly_spend=%s",
        _money(cost),
        snapshot.daily_spend,
        snapshot.monthly_spend,
    )
    return snapshot


async def get_budget_snapshot(*, session: AsyncSession, now: datetime | None = None) -> BudgetSnapshot:
    row = await ensure_budget_row(session=session)
    return _snapshot(row, now=now or _utc_now())


async def check_budget(*, session: AsyncSession, now: datetime | None = None) -> BudgetDecision:
    # Advisory unless sms_budget_enforced is on; callers decide whether to refuse.
    snapshot = await get_budget_snapshot(session=session, now=now)
    if snapshot.daily_budget > 0 and snapshot.daily_spend >= snapshot.daily_budget:
        return BudgetDecision(allowed=False, reason="Daily SMS budget exceeded", snapshot=snapshot)
    if snapshot.monthly_budget > 0 and snapshot.monthly_spend >= snapshot.monthly_budget:
        return BudgetDecision(allowed=False, reason="Monthly SMS budget exceeded", snapshot=snapshot)
    return BudgetDecision(allowed=True, reason=None, snapshot=snapshot)


async def update_budget_limits(
    *,
    session: AsyncSession,
    daily_budget: Decimal | None = None,
    monthly_budget: Decimal | None = None,
) -> BudgetSnapshot:
    row = await ensure_budget_row(session=session)
    if daily_budget is not None:
        row.daily_budget = _money(daily_budget)
    if monthly_budget is not None:
        row.monthly_budget = _money(monthly_budget)
    await session.commit()
    return _snapshot(row, now=_utc_now())


def _percent(spend: Decimal, budget: Decimal) -> float:
    if budget <= 0:
        return 0.0
    return round(float(spend / budget * 100), 2)


async def _window_totals(*, session: AsyncSession, since: datetime) -> dict[str, Any]:
    cost, count = (
        await session.execute(
            select(func.coalesce(func.sum(SmsDelivery.cost_amount), 0), func.count(SmsDelivery.id)).where(
                SmsDelivery.status == "sent",
                SmsDelivery.sent_at >= since,
            )
        )
    ).one()
    return {"cost": str(_money(cost)), "count": int(count or 0)}


async def get_sms_cost_stats(*, session: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """Spend report for the SMS cost dashboard.

    Windows are UTC: today since midnight, the trailing seven days, and the
    current calendar month. Only sent messages count.
    """
    now = now or _utc_now()
    day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    week_start = now - timedelta(days=7)
    month_start = day_start.replace(day=1)

    top_rows = (
        await session.execute(
            select(
                SmsDelivery.recipient_id,
                Member.first_name,
                Member.last_name,
                func.coalesce(func.sum(SmsDelivery.cost_amount), 0).label("cost"),
                func.count(SmsDelivery.id).label("count"),
            )
            .join(Member, Member.id == SmsDelivery.recipient_id, isouter=True)
            .where(SmsDelivery.status == "sent", SmsDelivery.sent_at >= month_start)
            .group_by(SmsDelivery.recipient_id, Member.first_name, Member.last_name)
            .order_by(func.sum(SmsDelivery.cost_amount).desc())
            .limit(10)
        )
    ).all()
    division_rows = (
        await session.execute(
            select(
                Division.name,
                func.coalesce(func.sum(SmsDelivery.cost_amount), 0).label("cost"),
                func.count(SmsDelivery.id).label("count"),
            )
            .select_from(SmsDelivery)
            .join(Member, Member.id == SmsDelivery.recipient_id)
            .join(Division, Division.id == Member.division_id)
            .where(SmsDelivery.status == "sent", SmsDelivery.sent_at >= month_start)
            .group_by(Division.name)
            .order_by(Division.name.asc())
        )
    ).all()

    snapshot = await get_budget_snapshot(session=session, now=now)
    return {
        "daily": await _window_totals(session=session, since=day_start),
        "weekly": await _window_totals(session=session, since=week_start),
        "monthly": await _window_totals(session=session, since=month_start),
        "top_users": [
            {
                "user_id": row.recipient_id,
                "name": " ".join(part for part in (row.first_name, row.last_name) if part) or None,
                "cost": str(_money(row.cost)),
                "count": int(row.count or 0),
            }
            for row in top_rows
        ],
        "budget": {
            "daily_budget": str(snapshot.daily_budget),
            "monthly_budget": str(snapshot.monthly_budget),
            "daily_spend": str(snapshot.daily_spend),
            "monthly_spend": str(snapshot.monthly_spend),
            "daily_percent_used": _percent(snapshot.daily_spend, snapshot.daily_budget),
            "monthly_percent_used": _percent(snapshot.monthly_spend, snapshot.monthly_budget),
        },
        "divisions": [
            {"division": row.name, "cost": str(_money(row.cost)), "count": int(row.count or 0)}
            for row in division_rows
        ],
    }
