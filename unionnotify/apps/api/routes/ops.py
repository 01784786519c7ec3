from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.apps.api.deps import get_db, require_service_token
from unionnotify.domain.models import PushDelivery, SmsDelivery
from unionnotify.persistence.db import pool_stats
from unionnotify.services.resilience import get_circuit_breaker_state
from unionnotify.services.telemetry import (
    counters_snapshot,
    external_call_stats,
    gauges_snapshot,
    p95_latency,
)


router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_service_token)])

_BREAKERS = ("push.expo", "sms.twilio")


def _db_error(message: str) -> HTTPException:
    return HTTPException(status_code=503, detail={"code": "DB_UNAVAILABLE", "message": message})


async def _status_counts(db: AsyncSession, model: type[PushDelivery] | type[SmsDelivery]) -> dict[str, int]:
    rows = (await db.execute(select(model.status, func.count(model.id)).group_by(model.status))).all()
    return {status: int(count or 0) for status, count in rows}


@router.get("/metrics")
async def ops_metrics(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    # JSON metrics for dashboards: queue depth by status plus in-process telemetry.
    try:
        push_counts = await _status_counts(db, PushDelivery)
        sms_counts = await _status_counts(db, SmsDelivery)
    except SQLAlchemyError as exc:
        raise _db_error("Database error while aggregating delivery metrics") from exc
    breakers = {name: await get_circuit_breaker_state(name) for name in _BREAKERS}
    return {
        "queues": {"push": push_counts, "sms": sms_counts},
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "latency": {"p95_ms_5m": p95_latency(300)},
        "external_calls": external_call_stats(300),
        "circuit_breakers": breakers,
        "db_pool": pool_stats(),
    }
