from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.apps.api.deps import get_db, require_service_token
from unionnotify.core.config import get_settings
from unionnotify.services.delivery.store import (
    delivery_to_dict,
    enqueue_push,
    get_delivery,
    list_stuck_pushes,
    retry_failed_push,
)
from unionnotify.services.delivery.worker import run_delivery_cycle
from unionnotify.services.eligibility import PRIORITY_NORMAL, enqueue_notification_sms


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deliveries", tags=["deliveries"], dependencies=[Depends(require_service_token)])


class PushEnqueueRequest(BaseModel):
    user_id: str
    push_token: str
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    notification_id: str | None = None
    max_attempts: int | None = Field(default=None, ge=1)
    dedupe_key: str | None = None


class SmsEnqueueRequest(BaseModel):
    recipient_id: str
    content: str = Field(min_length=1)
    priority: Literal["normal", "high", "emergency"] = PRIORITY_NORMAL
    phone_number: str | None = None
    message_id: str | None = None
    dedupe_key: str | None = None


class EnqueueResponse(BaseModel):
    success: bool = True
    id: str
    deduplicated: bool


class ProcessResponse(BaseModel):
    success: bool = True
    status: str
    processed: int
    failures: int


@router.post("/push", response_model=EnqueueResponse)
async def enqueue_push_delivery(payload: PushEnqueueRequest, db: AsyncSession = Depends(get_db)) -> dict:
    row, created = await enqueue_push(
        session=db,
        user_id=payload.user_id,
        push_token=payload.push_token,
        title=payload.title,
        body=payload.body,
        data=payload.data,
        notification_id=payload.notification_id,
        max_attempts=payload.max_attempts,
        dedupe_key=payload.dedupe_key,
    )
    return {"success": True, "id": row.id, "deduplicated": not created}


@router.post("/sms", response_model=EnqueueResponse)
async def enqueue_sms_delivery(payload: SmsEnqueueRequest, db: AsyncSession = Depends(get_db)) -> dict:
    # Eligibility and budget errors surface as 400 through the domain error handler.
    row, created = await enqueue_notification_sms(
        session=db,
        recipient_id=payload.recipient_id,
        content=payload.content,
        priority=payload.priority,
        phone_number=payload.phone_number,
        message_id=payload.message_id,
        dedupe_key=payload.dedupe_key,
    )
    return {"success": True, "id": row.id, "deduplicated": not created}


@router.post("/process", response_model=ProcessResponse)
async def process_deliveries() -> Any:
    try:
        summary = await run_delivery_cycle()
    except Exception as exc:  # noqa: BLE001 - the worker contract answers 500 with a bare error body.
        logger.exception("delivery_process_failed")
        return JSONResponse(content={"error": str(exc) or exc.__class__.__name__}, status_code=500)
    return {
        "success": True,
        "status": summary["status"],
        "processed": summary["processed"],
        "failures": summary["failures"],
    }


@router.get("/stuck")
async def stuck_deliveries(
    older_than_hours: int | None = Query(default=None, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    hours = older_than_hours if older_than_hours is not None else get_settings().stuck_delivery_threshold_hours
    rows = await list_stuck_pushes(session=db, older_than_hours=hours, limit=limit)
    return {"items": [delivery_to_dict(row) for row in rows], "older_than_hours": hours}


@router.post("/push/{delivery_id}/retry")
async def retry_push_delivery(delivery_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    row = await retry_failed_push(session=db, record_id=delivery_id)
    return {"success": True, "delivery": delivery_to_dict(row)}


@router.get("/{channel}/{delivery_id}")
async def delivery_status(
    channel: Literal["push", "sms"],
    delivery_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await get_delivery(session=db, channel=channel, record_id=delivery_id)
    return delivery_to_dict(row)
