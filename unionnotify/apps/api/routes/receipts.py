from __future__ import annotations

from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.apps.api.deps import get_db, require_service_token
from unionnotify.services.delivery.receipts import DeviceInfo, receipt_stats, record_push_receipt


# Receipt reporting is open to devices; stats need the service token.
router = APIRouter(prefix="/deliveries/push/receipts", tags=["deliveries"])


class DeviceInfoPayload(BaseModel):
    platform: str | None = None
    device_id: str | None = None
    app_version: str | None = None


class ReceiptRequest(BaseModel):
    message_id: str
    delivery_status: Literal["delivered", "opened", "failed"]
    user_id: str | None = None
    push_token: str | None = None
    error_message: str | None = None
    device_info: DeviceInfoPayload | None = None


class ReceiptResponse(BaseModel):
    success: bool = True
    action: Literal["created", "updated"]
    count: int


@router.post("", response_model=ReceiptResponse)
async def record_receipt(payload: ReceiptRequest, db: AsyncSession = Depends(get_db)) -> dict:
    device = payload.device_info or DeviceInfoPayload()
    outcome = await record_push_receipt(
        session=db,
        message_id=payload.message_id,
        status=payload.delivery_status,
        user_id=payload.user_id,
        push_token=payload.push_token,
        error_message=payload.error_message,
        device=DeviceInfo(platform=device.platform, device_id=device.device_id, app_version=device.app_version),
    )
    return {"success": True, "action": outcome.action, "count": outcome.count}


@router.get("/stats", dependencies=[Depends(require_service_token)])
async def receipt_daily_stats(
    day: date | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await receipt_stats(session=db, day=day)
