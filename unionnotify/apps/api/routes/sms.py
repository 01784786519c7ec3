from __future__ import annotations

from decimal import Decimal
import logging
from typing import Literal

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.apps.api.deps import get_db, require_service_token
from unionnotify.core.config import get_settings
from unionnotify.providers.sms.twilio import verify_webhook_signature
from unionnotify.services.budget import get_sms_cost_stats, update_budget_limits
from unionnotify.services.emergency import broadcast_emergency_sms
from unionnotify.services.inbound_sms import EMPTY_TWIML, handle_inbound_sms
from unionnotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sms", tags=["sms"])


class EmergencyRequest(BaseModel):
    admin_id: str
    message: str = Field(min_length=1)
    target_users: Literal["all", "division", "specific"] = "division"
    division_id: str | None = None
    specific_user_ids: list[str] | None = None


class BudgetUpdateRequest(BaseModel):
    daily_budget: Decimal | None = Field(default=None, ge=0)
    monthly_budget: Decimal | None = Field(default=None, ge=0)


def _twiml() -> Response:
    return Response(content=EMPTY_TWIML, media_type="application/xml", status_code=200)


@router.post("/webhook", include_in_schema=False)
async def inbound_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> Response:
    # The carrier retries anything but a 200, so every outcome acknowledges.
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    settings = get_settings()
    if settings.twilio_validate_webhooks:
        url = settings.twilio_webhook_url or str(request.url)
        if not verify_webhook_signature(
            url, params, request.headers.get("X-Twilio-Signature"), settings.twilio_auth_token
        ):
            increment_counter("sms_webhook_rejected_total")
            logger.warning("sms_webhook_bad_signature from=%s", params.get("From"))
            return _twiml()
    from_number = params.get("From", "")
    body = params.get("Body", "")
    if not from_number or not body:
        logger.info("sms_webhook_missing_fields")
        return _twiml()
    try:
        await handle_inbound_sms(session=db, from_number=from_number, body=body)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("sms_webhook_failed from=%s", from_number)
    return _twiml()


@router.get("/cost-stats", dependencies=[Depends(require_service_token)])
async def cost_stats(db: AsyncSession = Depends(get_db)) -> dict:
    return await get_sms_cost_stats(session=db)


@router.put("/budget", dependencies=[Depends(require_service_token)])
async def update_budget(payload: BudgetUpdateRequest, db: AsyncSession = Depends(get_db)) -> dict:
    snapshot = await update_budget_limits(
        session=db,
        daily_budget=payload.daily_budget,
        monthly_budget=payload.monthly_budget,
    )
    return {
        "success": True,
        "daily_budget": str(snapshot.daily_budget),
        "monthly_budget": str(snapshot.monthly_budget),
        "daily_spend": str(snapshot.daily_spend),
        "monthly_spend": str(snapshot.monthly_spend),
    }


@router.post("/emergency", dependencies=[Depends(require_service_token)])
async def emergency_broadcast(payload: EmergencyRequest, db: AsyncSession = Depends(get_db)) -> dict:
    result = await broadcast_emergency_sms(
        session=db,
        admin_id=payload.admin_id,
        message=payload.message,
        target=payload.target_users,
        division_id=payload.division_id,
        user_ids=payload.specific_user_ids,
    )
    return {
        "success": True,
        "broadcast_id": result.broadcast_id,
        "targeted": result.targeted,
        "queued": result.queued,
        "skipped": result.skipped,
        "skipped_reasons": result.skipped_reasons,
    }
