from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.apps.api.deps import get_db
from unionnotify.services.verification import issue_otp, verify_otp


router = APIRouter(prefix="/verification", tags=["verification"])


class SendOtpRequest(BaseModel):
    # Fields default to empty so missing ones get the same 400 message as blank ones.
    phone: str = ""
    user_id: str = ""
    pin_number: str = ""


class SendOtpResponse(BaseModel):
    success: bool = True
    message: str
    session_id: str
    expires_in_seconds: int


class VerifyOtpRequest(BaseModel):
    phone: str = ""
    user_id: str = ""
    code: str = ""
    pin_number: str | None = None


class VerifyOtpResponse(BaseModel):
    success: bool = True
    message: str
    verified: bool


@router.post("/send-otp", response_model=SendOtpResponse)
async def send_otp(payload: SendOtpRequest, db: AsyncSession = Depends(get_db)) -> dict:
    issued = await issue_otp(
        session=db,
        user_id=payload.user_id,
        phone=payload.phone,
        pin_number=payload.pin_number,
    )
    return {
        "success": True,
        "message": issued.message,
        "session_id": issued.session_id,
        "expires_in_seconds": issued.expires_in_seconds,
    }


@router.post("/verify-otp", response_model=VerifyOtpResponse)
async def verify_otp_code(payload: VerifyOtpRequest, db: AsyncSession = Depends(get_db)) -> dict:
    outcome = await verify_otp(
        session=db,
        user_id=payload.user_id,
        phone=payload.phone,
        code=payload.code,
        pin_number=payload.pin_number,
    )
    return {"success": True, "message": outcome.message, "verified": outcome.verified}
