from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.apps.api.deps import get_db, require_service_token
from unionnotify.services.scheduler import run_meeting_reminders


router = APIRouter(prefix="/scheduler", tags=["scheduler"], dependencies=[Depends(require_service_token)])


@router.post("/meeting-reminders")
async def meeting_reminders(db: AsyncSession = Depends(get_db)) -> dict:
    # Same scan the worker loop runs, triggered on demand.
    return await run_meeting_reminders(session=db)
