from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from unionnotify.core.config import get_settings
from unionnotify.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_service_token(authorization: str | None = Header(default=None)) -> None:
    """Guard internal routes with the shared service bearer token.

    With no ``SERVICE_API_TOKEN`` configured the guard is open, which is how
    local development and the test suite run.
    """
    expected = get_settings().service_api_token
    if not expected:
        return
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _unauthorized("Missing bearer token")
    presented = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(presented, expected):
        raise _unauthorized("Invalid bearer token")
