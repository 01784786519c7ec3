from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from arq.connections import RedisSettings

from unionnotify.core.config import get_settings
from unionnotify.core.logging import configure_logging
from unionnotify.persistence.db import SessionLocal
from unionnotify.services.delivery.worker import run_delivery_cycle
from unionnotify.services.scheduler import run_meeting_reminders

logger = logging.getLogger(__name__)


async def drain_deliveries(ctx) -> dict[str, Any]:
    # One drain of both lanes; overlapping calls skip on the drain lock.
    return await run_delivery_cycle()


async def send_meeting_reminders(ctx) -> dict[str, Any]:
    async with SessionLocal() as session:
        return await run_meeting_reminders(session=session)


async def _poll_loop(name: str, job: Callable[[Any], Awaitable[Any]], interval_s: int, ctx) -> None:
    # Run a job on a fixed cadence so the queue drains even when no API call triggers it.
    interval_s = max(1, int(interval_s))
    while True:
        try:
            await job(ctx)
        except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in worker logs.
            logger.exception("%s loop iteration failed", name)
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    settings = get_settings()
    ctx["drain_task"] = asyncio.create_task(
        _poll_loop("delivery drain", drain_deliveries, settings.worker_drain_interval_s, ctx)
    )
    ctx["reminder_task"] = asyncio.create_task(
        _poll_loop("meeting reminder", send_meeting_reminders, settings.worker_reminder_interval_s, ctx)
    )


async def _shutdown(ctx) -> None:
    # Cancel poll tasks on shutdown to avoid dangling coroutines in tests and local runs.
    for key in ("drain_task", "reminder_task"):
        task = ctx.get(key)
        if task:
            task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url or "redis://localhost:6379/0")
    queue_name = settings.delivery_queue_name
    functions = [drain_deliveries, send_meeting_reminders]
    on_startup = _startup
    on_shutdown = _shutdown
