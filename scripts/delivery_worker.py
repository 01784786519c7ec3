from __future__ import annotations

import asyncio
import logging

from unionnotify.core.config import get_settings
from unionnotify.core.logging import configure_logging
from unionnotify.services.delivery.worker import run_delivery_cycle

logger = logging.getLogger("unionnotify.scripts.delivery_worker")


async def _main() -> None:
    # Standalone drain loop for hosts that run without the arq worker.
    configure_logging()
    interval_s = max(1, int(get_settings().worker_drain_interval_s))
    while True:
        try:
            await run_delivery_cycle()
        except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in logs.
            logger.exception("delivery drain iteration failed")
        await asyncio.sleep(interval_s)


if __name__ == "__main__":
    asyncio.run(_main())
