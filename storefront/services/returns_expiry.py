"""
Periodic return expiry sweep.

Runs as a long-lived background task started from main.py when
RETURNS_EXPIRY_INTERVAL_SECONDS > 0. The same sweep is available from the
admin returns endpoint and from cli/expire_returns.py for cron.
"""
from __future__ import annotations

import asyncio
import logging

from storefront.config import get_settings
from storefront.database import get_db_ctx
from storefront.services.lifecycle import expire_overdue_returns

logger = logging.getLogger(__name__)
settings = get_settings()


async def run_once() -> int:
    async with get_db_ctx() as session:
        return await expire_overdue_returns(session)


async def worker() -> None:
    interval = settings.returns_expiry_interval_seconds
    logger.info("Return expiry worker started (every %.0f s)", interval)
    while True:
        try:
            expired = await run_once()
            if expired:
                logger.info("Return expiry sweep: %d returns expired", expired)
        except Exception as exc:
            logger.exception("Unexpected error in return expiry worker: %s", exc)
        await asyncio.sleep(interval)
