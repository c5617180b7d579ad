"""Click retention timer.

Runs inside the API process when CLICK_RETENTION_HOURS is set (the ARQ
worker schedules the same purge as a cron job). Deletes use a timestamp
predicate only, so they never conflict with concurrent inserts or reads.
"""

import asyncio
import logging

from ..services.click_store import purge_expired_clicks
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)


def purge_once(context) -> int:
    with context.session() as db:
        return purge_expired_clicks(db, context.settings.CLICK_RETENTION_HOURS)


async def run_click_cleanup_loop(context) -> None:
    """Purge expired clicks every CLICK_CLEANUP_INTERVAL_SECONDS until cancelled."""
    interval = max(context.settings.CLICK_CLEANUP_INTERVAL_SECONDS, 1)
    logger.info(
        f"[CLICK_CLEANUP] Started (retention={context.settings.CLICK_RETENTION_HOURS}h, every {interval}s)"
    )
    while True:
        try:
            await asyncio.to_thread(purge_once, context)
        except Exception as e:
            logger.exception(f"[CLICK_CLEANUP] Purge failed: {e}")
            capture_exception(e, extra={"operation": "click_cleanup"})
        await asyncio.sleep(interval)
