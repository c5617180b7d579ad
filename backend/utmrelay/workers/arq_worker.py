"""ARQ async worker - queued dispatches and click retention.

WHAT:
    Processes dispatch jobs enqueued by the webhook routes and runs the
    click retention purge on a cron schedule.

WHY:
    - Outbound conversion calls leave the API process entirely
    - A job that dies mid-dispatch is safe to retry: the dispatch log
      refuses a second successful send

USAGE:
    # Start worker
    arq utmrelay.workers.arq_worker.WorkerSettings

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - utmrelay/services/conversion_dispatcher.py
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict

from arq import cron

from ..deps import get_settings
from ..services.sale_pipeline import SalePipeline
from ..state import build_context
from ..telemetry import capture_exception, init_sentry
from ..utils.env import load_env_file
from .arq_enqueue import QUEUE_NAME, get_redis_settings
from .click_cleanup import purge_once

logger = logging.getLogger(__name__)


# =============================================================================
# JOBS
# =============================================================================

async def dispatch_sale_job(ctx: Dict, sale_code: str, test_mode: bool = False) -> Dict:
    """Dispatch a recorded sale to every destination."""
    context = ctx["relay"]
    try:
        results = await SalePipeline(context).dispatch_sale(sale_code, test_mode=test_mode)
    except Exception as e:
        logger.exception("[ARQ] Dispatch failed for sale %s: %s", sale_code, e)
        capture_exception(e, extra={"operation": "dispatch_sale_job", "sale_code": sale_code})
        raise

    return {"sale_code": sale_code, "results": [r.to_dict() for r in results]}


async def scheduled_click_cleanup(ctx: Dict) -> Dict:
    """Scheduled job: delete clicks older than CLICK_RETENTION_HOURS.

    WHEN:
        Every hour at minute 5 (no-op when retention is unset).
    """
    context = ctx["relay"]
    try:
        deleted = await asyncio.to_thread(purge_once, context)
    except Exception as e:
        logger.exception("[ARQ] Click cleanup failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_click_cleanup"})
        return {"error": str(e)}
    return {"deleted": deleted}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - build the relay context and log config."""
    load_env_file()
    init_sentry()
    settings = get_settings()

    ctx["relay"] = build_context(settings)
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info(f"[ARQ] Queue: {QUEUE_NAME}")
    logger.info(f"[ARQ] Click retention: {settings.CLICK_RETENTION_HOURS or 'disabled'}")
    logger.info("=" * 60)


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - close the relay context and log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    relay = ctx.get("relay")
    if relay is not None:
        await relay.aclose()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=10: Dispatch up to 10 sales concurrently
    - job_timeout=120: Each platform call is already bounded by DISPATCH_TIMEOUT_SECONDS
    - max_tries=3: A failed destination is retaken by the next attempt
    """

    functions = [
        dispatch_sale_job,
        scheduled_click_cleanup,
    ]

    cron_jobs = [
        cron(scheduled_click_cleanup, minute=5, run_at_startup=False),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings(get_settings().REDIS_URL)

    # Performance settings
    max_jobs = 10
    job_timeout = 120
    keep_result = 3600               # Keep results for 1 hour
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30

    queue_name = QUEUE_NAME
