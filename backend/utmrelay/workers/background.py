"""In-process fire-and-forget work.

WHAT:
    `run_guarded` wraps work scheduled with FastAPI BackgroundTasks (click
    saves behind /pixel.gif and /redirect, webhook dispatch) so failures are
    logged and sent to Sentry instead of vanishing with the response.

USAGE:
    background_tasks.add_task(run_guarded, "dispatch_sale", pipeline.dispatch_sale, sale_code)
"""

import asyncio
import inspect
import logging
from typing import Any, Callable

from ..telemetry import capture_exception

logger = logging.getLogger(__name__)


async def run_guarded(label: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a coroutine function, or a sync function in a worker thread, and report failures.

    Returns:
        The function's result, or None when it raised
    """
    try:
        if inspect.iscoroutinefunction(func):
            return await func(*args, **kwargs)
        return await asyncio.to_thread(func, *args, **kwargs)
    except Exception as e:
        logger.exception(f"[BACKGROUND] {label} failed: {e}")
        capture_exception(e, extra={"operation": label})
        return None
