"""FastAPI application entrypoint.

Builds the relay context, configures proxy headers and CORS, includes the
routers, and exposes a healthcheck endpoint.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .deps import Settings, get_settings
from .routers import admin as admin_router
from .routers import tracking as tracking_router
from .routers import webhooks as webhooks_router
from .state import RelayContext, build_context
from .telemetry import init_sentry
from .utils.env import load_env_file
from .workers.click_cleanup import run_click_cleanup_loop
from . import schemas

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, context: Optional[RelayContext] = None) -> FastAPI:
    """Create the API.

    Args:
        settings: Overrides env settings (ignored when a context is given)
        context: Pre-built relay context; the caller keeps ownership (tests)
    """
    load_env_file()
    init_sentry()
    settings = context.settings if context is not None else (settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_context = context is None
        relay = context or build_context(settings)
        app.state.relay = relay

        if settings.AUTO_CREATE_TABLES:
            relay.create_tables()

        cleanup_task = None
        if settings.CLICK_RETENTION_HOURS:
            cleanup_task = asyncio.create_task(run_click_cleanup_loop(relay))

        logger.info("[STARTUP] utm-relay ready")
        try:
            yield
        finally:
            if cleanup_task is not None:
                cleanup_task.cancel()
                try:
                    await cleanup_task
                except asyncio.CancelledError:
                    pass
            if owns_context:
                await relay.aclose()
            logger.info("[SHUTDOWN] utm-relay stopped")

    app = FastAPI(
        title="utm-relay API",
        description="""
        Marketing attribution relay.

        - Captures ad clicks (UTMs, platform click ids) from landing pages
        - Receives purchases from the payment gateway and the sales chat
        - Attributes each sale to its click and forwards the conversion
          to Meta, TikTok, Kwai and UTMify, once per destination
        """,
        version="1.0.0",
        lifespan=lifespan,
    )

    if context is not None:
        app.state.relay = context

    # Trust X-Forwarded-* from the load balancer so client IPs are real
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tracking_router.router)
    app.include_router(webhooks_router.router)
    app.include_router(admin_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
