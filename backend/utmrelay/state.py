"""
Relay Context
=============

Process-wide resources shared by every request, background task and job.

WHY this exists:
- One engine / session factory per process, created at startup
- One pooled HTTP client for all conversion API calls (bounded timeout)
- One token cipher built from the configured Fernet key
- Components receive the context explicitly; nothing reads module globals

WHAT it stores:
- settings: resolved Settings instance
- engine / session_factory: SQLAlchemy sync engine and sessionmaker
- http_client: httpx.AsyncClient used by the platform services
- cipher: TokenCipher for pixel access tokens
- arq_pool: lazily created ARQ Redis pool (only when USE_ARQ_QUEUE)

WHERE it's used:
- utmrelay/main.py: built in the lifespan (or injected by tests), stored on app.state.relay
- utmrelay/deps.py: routers reach it through get_relay_context
- utmrelay/workers/arq_worker.py: built in the worker startup hook
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator, Optional

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .database import build_engine, build_session_factory, session_scope
from .deps import Settings
from .models import Base
from .security import TokenCipher

logger = logging.getLogger(__name__)


@dataclass
class RelayContext:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    http_client: httpx.AsyncClient
    cipher: TokenCipher
    arq_pool: Optional[Any] = field(default=None)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        with session_scope(self.session_factory) as db:
            yield db

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        logger.info("[STATE] Database tables ensured")

    async def aclose(self) -> None:
        await self.http_client.aclose()
        if self.arq_pool is not None:
            await self.arq_pool.close()
            self.arq_pool = None
        self.engine.dispose()
        logger.info("[STATE] Relay context closed")


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.DISPATCH_TIMEOUT_SECONDS),
        headers={"Content-Type": "application/json"},
    )


def build_context(settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> RelayContext:
    """Construct the relay context from settings.

    Args:
        settings: Resolved settings
        http_client: Optional pre-built client (tests pass one with a MockTransport)
    """
    engine = build_engine(settings.DATABASE_URL)
    context = RelayContext(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        http_client=http_client or build_http_client(settings),
        cipher=TokenCipher(settings.TOKEN_ENCRYPTION_KEY),
    )
    logger.info(
        "[STATE] Relay context ready (db=%s, dispatch_timeout=%ss)",
        engine.url.get_backend_name(),
        settings.DISPATCH_TIMEOUT_SECONDS,
    )
    return context
