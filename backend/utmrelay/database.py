"""Database engine, sessions and conflict-aware inserts.

WHAT:
    Builds the SQLAlchemy engine and session factory for the relay context
    and exposes the FastAPI dependency for request-scoped sessions.

WHY:
    - The engine lives on the RelayContext created at startup (no module globals)
    - Every store operation commits on its own; nothing spans stores
    - Unique constraints are the concurrency control, so inserts go through
      `INSERT ... ON CONFLICT DO NOTHING` and report whether a row was created

USAGE:
    from utmrelay.database import get_db, insert_ignoring_conflicts

    @router.get("/items")
    def list_items(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
    - https://docs.sqlalchemy.org/en/20/dialects/sqlite.html#upsert
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterable

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================

def normalize_database_url(database_url: str) -> str:
    """Accept Heroku-style postgres:// URLs."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


SQLITE_BUSY_TIMEOUT_MS = 5000


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    """WAL lets readers run during a write; busy_timeout makes concurrent writers wait instead of failing."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def build_engine(database_url: str) -> Engine:
    """Create the sync engine for the configured database.

    NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
    """
    database_url = normalize_database_url(database_url)
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )
        event.listen(engine, "connect", _configure_sqlite)
        return engine
    return create_engine(
        database_url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    # expire_on_commit=False: dispatch reads sale/click rows after the session closes
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, background tasks).

    Example:
        with session_scope(context.session_factory) as db:
            sale = get_sale_by_code(db, "S1")
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db(request: Request) -> Generator[Session, None, None]:
    """Yield a session bound to the application's relay context."""
    db = request.app.state.relay.session_factory()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONFLICT-AWARE INSERT
# =============================================================================

def insert_ignoring_conflicts(
    db: Session,
    model,
    values: Dict[str, Any],
    conflict_columns: Iterable[str],
) -> bool:
    """Insert a row unless it collides with a unique constraint.

    WHAT:
        Runs a dialect-specific `INSERT ... ON CONFLICT DO NOTHING` and commits.
    WHY:
        Two concurrent writers for the same key must not both succeed; the
        database decides the winner and the loser observes "not created".

    Args:
        db: Session (committed on return)
        model: ORM class to insert into
        values: Column values
        conflict_columns: Columns of the unique constraint that arbitrates

    Returns:
        True if this call created the row, False if it already existed
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert = pg_insert
    elif dialect == "sqlite":
        insert = sqlite_insert
    else:
        raise RuntimeError(f"Unsupported database dialect for conflict-aware insert: {dialect}")

    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1
