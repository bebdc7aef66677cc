"""Database engine, session scope, and initialisation.

Startup sequence
────────────────
1. Ensure the DB directory exists.
2. Apply PRAGMA optimisations on every new connection (WAL, cache, temp-store).
3. Import models so Base.metadata knows about all tables.
4. Run create_all (idempotent, skips tables that already exist).
5. Health-check SELECT 1.

The engine is created by the service container at startup and passed to the
stores that need it; nothing here holds a module-level connection.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy 2.x declarative base."""


def _apply_sqlite_pragmas(dbapi_conn, _connection_record) -> None:
    """Apply per-connection SQLite PRAGMAs.

    journal_mode=WAL lets the API read while the backfill worker writes;
    synchronous=NORMAL fsyncs on checkpoints only, acceptable for price points
    that can always be re-fetched from upstream.
    """
    cursor = dbapi_conn.cursor()
    for pragma in (
        "PRAGMA journal_mode=WAL",
        "PRAGMA synchronous=NORMAL",
        "PRAGMA cache_size=-16384",   # 16 MB
        "PRAGMA temp_store=MEMORY",
    ):
        cursor.execute(pragma)
    cursor.close()


def create_db_engine(database_url: str) -> Engine:
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},
        pool_pre_ping=True,
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _apply_sqlite_pragmas)
    return engine


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Yield a managed SQLAlchemy session with automatic commit/rollback."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def initialize_database(engine: Engine, db_path: Path | None = None) -> None:
    """Create all tables and verify connectivity. Safe to call on every startup."""
    if db_path is not None:
        db_path.parent.mkdir(parents=True, exist_ok=True)

    import app.data.models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))

    logger.info("Database initialised at %s", engine.url)
