"""
database.py — SQLAlchemy engine and session management for the planner.

Provides:
  engine                — the shared SQLAlchemy engine
  SessionLocal          — sessionmaker bound to the engine
  get_db()              — FastAPI dependency that yields a session per request
  get_session_factory() — FastAPI dependency returning the sessionmaker, for
                          ItineraryRepository (which opens its own sessions
                          because auto-save runs outside any request)

All SQLAlchemy calls remain synchronous. Use starlette.concurrency.run_in_threadpool
to call blocking DB operations from async route handlers.
"""

import logging
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import config

logger = logging.getLogger(__name__)


def _safe_db_url(url: str) -> str:
    """Hosting providers sometimes inject postgres:// instead of postgresql://."""
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    return url


_db_url = _safe_db_url(config.DATABASE_URL)

# ── Engine ────────────────────────────────────────────────────────────────────
_engine_kwargs: dict = {'pool_pre_ping': True}
if _db_url.startswith('sqlite'):
    _engine_kwargs['connect_args'] = {'timeout': 15, 'check_same_thread': False}
    if _db_url in ('sqlite://', 'sqlite:///:memory:'):
        # one shared connection, otherwise each checkout sees an empty database
        _engine_kwargs['poolclass'] = StaticPool

engine = create_engine(_db_url, **_engine_kwargs)

# ── SQLite WAL mode ───────────────────────────────────────────────────────────
# No-op for PostgreSQL and for in-memory SQLite.
if _db_url.startswith('sqlite') and 'poolclass' not in _engine_kwargs:
    @event.listens_for(engine, 'connect')
    def _set_sqlite_wal(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute('PRAGMA journal_mode=WAL')
        cursor.close()

    try:
        with engine.connect() as conn:
            conn.execute(text('PRAGMA journal_mode=WAL'))
        logger.info('SQLite WAL mode enabled')
    except Exception as exc:
        logger.warning('Could not prime SQLite WAL mode: %s', exc)

# ── Session factory ───────────────────────────────────────────────────────────
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


def init_db() -> None:
    """Create any missing tables. Alembic owns schema changes after that."""
    from models import Base
    Base.metadata.create_all(engine)


# ── FastAPI dependencies ──────────────────────────────────────────────────────

def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session for the duration of a request, then close it."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal
