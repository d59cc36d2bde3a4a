"""
Engine and session scope for the SQL action store.

The URL in settings.database.url picks the dialect; the matching async
driver is substituted automatically (asyncpg, aiomysql, aiosqlite).

Queue workers, the two schedulers and API handlers all hit the same
database concurrently, so the pool is sized from the worker count and
SQLite runs in WAL mode with a busy timeout.

    async with get_session() as db:    # commits on exit, rolls back on error
        row = await db.get(ProposedActionRow, action_id)
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import Settings, get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

# Scheduler, send executor, maintenance loop and API handlers
_NON_WORKER_CONNECTIONS = 4

# Dialects whose partial unique indexes back the one-live-queue-item rule
PARTIAL_INDEX_DIALECTS = ("postgresql", "sqlite")

SQLITE_BUSY_TIMEOUT_MS = 30_000


def _to_async_url(db_url: str) -> str:
    """Swap the URL scheme for its async driver; unknown schemes pass through."""
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in _ASYNC_DRIVERS:
        return db_url
    return f"{_ASYNC_DRIVERS[scheme]}://{rest}"


def _engine_kwargs(db_url: str, settings: Settings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"echo": settings.debug}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False,
                                  "timeout": SQLITE_BUSY_TIMEOUT_MS / 1000}
        return kwargs

    pool_size = settings.queue.worker_count + _NON_WORKER_CONNECTIONS
    kwargs.update(
        pool_size=pool_size,
        max_overflow=pool_size,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
    return kwargs


def _enable_sqlite_wal(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


def _safe_url(engine: AsyncEngine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


def get_engine() -> AsyncEngine:
    """Process-wide engine, built from settings on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = _to_async_url(settings.database.url)
        _engine = create_async_engine(db_url, **_engine_kwargs(db_url, settings))
        if _engine.dialect.name == "sqlite":
            _enable_sqlite_wal(_engine)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name, url=_safe_url(_engine))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One short transaction per store call."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create tables and indexes that do not exist yet."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    dialect = engine.dialect.name
    if dialect not in PARTIAL_INDEX_DIALECTS:
        logger.warning("queue_uniqueness_not_enforced_by_database", dialect=dialect,
                       detail="duplicate active queue items are only prevented by the pre-insert lookup")
    logger.info("database_initialized", dialect=dialect, tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose the engine; the next get_engine() call rebuilds it from settings."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
