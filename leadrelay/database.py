"""
Async SQLAlchemy engine and sessions for the engagement core.

One session per unit of work: an API request (get_db), one scheduler job, or
one sweeper pass (async_session_factory). Services commit several times inside
a unit of work, so sessions keep loaded objects after commit. A rollback still
expires everything: code that recovers from StaleDataError captures ids first
and reloads.

Lead rows carry a version column. A flush that finds the version moved on
raises StaleDataError, and the caller decides whether to retry or keep the
newer state. Ledger appends run in SAVEPOINTs, which SQLite (local runs and
tests) only supports once pysqlite's implicit transactions are switched off.
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(
    url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Engine for a database URL.
    SQLite gets SAVEPOINT support, and an in-memory database is held on one
    shared connection so every session sees the same tables.
    """
    if url.startswith("sqlite"):
        kwargs = {"poolclass": StaticPool} if ":memory:" in url else {}
        engine = create_async_engine(url, echo=echo, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine

    # Workers hold sessions across provider calls; stale pooled connections get replaced
    return create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create every table registered on Base (local runs and tests; no migrations)."""
    import leadrelay.models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from leadrelay.config import get_settings
        settings = get_settings()
        _engine = build_engine(
            settings.database_url,
            echo=settings.app_env == "development",
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    return _engine


def _get_session_factory() -> async_sessionmaker:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = make_session_factory(_get_engine())
    return _async_session_factory


def async_session_factory() -> AsyncSession:
    """New session for one worker unit of work (a job, a sweep)."""
    return _get_session_factory()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.warning("Request session rolled back: %s", str(e))
            await session.rollback()
            raise
