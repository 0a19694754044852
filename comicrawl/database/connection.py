"""
Async database connection management using SQLAlchemy 2.0.

aiosqlite backs the default SQLite store; any async driver URL
(e.g. ``postgresql+asyncpg``) works unchanged, and there the queue claim
gets real ``FOR UPDATE SKIP LOCKED`` row locking.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from comicrawl.core.config import get_settings
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)

# Global engine instance (initialized on first use)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record) -> None:  # noqa: ANN001
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


def create_engine_for_url(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """
    Build an async engine with the SQLite specifics applied when relevant.

    In-memory SQLite uses StaticPool (one shared connection); file-backed
    SQLite keeps a pool so concurrent workers get separate connections and
    SQLite's own locking serializes their writes.
    """
    connect_args: dict[str, bool | int] = {}
    kwargs: dict = {"pool_pre_ping": True}

    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        kwargs = {}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool

    engine = create_async_engine(database_url, echo=echo, connect_args=connect_args, **kwargs)

    if database_url.startswith("sqlite"):
        _install_sqlite_pragmas(engine)

    return engine


def get_engine() -> AsyncEngine:
    """
    Get or create the process-wide async database engine.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    global _engine

    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(settings.database_url, echo=settings.debug)
        logger.info(
            "Database engine created",
            url=settings.database_url.split("///")[0] + "///***",  # Hide path
        )

    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the options every component expects."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the process-wide async session factory.

    Returns:
        async_sessionmaker: Factory for creating async sessions
    """
    global _session_factory

    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())

    return _session_factory


@asynccontextmanager
async def get_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for one short database transaction.

    Commits on success, rolls back on error, always closes. Crawl code
    opens one of these per step and never holds it across a fetch.

    Args:
        factory: Session factory to use (defaults to the global one)

    Yields:
        AsyncSession: Database session for executing queries

    Example:
        >>> async with get_session(factory) as session:
        ...     await JobRepository.increment_counters(session, job_id, completed=1)
    """
    session = (factory or get_session_factory())()

    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Create all tables (idempotent).

    Call once at startup: API lifespan, CLI commands and the worker.
    """
    from comicrawl.database.models import Base

    engine = engine or get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized", tables=list(Base.metadata.tables.keys()))


async def close_db() -> None:
    """Dispose the global engine and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")
