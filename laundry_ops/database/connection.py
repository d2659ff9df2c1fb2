"""
Database engine and session management.

Postgres (asyncpg) in deployments; SQLite (aiosqlite) for tests and local
runs. Services receive an ``async_sessionmaker`` and open one session per
operation, so the module-level engine is only the default wiring.
"""
from typing import Any, Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from laundry_ops.config import Settings, get_settings
from laundry_ops.database.models import Base

_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _is_in_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url)


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    """
    Take SQLite's write lock when a transaction begins.

    SQLite ignores FOR UPDATE, so wallet and payment row locks only hold if
    each transaction owns the database from its first statement.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_from_settings(settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Build an engine for ``settings.database_url``.

    An in-memory SQLite database lives on a single shared connection.
    File-backed SQLite keeps the driver's pool and serializes writers;
    anything else gets the configured pool.
    """
    settings = settings or get_settings()
    url = settings.database_url
    engine_kwargs: Dict[str, Any] = {"echo": settings.database_echo}
    if _is_in_memory_sqlite(url):
        engine_kwargs.update(
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif url.startswith("sqlite"):
        engine_kwargs.update(connect_args={"timeout": 30})
    else:
        engine_kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    engine = create_async_engine(url, **engine_kwargs)
    if url.startswith("sqlite") and not _is_in_memory_sqlite(url):
        _serialize_sqlite_writers(engine)
    return engine


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine_from_settings()
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory shared by the app, the workers and the tests.

    Objects stay readable after commit; services return ORM rows to callers
    once their transaction has closed.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())
    return _async_session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables that do not exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
