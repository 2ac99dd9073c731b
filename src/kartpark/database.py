"""Async engine and sessions.

Services flush; the router that owns the request commits. A session that
leaves ``session_scope`` with an exception is rolled back so that a failed
operation never leaves a partial write behind.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _pool_options(url: str) -> dict[str, Any]:
    if _is_sqlite(url):
        # One shared connection, so an in-memory database survives across sessions.
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    # statement_cache_size=0 keeps asyncpg usable behind pgbouncer
    return {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True, "connect_args": {"statement_cache_size": 0}}


def _sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:  # noqa: ANN401
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


async def init_db(url: str) -> None:
    global _engine, _sessions  # noqa: PLW0603
    _engine = create_async_engine(url, **_pool_options(url))
    if _is_sqlite(url):
        event.listen(_engine.sync_engine, "connect", _sqlite_foreign_keys)
    _sessions = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


async def close_db() -> None:
    global _engine, _sessions  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessions = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database is not initialized")
    return _engine


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """A session that is closed on exit. Workers and background tasks use this."""
    if _sessions is None:
        raise RuntimeError("Database is not initialized")
    async with _sessions() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request."""
    async with session_scope() as session:
        yield session
