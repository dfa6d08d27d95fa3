"""Engine and session plumbing for the control plane database.

The engine is built on first use from ``DATABASE_URL`` so values loaded from
``.env`` files at startup are honoured. Postgres runs on asyncpg; sqlite URLs
(local runs and tests) go through aiosqlite. The schema itself is owned by
the Alembic revisions under ``migrations/versions``.
"""

from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from control_plane.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for every control plane table."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def normalize_url(url: str) -> str:
    """Pin the async driver for bare ``postgresql://`` and ``sqlite://`` URLs."""
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _emit_sqlite_begin(engine: AsyncEngine) -> AsyncEngine:
    """Let SQLAlchemy issue BEGIN itself so SAVEPOINTs nest correctly on sqlite."""

    @event.listens_for(engine.sync_engine, "connect")
    def disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def build_engine(url: str) -> AsyncEngine:
    url = normalize_url(url)
    if url.startswith("sqlite+aiosqlite://"):
        connect_args = {"check_same_thread": False}
        if url.rstrip("/").endswith(("sqlite+aiosqlite:", ":memory:")):
            # In-memory: one shared connection, else each checkout gets an empty db
            return _emit_sqlite_begin(
                create_async_engine(url, connect_args=connect_args, poolclass=StaticPool)
            )
        return _emit_sqlite_begin(create_async_engine(url, connect_args=connect_args))
    return create_async_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_url)
    return _engine


def async_session() -> AsyncSession:
    """Open a session outside a request, e.g. ``async with async_session() as db``."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factory()


async def dispose_engine() -> None:
    """Close pooled connections and forget the engine (app shutdown)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session: commit on success, roll back if the handler raises."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
