"""
Database session management.

Provides the async SQLAlchemy engine, the session factory, and the two ways
a caller scopes a session (the "database context" a repository works on):

- :func:`get_db`: FastAPI dependency, one session per request.
- :func:`session_scope`: explicit unit of work for scripts, workers and tests.

Repositories never open or close sessions themselves; they receive one
from whichever scope the caller chose.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from repokit.core.config import settings

# ── Engine creation (PostgreSQL or SQLite) ──
if settings.USE_SQLITE:
    # StaticPool makes every connection share the SAME in-memory database;
    # otherwise each async connection would see its own empty database.
    from sqlalchemy.pool import StaticPool

    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # SQLite does not enforce FK constraints by default.  aiosqlite delegates
    # to a sync connection, so listen on the sync engine.
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

else:
    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
    )

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    # Attribute access after commit() would otherwise trigger a lazy load,
    # which is not allowed on an async session.
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields an async database session.

    The session is closed when the request finishes.
    """
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session for one unit of work.

    Any exception escaping the block rolls back whatever the session still
    holds uncommitted and is re-raised.  The session is always closed.
    Committing is left to the caller (``repo.save_change()``).
    """
    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
