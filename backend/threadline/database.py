"""
Database connection and session management.
Uses SQLAlchemy async with aiosqlite.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from .config import settings


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    # WAL lets readers proceed while a flush is being written
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine; SQLite connections get the transcript pragmas."""
    new_engine = create_async_engine(url, echo=False, future=True, **kwargs)
    if new_engine.url.get_backend_name() == "sqlite":
        event.listen(new_engine.sync_engine, "connect", _sqlite_pragmas)
    return new_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    # rows are read after commit by the persistence bridge
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


engine = build_engine(settings.DATABASE_URL)
AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


async def init_db(bind=None):
    """Initialize database tables."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections."""
    await engine.dispose()
