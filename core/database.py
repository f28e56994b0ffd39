"""
Database configuration and session management for the local durable store.

Provides the async engine, session factory, and declarative base.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from core.config import settings

Base = declarative_base()


def build_engine(url: str):
    """Create an async engine for the given URL."""
    engine = create_async_engine(url, echo=settings.DATABASE_ECHO, pool_pre_ping=True)

    if url.startswith("sqlite"):
        # SQLite ignores foreign keys unless asked per connection
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


def build_session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


engine = build_engine(settings.DATABASE_URL)
AsyncSessionLocal = build_session_factory(engine)


async def create_tables(bind=None) -> None:
    """Create all tables (development and tests)."""
    import models  # noqa: F401  registers the mappers

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
