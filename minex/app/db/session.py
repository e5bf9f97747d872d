"""
Local database session configuration.

This module handles engine creation and session management for the device's
persistent storage, using SQLAlchemy with async support on SQLite.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from minex.app.core.config import settings

# Create declarative base for models
Base = declarative_base()


def build_engine(database_url: str = None, echo: bool = None) -> AsyncEngine:
    """Create the async engine for the local store."""
    return create_async_engine(
        database_url or settings.local_db_url,
        echo=settings.db_echo if echo is None else echo,
        future=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create the async session factory bound to 'engine'."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create local tables if they do not exist yet."""
    # Import models to ensure they are registered with Base
    from minex.app.models.storage_entry import StorageEntry  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
