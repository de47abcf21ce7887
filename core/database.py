"""
Database session management with SQLAlchemy async
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
)
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.ENVIRONMENT == "development",
    poolclass=NullPool,
    future=True
)

# Create session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session (FastAPI dependency)"""
    async with async_session_maker() as session:
        yield session


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker = async_session_maker,
) -> AsyncIterator[AsyncSession]:
    """
    Session for background work (scheduled runs, error logging).

    Rolls back whatever is still pending when the block raises.
    """
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def create_all(bind: AsyncEngine = engine) -> None:
    """Create every table registered on the declarative base."""
    from models import Base  # noqa: registers all models

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
