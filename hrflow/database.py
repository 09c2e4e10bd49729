"""Async SQLAlchemy engine, request sessions and savepoint scopes."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from hrflow.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session that commits on success and rolls back on any error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one transaction per request."""
    async with session_scope() as session:
        yield session


@asynccontextmanager
async def best_effort(session: AsyncSession, what: str) -> AsyncIterator[None]:
    """Run secondary writes inside a SAVEPOINT.

    A failure rolls back to the savepoint, is logged and is not re-raised,
    so the enclosing transaction can still commit its primary changes.
    Pending primary changes are flushed before the savepoint opens and
    their errors propagate normally.
    """
    await session.flush()
    try:
        async with session.begin_nested():
            yield
    except Exception:
        logger.exception("Rolled back %s; the enclosing transaction continues", what)
