"""Async engine, session factory and the scoped transaction helper."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import settings
from services.errors import StorageError

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run a unit of work on ``session`` and guarantee commit or rollback.

    - Normal exit commits.
    - An exception carrying ``keeps_changes = True`` (a failed OTP attempt)
      commits what was written before it was raised, then re-raises.
    - Any other exception rolls back and re-raises; driver errors are
      re-raised as ``StorageError``.
    """
    try:
        yield session
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("Transaction rolled back: %s", e)
        raise StorageError("Storage operation failed") from e
    except Exception as e:
        if getattr(e, "keeps_changes", False):
            try:
                await session.commit()
            except SQLAlchemyError as commit_error:
                await session.rollback()
                logger.error("Commit of failed attempt rolled back: %s", commit_error)
                raise StorageError("Storage operation failed") from commit_error
        else:
            await session.rollback()
        raise
    else:
        try:
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("Commit failed, transaction rolled back: %s", e)
            raise StorageError("Storage operation failed") from e
