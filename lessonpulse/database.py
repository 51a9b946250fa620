"""
Async SQLAlchemy engine, request sessions and stand-alone sessions
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from lessonpulse.config import DATABASE_URL, SQL_ECHO

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    # SQLite (tests, local runs) gets a fresh connection per session
    if url.startswith("sqlite"):
        return {"poolclass": NullPool}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


engine = create_async_engine(DATABASE_URL, echo=SQL_ECHO, **_engine_options(DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

Base = declarative_base()


def after_commit(db: AsyncSession, callback: Callable[[], Awaitable[Any]]):
    """Queue a side effect (broadcast, cache invalidation) for when db commits; dropped on rollback"""
    db.info.setdefault("after_commit", []).append(callback)


async def _run_after_commit(session: AsyncSession):
    for callback in session.info.pop("after_commit", []):
        try:
            await callback()
        except Exception as e:
            logger.error(f"After-commit callback {getattr(callback, '__name__', callback)} failed: {e}")


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    One unit of work: commit on success, roll back and re-raise on error.
    Callbacks queued with after_commit run once the commit has succeeded.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            session.info.pop("after_commit", None)
            await session.rollback()
            raise
        await _run_after_commit(session)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; the whole request commits or rolls back together"""
    try:
        async with session_scope() as session:
            yield session
    except Exception as e:
        logger.error(f"Request transaction rolled back: {e}")
        raise


async def ping_database():
    async with AsyncSessionLocal() as session:
        await session.execute(text("SELECT 1"))


async def init_db():
    """Create missing tables"""
    from lessonpulse import db_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database schema ready ({len(Base.metadata.tables)} tables)")


async def reset_schema():
    """Drop and recreate every table"""
    from lessonpulse import db_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
