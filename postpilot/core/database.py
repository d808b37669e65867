from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from postpilot.config import get_settings
from postpilot.core.errors import PersistenceError
from postpilot.core.logging import get_logger

logger = get_logger(__name__)

settings = get_settings()


def _engine_options(url: str) -> dict[str, Any]:
    """Pool options per backend; SQLite (tests, local dev) takes no pool sizing."""
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 280,
    }


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

SessionFactory = async_sessionmaker[AsyncSession]


@asynccontextmanager
async def session_scope(session_factory: SessionFactory) -> AsyncIterator[AsyncSession]:
    """
    Open a session, commit on success, roll back on any error.

    SQLAlchemy failures are re-raised as PersistenceError so callers never
    depend on the storage technology; domain errors pass through untouched.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            logger.bind(error=str(e)).error("database_transaction_rollback")
            await session.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            await session.rollback()
            raise
