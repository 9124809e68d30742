"""
Database session configuration.

PostgreSQL (asyncpg) in production; tests build their own SQLite engine
and override ``get_db``.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from payout_backend.app.core.config import settings


def engine_options(database_url: str) -> dict:
    """Pool sizing applies to server databases only; SQLite rejects it."""
    options = {"echo": settings.db_echo, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        options.update(pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)
    return options


engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))

# Ledger rows stay readable after commit; settlement reads them back
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db():
    """
    FastAPI dependency for database sessions.

    Endpoints commit explicitly; anything left uncommitted when the request
    ends is rolled back.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
