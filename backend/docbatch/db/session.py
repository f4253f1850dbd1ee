"""
Database engine and session factory.

Both are built lazily and cached, so importing this module from tests or
the Celery worker does not open a connection pool. The MetadataPersister
receives the session factory; it owns the transaction of each write.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docbatch.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine and sessions
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        echo=settings.db_echo_sql,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    # Rows are read back after commit to build PersistedDocument
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """SELECT 1 against the pool. Never raises."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Database ping failed | error=%s", exc)
        return {"status": "error", "error": str(exc)}
    return {"status": "ok"}
