from __future__ import annotations

import asyncio
import logging

from sqlalchemy import exc as sa_exc, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.polaris.config import Settings


logger = logging.getLogger(__name__)


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create an AsyncEngine configured for Postgres/asyncpg.

    Engine creation itself is lazy; no connection is made until first use.
    The caller owns the engine and must dispose it.
    """
    return create_async_engine(
        settings.POSTGRES_DSN,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
    )


async def _connect_with_retries(engine: AsyncEngine, *, attempts: int = 3) -> None:
    """Attempt to connect to the database with simple exponential backoff."""
    delay = 1.0
    max_delay = 10.0

    for idx in range(attempts):
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return
        except sa_exc.SQLAlchemyError:
            logger.exception("db_connect_attempt_failed", extra={"attempt": idx + 1})
            if idx == attempts - 1:
                raise
            await asyncio.sleep(min(delay, max_delay))
            delay *= 2.0


async def ensure_db_connected(engine: AsyncEngine, *, attempts: int = 3) -> None:
    """Fail fast if the database is unreachable before starting a run."""
    await _connect_with_retries(engine, attempts=attempts)
