"""Async database engine, session factory, and lifespan management.

PostgreSQL (SQLAlchemy 2.0 async + asyncpg) holds the audit trail, the
session transcripts and the deny-list. Redis is only the identity lookup
cache: the bot runs without it.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.config import settings

logger = logging.getLogger(__name__)

# ── Async PostgreSQL engine ──────────────────────────────────────────

# Writes are one audit row per event plus the occasional deny-list change
engine: AsyncEngine = create_async_engine(
    settings.db.database_url,
    echo=False,
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,
    pool_recycle=3600,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# ── Redis (identity cache) ───────────────────────────────────────────

redis_client: aioredis.Redis = aioredis.from_url(
    settings.db.redis_url,
    decode_responses=True,
)


async def connect_cache() -> aioredis.Redis | None:
    """Return the Redis client if it answers a PING, else None (cache disabled)."""
    try:
        await redis_client.ping()
    except (RedisError, OSError):
        logger.warning("Redis unreachable at startup, identity cache disabled", exc_info=True)
        return None
    return redis_client


# ── Lifespan helpers ─────────────────────────────────────────────────


async def init_db() -> None:
    """Verify connectivity; outside production also create missing tables.

    In production, tables are created via Alembic migrations.
    """
    from src.models import Base

    async with engine.begin() as conn:
        if not settings.is_production:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose database engine and Redis connections."""
    await engine.dispose()
    await redis_client.aclose()


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    """Database lifecycle for the FastAPI lifespan in src.main."""
    await init_db()
    try:
        yield
    finally:
        await close_db()
