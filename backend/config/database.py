"""
Connection factories
====================

Every factory here is called once at process start (the FastAPI lifespan or
a worker's run function) and the handle it returns is passed by reference
to whatever needs it. Nothing in this module caches a client.

Connection details come from Settings, so the API, the workers and the
tests all read the same environment.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import asyncpg
import redis.asyncio as redis

from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class PoolConfig:
    """asyncpg pool sizing plus the DSN it connects to."""
    dsn: str
    min_size: int = 2
    max_size: int = 10
    command_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings, min_size: int = 2, max_size: int = 10) -> 'PoolConfig':
        if not settings.database_url:
            raise ValueError("database_url could not be built from POSTGRES_* settings")
        return cls(dsn=settings.database_url, min_size=min_size, max_size=max_size)


async def create_postgres_pool(
    min_size: int = 2,
    max_size: int = 10,
    settings: Optional[Settings] = None,
) -> asyncpg.Pool:
    """Open the asyncpg pool used by the repositories."""
    config = PoolConfig.from_settings(settings or get_settings(), min_size=min_size, max_size=max_size)
    pool = await asyncpg.create_pool(
        dsn=config.dsn,
        min_size=config.min_size,
        max_size=config.max_size,
        command_timeout=config.command_timeout,
    )
    logger.info(f"PostgreSQL pool ready (min={config.min_size}, max={config.max_size})")
    return pool


async def create_job_queue(settings: Optional[Settings] = None):
    """Connect the Redis job queue shared by the API and the workers."""
    from services.job_queue import JobQueue
    queue = JobQueue((settings or get_settings()).redis_url)
    await queue.connect()
    return queue


def create_redis_client(settings: Optional[Settings] = None) -> redis.Redis:
    """
    Redis client backing the rate buckets.

    The returned client is the one handle the RateLimiter gets; close it
    with `await client.aclose()` on shutdown.
    """
    return redis.from_url((settings or get_settings()).redis_url, decode_responses=True)
