"""Redis connection management.

This module mirrors the pattern in engine.py for PostgreSQL:
when REDIS_URL is configured, we create a real connection pool;
when it's None (local dev, tests), everything falls back to
in-memory implementations and no Redis server is needed.

WHAT LIVES IN REDIS
--------------------
  cache:view:<kind>:<id>                  materialized view payloads
  cache:view:<kind>:<id>:invalidated_at   invalidation markers
  cache:snapshot:...                      cached analytics snapshots
  tasks:progress_recompute                recompute outbox
  tasks:progress_recompute:processing     tasks a worker has taken

All of it is derived or in flight: losing Redis costs recomputation and
re-delivery, never learning history, which stays in Postgres.

CONNECTION POOLING
------------------
Redis is single-threaded, but many async handlers issue commands at
once.  The pool lets each borrow a connection without blocking the
others on the Python side.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,  # return str instead of bytes, less casting
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis; mirrors lifespan_db()."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured; cache and queue use in-memory fallbacks")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
        logger.info("Redis connected")
    except Exception:
        # Start anyway: view reads degrade to recompute-on-read and /health
        # reports redis=degraded until it comes back.
        logger.exception("Redis connection failed on startup")

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
