"""Key-value cache backing the materialized views.

TWO INVALIDATION STRATEGIES
-----------------------------
  1. TTL: every entry auto-expires after N seconds.  This is the SAFETY
     NET: even if an invalidation is missed, a view cannot outlive it.

  2. Explicit invalidation: the aggregator marks affected views stale on
     every write (see app/services/materialized_views.py).  This gives
     near-instant consistency for the common case.

  TTL alone → readers see stale data for up to N seconds after a change.
  Explicit alone → a missed invalidation leaves stale data forever.
  Together → they cover each other's weaknesses.

The materialized-view layer never deletes an entry on invalidation; it
keeps the payload as "last known good" so reads can degrade gracefully
when recomputation is unavailable.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a cached value.  Returns None on cache miss."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value with a TTL (time to live)."""
        ...

    async def delete(self, key: str) -> None:
        """Remove an entry outright."""
        ...


class InMemoryCacheService:
    """Process-local cache with TTL enforcement, for tests and local dev."""

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = (value, time.monotonic() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)


class RedisCacheService:
    """Redis-backed cache, shared across all API instances and the worker."""

    # Key prefix prevents collisions with the task queue lists.
    _PREFIX = "cache:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(f"{self._PREFIX}{key}")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.setex(f"{self._PREFIX}{key}", ttl_seconds, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(f"{self._PREFIX}{key}")
