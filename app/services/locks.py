"""Per-section write serialization.

Two devices can report on the same section at the same moment (a
time_tick from the video player and a complete from the quiz page).
Without serialization, both read version N, both write N+1, and one
update is lost.  Two layers stop that:

  1. KeyedLockPool (this module), in-process.  Writers for the same
     (student_id, section_id) queue behind one asyncio.Lock, so within a
     single API instance the read-modify-write never interleaves.

  2. Optimistic versioning in the progress repo, cross-process.  If two
     API replicas race, the loser's UPDATE ... WHERE version = N matches
     zero rows and the aggregator retries.

The pool is SHARDED: keys hash onto a fixed number of locks, so memory
stays bounded no matter how many students exist.  Two unrelated sections
may occasionally share a shard and wait on each other briefly; that is
the price of not tracking one lock per key forever.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from app.core.errors import AggregationError


class KeyedLockPool:
    def __init__(self, shards: int = 64, timeout_seconds: float = 2.0) -> None:
        self._locks = [asyncio.Lock() for _ in range(shards)]
        self._timeout = timeout_seconds

    def _shard(self, key: str) -> asyncio.Lock:
        # hashlib rather than hash(): stable across processes and restarts
        digest = hashlib.blake2b(key.encode(), digest_size=8).digest()
        return self._locks[int.from_bytes(digest, "big") % len(self._locks)]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Acquire the lock for ``key`` or raise AggregationError(lock_timeout)."""
        lock = self._shard(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._timeout)
        except TimeoutError:
            raise AggregationError(
                "lock_timeout", f"could not lock {key} within {self._timeout}s"
            ) from None
        try:
            yield
        finally:
            lock.release()


def section_key(student_id: str, section_id: str) -> str:
    return f"{student_id}:{section_id}"
