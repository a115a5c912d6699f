"""Background task queue: the recompute outbox.

WHY A QUEUE FOR RECOMPUTATION
-------------------------------
Applying an event touches exactly one SectionProgress row.  Lesson and
course progress are DERIVED from many section rows, and recomputing them
synchronously on every event would put the whole cascade on the hot
write path.  Instead the aggregator enqueues a "recompute student S,
lesson L, course C" task and a worker (app/worker.py) consumes it.

Recomputation is idempotent (it re-derives from current section state),
so running the same task twice is harmless.  That lets us use the
simplest reliable delivery model: AT-LEAST-ONCE.

THE PRODUCER/CONSUMER PATTERN
-------------------------------
  Producer (aggregator): LPUSH task onto tasks:<queue>
  Consumer (worker):     BLMOVE tasks:<queue> → tasks:<queue>:processing
                         ... handle ...
                         LREM the task from :processing (ack)

BLMOVE atomically moves the task into a processing list, so a worker
that crashes mid-task leaves the task in :processing rather than losing
it.  On startup the worker calls requeue_unacked() to push anything
left there back onto the main list.  That is the at-least-once
guarantee: a task leaves Redis only after its handler succeeded.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, replace
from typing import Protocol, runtime_checkable

RECOMPUTE_QUEUE = "progress_recompute"


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of background work.

    id:       Unique identifier for tracking and logging.
    queue:    Which queue this task belongs to.
    payload:  Data the handler needs (JSON-serializable).
    attempts: How many times a handler has already failed on it.
    """

    id: str
    queue: str
    payload: dict
    attempts: int = 0


def _encode(task: Task) -> str:
    # sort_keys makes the encoding deterministic, so ack() can LREM the
    # exact string that BLMOVE handed out.
    return json.dumps(
        {
            "id": task.id,
            "queue": task.queue,
            "payload": task.payload,
            "attempts": task.attempts,
        },
        sort_keys=True,
    )


@runtime_checkable
class TaskQueue(Protocol):
    async def enqueue(self, queue: str, payload: dict) -> Task: ...
    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None: ...
    async def ack(self, task: Task) -> None: ...
    async def retry(self, task: Task) -> Task: ...
    async def requeue_unacked(self, queue: str) -> int: ...
    async def queue_length(self, queue: str) -> int: ...


class InMemoryTaskQueue:
    """In-memory task queue for tests and single-process dev; no Redis needed."""

    def __init__(self) -> None:
        self._queues: dict[str, list[Task]] = {}
        self._processing: dict[str, list[Task]] = {}

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task(id=str(uuid.uuid4()), queue=queue, payload=payload)
        self._queues.setdefault(queue, []).append(task)
        return task

    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None:
        tasks = self._queues.get(queue, [])
        if not tasks:
            return None
        task = tasks.pop(0)  # FIFO: remove from front
        self._processing.setdefault(queue, []).append(task)
        return task

    async def ack(self, task: Task) -> None:
        pending = self._processing.get(task.queue, [])
        if task in pending:
            pending.remove(task)

    async def retry(self, task: Task) -> Task:
        await self.ack(task)
        again = replace(task, attempts=task.attempts + 1)
        self._queues.setdefault(task.queue, []).append(again)
        return again

    async def requeue_unacked(self, queue: str) -> int:
        pending = self._processing.pop(queue, [])
        self._queues.setdefault(queue, [])[:0] = pending
        return len(pending)

    async def queue_length(self, queue: str) -> int:
        return len(self._queues.get(queue, []))


class RedisTaskQueue:
    """Redis-backed task queue using LPUSH / BLMOVE / LREM."""

    _PREFIX = "tasks:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    def _key(self, queue: str) -> str:
        return f"{self._PREFIX}{queue}"

    def _processing_key(self, queue: str) -> str:
        return f"{self._PREFIX}{queue}:processing"

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task(id=str(uuid.uuid4()), queue=queue, payload=payload)
        await self._redis.lpush(self._key(queue), _encode(task))
        return task

    async def dequeue(self, queue: str, timeout: int = 5) -> Task | None:
        # BLMOVE waits up to `timeout` seconds, then returns None.
        raw = await self._redis.blmove(
            self._key(queue),
            self._processing_key(queue),
            timeout,
            src="RIGHT",
            dest="LEFT",
        )
        if raw is None:
            return None
        return Task(**json.loads(raw))

    async def ack(self, task: Task) -> None:
        await self._redis.lrem(self._processing_key(task.queue), 1, _encode(task))

    async def retry(self, task: Task) -> Task:
        again = replace(task, attempts=task.attempts + 1)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing_key(task.queue), 1, _encode(task))
            pipe.lpush(self._key(task.queue), _encode(again))
            await pipe.execute()
        return again

    async def requeue_unacked(self, queue: str) -> int:
        moved = 0
        while await self._redis.lmove(
            self._processing_key(queue), self._key(queue), src="LEFT", dest="RIGHT"
        ):
            moved += 1
        return moved

    async def queue_length(self, queue: str) -> int:
        return await self._redis.llen(self._key(queue))
