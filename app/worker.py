"""Background worker process: consumes the recompute outbox.

RUN:  python -m app.worker

WHY A SEPARATE PROCESS?
-------------------------
With RECOMPUTE_INLINE=false the API only writes the section row and
enqueues "recompute student S, lesson L, course C".  Lesson and course
derivation then happens here, so ingest latency stays flat however large
a course is, and workers scale independently of API replicas:

  api:    uvicorn app.main:app --host 0.0.0.0 --port 8000
  worker: python -m app.worker

DELIVERY AND FAILURE
---------------------
  startup     requeue_unacked(): tasks a crashed worker left in the
              processing list go back on the queue
  success     ack(): the task leaves Redis
  failure     retry(): requeued with attempts+1, after a backoff
  exhausted   after RETRY_ATTEMPTS failures the task is dropped, counted
              in dead_letters_total{kind="recompute_exhausted"} and logged
              at ERROR; orphaned_reference failures are dropped at once
              because they can never succeed

Recomputation re-derives from current state, so at-least-once delivery
is safe: a task that ran twice stores the same rows twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from app.core.config import SETTINGS
from app.core.errors import AggregationError
from app.core.logging import setup_logging
from app.core.metrics import DEAD_LETTERS, QUEUE_DEPTH
from app.services.container import Services, build_services
from app.services.task_queue import RECOMPUTE_QUEUE

TaskHandler = Callable[[Services, dict], Coroutine[Any, Any, None]]

logger = logging.getLogger("worker")


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


@register_handler(RECOMPUTE_QUEUE)
async def handle_recompute(services: Services, payload: dict) -> None:
    await services.aggregator.handle_recompute_task(payload)


# ---------------------------------------------------------------------------
# Worker loop
# ---------------------------------------------------------------------------


async def process_one(services: Services, queue_name: str, *, timeout: int = 1) -> bool:
    """Dequeue and handle one task.  Returns False when the queue was empty."""
    queue = services.task_queue
    task = await queue.dequeue(queue_name, timeout=timeout)
    if task is None:
        return False

    extra = {"task_id": task.id, "queue": queue_name}
    try:
        await HANDLERS[queue_name](services, task.payload)
    except AggregationError as exc:
        if exc.transient:
            await _retry_or_drop(services, task, exc)
        else:
            await queue.ack(task)
            DEAD_LETTERS.labels(kind=exc.kind).inc()
            logger.error(
                "Task %s dropped: %s",
                task.id,
                exc.detail,
                extra={**extra, "error_kind": exc.kind},
            )
    except Exception as exc:
        await _retry_or_drop(services, task, exc)
    else:
        await queue.ack(task)
        logger.info("Task %s on [%s] completed", task.id, queue_name, extra=extra)
    return True


async def _retry_or_drop(services: Services, task, exc: BaseException) -> None:
    settings = services.settings
    extra = {"task_id": task.id, "queue": task.queue}
    failures = task.attempts + 1
    if failures >= settings.retry_attempts:
        await services.task_queue.ack(task)
        DEAD_LETTERS.labels(kind="recompute_exhausted").inc()
        logger.error(
            "Task %s on [%s] failed %d times, giving up: %r",
            task.id,
            task.queue,
            failures,
            exc,
            extra={**extra, "error_kind": "recompute_exhausted"},
        )
        return

    backoff = settings.retry_backoff_seconds * (2 ** (failures - 1))
    logger.warning(
        "Task %s on [%s] failed (attempt %d/%d), retrying in %.2fs: %r",
        task.id,
        task.queue,
        failures,
        settings.retry_attempts,
        backoff,
        exc,
        extra=extra,
    )
    await asyncio.sleep(backoff)
    await services.task_queue.retry(task)


async def run_worker(services: Services) -> None:
    """Poll all registered queues and dispatch tasks to handlers."""
    queues = list(HANDLERS.keys())
    for queue_name in queues:
        recovered = await services.task_queue.requeue_unacked(queue_name)
        if recovered:
            logger.warning("Requeued %d unacked tasks on [%s]", recovered, queue_name)
    logger.info("Worker started, listening on queues: %s", queues)

    while True:
        busy = False
        for queue_name in queues:
            QUEUE_DEPTH.labels(queue_name=queue_name).set(
                await services.task_queue.queue_length(queue_name)
            )
            busy = await process_one(services, queue_name) or busy
        if not busy:
            # The in-memory queue returns immediately when empty.
            await asyncio.sleep(0.1)


async def main() -> None:
    from app.db.engine import async_session_factory, engine
    from app.db.redis import redis_pool

    if redis_pool is None:
        logger.warning(
            "No REDIS_URL configured; the worker's in-memory queue is not shared "
            "with the API; run with RECOMPUTE_INLINE=true instead"
        )
    services = build_services(
        SETTINGS, session_factory=async_session_factory, redis_client=redis_pool
    )
    try:
        await run_worker(services)
    finally:
        await services.aclose()
        if engine is not None:
            await engine.dispose()
        if redis_pool is not None:
            await redis_pool.aclose()


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(main())
