"""Health and readiness endpoints.

LIVENESS vs READINESS
----------------------
  /health (liveness):
    "Is this process alive?"  Always 200 while the process can answer;
    the body reports per-dependency status and the recompute backlog.
    A failing liveness probe gets the container restarted, which is too
    aggressive for a Redis blip, so degraded dependencies are reported
    but never turn this into a 5xx.

  /ready (readiness):
    "Can this instance take traffic?"  503 when Postgres is configured
    but unreachable, since every write needs it.  Redis is optional: the
    cache and queue have in-memory fallbacks.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response, status
from sqlalchemy import text

from app.api.dependencies import ServicesDep
from app.core.metrics import QUEUE_DEPTH
from app.db.engine import engine
from app.db.redis import redis_pool
from app.services.task_queue import RECOMPUTE_QUEUE

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _database_ok() -> bool:
    if engine is None:
        return True
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.exception("Database health check failed")
        return False


@router.get("/health")
async def health(services: ServicesDep) -> dict:
    checks: dict[str, str] = {}
    overall = "ok"

    if redis_pool is not None:
        try:
            await redis_pool.ping()  # type: ignore[misc]
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "degraded"
            overall = "degraded"
    else:
        checks["redis"] = "not_configured"

    if engine is not None:
        if await _database_ok():
            checks["database"] = "ok"
        else:
            checks["database"] = "degraded"
            overall = "degraded"
    else:
        checks["database"] = "not_configured"

    backlog = 0
    try:
        backlog = await services.task_queue.queue_length(RECOMPUTE_QUEUE)
        QUEUE_DEPTH.labels(queue_name=RECOMPUTE_QUEUE).set(backlog)
    except Exception:
        checks["queue"] = "degraded"
        overall = "degraded"

    return {
        "status": overall,
        "checks": checks,
        "recompute_backlog": backlog,
        "recompute_mode": "inline" if services.settings.recompute_inline else "queued",
    }


@router.get("/ready")
async def ready() -> Response:
    if not await _database_ok():
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
