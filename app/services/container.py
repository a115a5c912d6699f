"""Service wiring.

Every service takes its collaborators through keyword arguments, so one
function decides which backends are live:

  session_factory given  → PgEventLog / PgProgressRepo
  otherwise              → in-memory repositories
  redis_client given     → RedisCacheService / RedisTaskQueue
  otherwise              → in-memory cache and queue

The API lifespan and the worker both call build_services() with the
connections from app.db; tests call it with none and get a fully
in-memory engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.repos.content_catalog import InMemoryContentCatalog
from app.repos.event_log import EventLog, InMemoryEventLog
from app.repos.pg_event_log import PgEventLog
from app.repos.pg_progress_repo import PgProgressRepo
from app.repos.progress_repo import InMemoryProgressRepo, ProgressRepo
from app.services.aggregator import ProgressAggregator
from app.services.analytics import AnalyticsEngine
from app.services.cache import CacheService, InMemoryCacheService, RedisCacheService
from app.services.compliance import ComplianceService
from app.services.ingest import EventIngestService
from app.services.locks import KeyedLockPool
from app.services.materialized_views import MaterializedViewService
from app.services.recompute import ProgressRecomputer
from app.services.task_queue import InMemoryTaskQueue, RedisTaskQueue, TaskQueue

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    catalog: InMemoryContentCatalog
    event_log: EventLog
    repo: ProgressRepo
    cache: CacheService
    task_queue: TaskQueue
    recomputer: ProgressRecomputer
    analytics: AnalyticsEngine
    views: MaterializedViewService
    aggregator: ProgressAggregator
    ingest: EventIngestService
    compliance: ComplianceService
    clock: Clock = utcnow

    async def aclose(self) -> None:
        await self.views.aclose()


def build_services(
    settings: Settings,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis_client=None,
    catalog: InMemoryContentCatalog | None = None,
    clock: Clock = utcnow,
) -> Services:
    if catalog is None:
        if settings.content_catalog_path:
            catalog = InMemoryContentCatalog.from_json_file(settings.content_catalog_path)
            logger.info("Content catalog loaded from %s", settings.content_catalog_path)
        else:
            catalog = InMemoryContentCatalog()

    event_log: EventLog
    repo: ProgressRepo
    if session_factory is not None:
        event_log = PgEventLog(session_factory)
        repo = PgProgressRepo(session_factory)
    else:
        event_log = InMemoryEventLog()
        repo = InMemoryProgressRepo()

    cache: CacheService
    task_queue: TaskQueue
    if redis_client is not None:
        cache = RedisCacheService(redis_client)
        task_queue = RedisTaskQueue(redis_client)
    else:
        cache = InMemoryCacheService()
        task_queue = InMemoryTaskQueue()

    recomputer = ProgressRecomputer(catalog=catalog, repo=repo)
    analytics = AnalyticsEngine(
        catalog=catalog, repo=repo, event_log=event_log, settings=settings, clock=clock
    )
    views = MaterializedViewService(
        cache=cache, analytics=analytics, repo=repo, settings=settings, clock=clock
    )
    aggregator = ProgressAggregator(
        catalog=catalog,
        repo=repo,
        event_log=event_log,
        recomputer=recomputer,
        task_queue=task_queue,
        views=views,
        locks=KeyedLockPool(
            shards=settings.lock_shards, timeout_seconds=settings.lock_timeout_seconds
        ),
        settings=settings,
        clock=clock,
    )
    ingest = EventIngestService(
        catalog=catalog,
        event_log=event_log,
        aggregator=aggregator,
        settings=settings,
        clock=clock,
    )
    compliance = ComplianceService(
        event_log=event_log, repo=repo, views=views, clock=clock
    )

    logger.info(
        "Services built: storage=%s cache=%s recompute=%s",
        "postgres" if session_factory is not None else "memory",
        "redis" if redis_client is not None else "memory",
        "inline" if settings.recompute_inline else "queued",
    )
    return Services(
        settings=settings,
        catalog=catalog,
        event_log=event_log,
        repo=repo,
        cache=cache,
        task_queue=task_queue,
        recomputer=recomputer,
        analytics=analytics,
        views=views,
        aggregator=aggregator,
        ingest=ingest,
        compliance=compliance,
        clock=clock,
    )
