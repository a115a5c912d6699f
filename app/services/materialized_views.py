"""Materialized views over progress and analytics.

Some reads are expensive (a course's stats scan every learner's history)
and hit often (dashboards refresh on every page load).  This layer keeps
precomputed views in the cache service with an explicit computed_at, and
lets each caller say how stale is acceptable.

READ PATH
----------
  1. consistency="strong" → always recompute, under a hard deadline.
     Failing the deadline raises StalenessViolationError.
  2. No entry → recompute (cache miss).
  3. Entry fresh (now - computed_at <= max_staleness AND not invalidated
     since computed_at) → return it (cache hit).
  4. Entry stale → depends on the view's refresh policy:
       sync                    recompute now; if that fails, serve the
                               stale entry flagged stale=True
       stale_while_revalidate  serve the stale entry immediately and
                               refresh in a background task

REFRESH POLICY PER VIEW
------------------------
  course_stats        sync: instructors expect numbers to match the
                      progress page they just looked at
  student_dashboard   sync: a learner who just finished a section must
                      see it
  course_leaderboard  stale_while_revalidate: ranking is a soft signal
                      and the most expensive view

INVALIDATION
-------------
Every aggregator write calls invalidate_for(student_id, course_id, ...).  That
writes an "invalidated at" marker next to each affected view instead of
deleting the view, so the payload survives as last-known-good.  A view is
fresh only if it was computed AFTER its latest marker; a refresh that
started before a concurrent write therefore stays stale.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.core.errors import AnalyticsComputationError, StalenessViolationError
from app.core.metrics import CACHE_OPERATIONS
from app.models.analytics import Subject, Window
from app.models.progress import CourseProgress, LessonProgress, SectionProgress
from app.repos.progress_repo import ProgressRepo
from app.services.analytics import AnalyticsEngine, Deadline
from app.services.cache import CacheService

logger = logging.getLogger(__name__)

ViewKind = Literal["course_stats", "student_dashboard", "course_leaderboard"]
RefreshPolicy = Literal["sync", "stale_while_revalidate"]

REFRESH_POLICIES: dict[str, RefreshPolicy] = {
    "course_stats": "sync",
    "student_dashboard": "sync",
    "course_leaderboard": "stale_while_revalidate",
}

# Analytics window the views summarize.
VIEW_WINDOW = timedelta(days=7)
LEADERBOARD_SIZE = 20


@dataclass(frozen=True, slots=True)
class ViewKey:
    kind: ViewKind
    subject_id: str

    def __str__(self) -> str:
        return f"view:{self.kind}:{self.subject_id}"

    @property
    def refresh_policy(self) -> RefreshPolicy:
        return REFRESH_POLICIES[self.kind]

    @staticmethod
    def parse(raw: str) -> ViewKey:
        prefix, kind, subject_id = raw.split(":", 2)
        if prefix != "view" or kind not in REFRESH_POLICIES or not subject_id:
            raise ValueError(f"not a view key: {raw!r}")
        return ViewKey(kind=kind, subject_id=subject_id)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class MaterializedView:
    key: ViewKey
    data: dict[str, Any]
    computed_at: datetime
    stale: bool
    refresh_policy: RefreshPolicy

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": str(self.key),
            "data": self.data,
            "computed_at": self.computed_at.isoformat(),
            "stale": self.stale,
            "refresh_policy": self.refresh_policy,
        }


def to_jsonable(row: SectionProgress | LessonProgress | CourseProgress) -> dict[str, Any]:
    """Dataclass row → JSON-safe dict (ISO datetimes, no idempotence set)."""
    out: dict[str, Any] = {}
    for name, value in asdict(row).items():
        if name == "applied_event_ids":
            continue
        out[name] = value.isoformat() if isinstance(value, datetime) else value
    return out


class MaterializedViewService:
    def __init__(
        self,
        *,
        cache: CacheService,
        analytics: AnalyticsEngine,
        repo: ProgressRepo,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._cache = cache
        self._analytics = analytics
        self._repo = repo
        self._settings = settings
        self._clock = clock
        self._refreshing: dict[str, asyncio.Task[MaterializedView]] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_materialized_view(
        self,
        key: ViewKey,
        max_staleness: timedelta,
        *,
        consistency: Literal["eventual", "strong"] = "eventual",
        deadline_seconds: float | None = None,
    ) -> MaterializedView:
        deadline = Deadline(
            deadline_seconds
            if deadline_seconds is not None
            else self._settings.analytics_timeout_seconds
        )

        if consistency == "strong":
            return await self._refresh_strict(key, deadline)

        cached = await self._load(key)
        if cached is None:
            CACHE_OPERATIONS.labels(operation="miss").inc()
            return await self.refresh(key, deadline=deadline)

        if cached.stale is False and self._clock() - cached.computed_at <= max_staleness:
            CACHE_OPERATIONS.labels(operation="hit").inc()
            return cached

        stale = MaterializedView(
            key=key,
            data=cached.data,
            computed_at=cached.computed_at,
            stale=True,
            refresh_policy=key.refresh_policy,
        )

        if key.refresh_policy == "stale_while_revalidate":
            CACHE_OPERATIONS.labels(operation="stale").inc()
            self._schedule_refresh(key)
            return stale

        try:
            return await self.refresh(key, deadline=deadline)
        except Exception:
            # Serve last-known-good rather than failing the read.
            CACHE_OPERATIONS.labels(operation="degraded").inc()
            logger.exception("Refresh of %s failed; serving stale view", key)
            return stale

    async def refresh(self, key: ViewKey, *, deadline: Deadline | None = None) -> MaterializedView:
        """Recompute a view and store it."""
        computed_at = self._clock()
        data = await self._compute(key, deadline or Deadline(None))
        view = MaterializedView(
            key=key,
            data=data,
            computed_at=computed_at,
            stale=False,
            refresh_policy=key.refresh_policy,
        )
        await self._cache_set(
            str(key),
            json.dumps({"data": data, "computed_at": computed_at.isoformat()}),
            self._settings.view_cache_ttl_seconds,
        )
        # A write that landed while we were computing must keep the view stale.
        if await self._invalidated_since(key, computed_at):
            view = MaterializedView(
                key=key,
                data=data,
                computed_at=computed_at,
                stale=True,
                refresh_policy=key.refresh_policy,
            )
        return view

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate(self, key: ViewKey) -> None:
        await self._cache_set(
            _marker(key),
            self._clock().isoformat(),
            self._settings.view_cache_ttl_seconds,
        )

    async def invalidate_for(
        self, student_id: str, course_id: str, section_id: str | None = None
    ) -> None:
        """Mark every view and snapshot whose scope includes this write stale."""
        for key in (
            ViewKey("student_dashboard", student_id),
            ViewKey("course_stats", course_id),
            ViewKey("course_leaderboard", course_id),
        ):
            await self.invalidate(key)
        subjects = [Subject("student", student_id), Subject("course", course_id)]
        if section_id is not None:
            subjects.append(Subject("section", section_id))
        for subject in subjects:
            await self._cache_set(
                _snapshot_marker(subject),
                self._clock().isoformat(),
                self._settings.view_cache_ttl_seconds,
            )

    async def purge_student(
        self,
        student_id: str,
        *,
        course_ids: Iterable[str] = (),
        section_ids: Iterable[str] = (),
    ) -> None:
        """Forget a learner: drop their dashboard, mark every shared scope stale.

        Course and section snapshots aggregate over all learners, so any
        cached copy computed before the erasure still counts this one.
        """
        key = ViewKey("student_dashboard", student_id)
        await self._cache_delete(str(key))
        await self._cache_delete(_marker(key))

        subjects = [Subject("student", student_id)]
        for course_id in course_ids:
            await self.invalidate(ViewKey("course_stats", course_id))
            await self.invalidate(ViewKey("course_leaderboard", course_id))
            subjects.append(Subject("course", course_id))
        subjects.extend(Subject("section", section_id) for section_id in section_ids)
        for subject in subjects:
            await self._cache_set(
                _snapshot_marker(subject),
                self._clock().isoformat(),
                self._settings.view_cache_ttl_seconds,
            )

    # ------------------------------------------------------------------
    # Snapshot cache
    # ------------------------------------------------------------------

    async def get_snapshot(
        self,
        subject: Subject,
        window: Window,
        *,
        fresh: bool = False,
        deadline: Deadline | None = None,
    ) -> dict[str, Any]:
        """An analytics snapshot, reused until a write touches its subject.

        ``fresh=True`` skips the cache and always recomputes.  The result
        carries ``cached`` so callers can tell which path served them.
        """
        key = (
            f"snapshot:{subject.kind}:{subject.id}"
            f":{window.start.isoformat()}:{window.end.isoformat()}"
        )
        if not fresh:
            raw = await self._cache_get(key)
            if raw is not None:
                entry = json.loads(raw)
                computed_at = datetime.fromisoformat(entry["computed_at"])
                marker = await self._cache_get(_snapshot_marker(subject))
                if marker is None or datetime.fromisoformat(marker) < computed_at:
                    CACHE_OPERATIONS.labels(operation="hit").inc()
                    return {**entry, "cached": True}
            CACHE_OPERATIONS.labels(operation="miss").inc()

        snapshot = await self._analytics.compute_snapshot(subject, window, deadline=deadline)
        entry = snapshot.as_dict()
        await self._cache_set(
            key, json.dumps(entry), self._settings.view_cache_ttl_seconds
        )
        return {**entry, "cached": False}

    async def aclose(self) -> None:
        """Cancel in-flight background refreshes (called on shutdown)."""
        tasks = list(self._refreshing.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshing.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    # Cache outages degrade to recompute-on-read; they never fail a read
    # or the write path that invalidates.

    async def _cache_get(self, key: str) -> str | None:
        try:
            return await self._cache.get(key)
        except Exception:
            CACHE_OPERATIONS.labels(operation="degraded").inc()
            logger.exception("Cache read of %s failed; treating as a miss", key)
            return None

    async def _cache_set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._cache.set(key, value, ttl_seconds)
        except Exception:
            CACHE_OPERATIONS.labels(operation="degraded").inc()
            logger.exception("Cache write of %s failed", key)

    async def _cache_delete(self, key: str) -> None:
        try:
            await self._cache.delete(key)
        except Exception:
            CACHE_OPERATIONS.labels(operation="degraded").inc()
            logger.exception("Cache delete of %s failed", key)

    async def _refresh_strict(self, key: ViewKey, deadline: Deadline) -> MaterializedView:
        try:
            async with asyncio.timeout(deadline.remaining):
                return await self.refresh(key, deadline=deadline)
        except (TimeoutError, AnalyticsComputationError) as exc:
            raise StalenessViolationError(
                f"could not recompute {key} within the requested deadline"
            ) from exc

    def _schedule_refresh(self, key: ViewKey) -> None:
        name = str(key)
        if name in self._refreshing:
            return
        task = asyncio.create_task(self.refresh(key))
        self._refreshing[name] = task
        task.add_done_callback(lambda t: self._on_refresh_done(name, t))

    def _on_refresh_done(self, name: str, task: asyncio.Task[MaterializedView]) -> None:
        self._refreshing.pop(name, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background refresh of %s failed: %r", name, exc)

    async def _load(self, key: ViewKey) -> MaterializedView | None:
        raw = await self._cache_get(str(key))
        if raw is None:
            return None
        entry = json.loads(raw)
        computed_at = datetime.fromisoformat(entry["computed_at"])
        return MaterializedView(
            key=key,
            data=entry["data"],
            computed_at=computed_at,
            stale=await self._invalidated_since(key, computed_at),
            refresh_policy=key.refresh_policy,
        )

    async def _invalidated_since(self, key: ViewKey, computed_at: datetime) -> bool:
        marker = await self._cache_get(_marker(key))
        return marker is not None and datetime.fromisoformat(marker) >= computed_at

    async def _compute(self, key: ViewKey, deadline: Deadline) -> dict[str, Any]:
        if key.kind == "course_stats":
            return await self._course_stats(key.subject_id, deadline)
        if key.kind == "student_dashboard":
            return await self._student_dashboard(key.subject_id, deadline)
        return await self._course_leaderboard(key.subject_id)

    def _window(self) -> Window:
        now = self._clock()
        return Window(start=now - VIEW_WINDOW, end=now)

    async def _course_stats(self, course_id: str, deadline: Deadline) -> dict[str, Any]:
        snapshot = await self._analytics.compute_snapshot(
            Subject("course", course_id), self._window(), deadline=deadline
        )
        courses = await self._repo.list_courses(course_id=course_id)
        sections = await self._repo.list_sections(course_id=course_id)
        learners = {s.student_id for s in sections} | {c.student_id for c in courses}
        avg_progress = (
            round(sum(c.progress_percentage for c in courses) / len(courses), 2)
            if courses
            else None
        )
        return {
            "course_id": course_id,
            "learners": len(learners),
            "completed_learners": sum(1 for c in courses if c.completed_at is not None),
            "avg_progress_percentage": avg_progress,
            "snapshot": snapshot.as_dict(),
        }

    async def _student_dashboard(self, student_id: str, deadline: Deadline) -> dict[str, Any]:
        comparison = await self._analytics.compare(
            Subject("student", student_id), self._window(), deadline=deadline
        )
        courses = await self._repo.list_courses(student_id=student_id)
        return {
            "student_id": student_id,
            "courses": [
                to_jsonable(c) for c in sorted(courses, key=lambda c: c.course_id)
            ],
            "comparison": comparison.as_dict(),
        }

    async def _course_leaderboard(self, course_id: str) -> dict[str, Any]:
        courses = await self._repo.list_courses(course_id=course_id)
        ranked = sorted(
            courses,
            key=lambda c: (-c.progress_percentage, -c.time_spent_seconds, c.student_id),
        )
        return {
            "course_id": course_id,
            "entries": [
                {
                    "rank": position,
                    "student_id": c.student_id,
                    "progress_percentage": c.progress_percentage,
                    "time_spent_seconds": c.time_spent_seconds,
                }
                for position, c in enumerate(ranked[:LEADERBOARD_SIZE], start=1)
            ],
        }


def _marker(key: ViewKey) -> str:
    return f"{key}:invalidated_at"


def _snapshot_marker(subject: Subject) -> str:
    return f"snapshot:{subject.kind}:{subject.id}:invalidated_at"
