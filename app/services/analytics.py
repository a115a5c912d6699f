"""Analytics engine: read-only metrics over progress state and event history.

Nothing in this module writes to a progress repo.  Every snapshot is a
function of (event history, current section rows, window), recomputed on
demand; the materialized-view layer decides how long a result may be
reused.

METRICS
--------
  completion_rate    rows completed inside the window / rows in scope
  avg_engagement     mean per-(student, section) engagement, computed from
                     in-window interactions, time and attempts
  learning_velocity  Σ completion-percentage gained in the window /
                     active minutes in the window (null below 2 data points
                     or with no active time, never a misleading 0)
  total_time_spent   sum of clamped time_tick deltas in the window

Velocity needs to know how far each section had progressed at the window
start.  Rather than trusting stored rows (which only hold the latest
state), the engine replays each section's history through
progress_rules.apply_event, the same fold the aggregator runs.

CANCELLATION
-------------
Scanning a course's full history can be slow.  Callers pass a deadline;
the scan checks it between sections and yields to the event loop so the
write path is never starved.  Overrunning raises AnalyticsComputationError
and the caller may retry with a smaller window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.core.errors import AnalyticsComputationError
from app.core.metrics import ANALYTICS_DURATION, ANALYTICS_TIMEOUTS
from app.models.analytics import (
    AnalyticsSnapshot,
    ComparativeSnapshot,
    SnapshotMetrics,
    Subject,
    TrendDirection,
    Window,
)
from app.models.event import LearningEvent, TimeTickPayload
from app.models.progress import SectionProgress
from app.repos.content_catalog import ContentCatalog
from app.repos.event_log import EventLog
from app.repos.progress_repo import ProgressRepo
from app.services import progress_rules

logger = logging.getLogger(__name__)

# Fallback when a section has vanished from the catalog but still has history.
_DEFAULT_EXPECTED_DURATION = 600

# Yield to the event loop after this many sections.
_YIELD_EVERY = 50


class Deadline:
    """Cooperative cancellation point for long scans."""

    def __init__(self, seconds: float | None) -> None:
        self._seconds = seconds
        self._expires_at = time.monotonic() + seconds if seconds is not None else None

    @property
    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def check(self, what: str) -> None:
        if self.expired():
            raise AnalyticsComputationError(
                f"{what} exceeded its {self._seconds}s deadline; retry with a smaller window"
            )


@dataclass(frozen=True, slots=True)
class _SectionWindowStats:
    interactions: int
    attempts: int
    time_spent: int
    progress_gained: int


class AnalyticsEngine:
    def __init__(
        self,
        *,
        catalog: ContentCatalog,
        repo: ProgressRepo,
        event_log: EventLog,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._catalog = catalog
        self._repo = repo
        self._events = event_log
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def compute_snapshot(
        self,
        subject: Subject,
        window: Window,
        *,
        deadline: Deadline | None = None,
    ) -> AnalyticsSnapshot:
        deadline = deadline or Deadline(self._settings.analytics_timeout_seconds)
        start = time.monotonic()
        try:
            snapshot = await self._compute(subject, window, deadline)
        except AnalyticsComputationError:
            ANALYTICS_TIMEOUTS.labels(subject_kind=subject.kind).inc()
            logger.warning(
                "Analytics snapshot for %s:%s timed out",
                subject.kind,
                subject.id,
                extra={"error_kind": "timeout"},
            )
            raise
        finally:
            ANALYTICS_DURATION.labels(subject_kind=subject.kind).observe(
                time.monotonic() - start
            )
        return snapshot

    async def compare(
        self,
        subject: Subject,
        window: Window,
        *,
        deadline: Deadline | None = None,
    ) -> ComparativeSnapshot:
        """This window vs the adjacent, equal-length window before it."""
        deadline = deadline or Deadline(self._settings.analytics_timeout_seconds)
        current = await self.compute_snapshot(subject, window, deadline=deadline)
        previous = await self.compute_snapshot(
            subject, window.previous(), deadline=deadline
        )

        deadzone = self._settings.trend_deadzone
        cur, prev = current.metrics, previous.metrics
        trends: dict[str, TrendDirection] = {
            "completion_rate": trend(cur.completion_rate, prev.completion_rate, deadzone),
            "avg_engagement": trend(cur.avg_engagement, prev.avg_engagement, deadzone),
            "learning_velocity": trend(
                cur.learning_velocity, prev.learning_velocity, deadzone
            ),
            "total_time_spent": trend(
                cur.total_time_spent, prev.total_time_spent, deadzone
            ),
        }

        if cur.completion_rate is not None and prev.completion_rate is not None:
            headline = "completion_rate"
            change = relative_change(cur.completion_rate, prev.completion_rate)
        else:
            headline = "total_time_spent"
            change = relative_change(cur.total_time_spent, prev.total_time_spent)

        return ComparativeSnapshot(
            current=current,
            previous=previous,
            trend_direction=trends[headline],
            trends=trends,
            change=change,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _scope_rows(self, subject: Subject) -> list[SectionProgress]:
        if subject.kind == "student":
            return await self._repo.list_sections(student_id=subject.id)
        if subject.kind == "course":
            return await self._repo.list_sections(course_id=subject.id)
        return await self._repo.list_sections(section_id=subject.id)

    async def _scope_events(self, subject: Subject, window: Window) -> list[LearningEvent]:
        if subject.kind == "student":
            return await self._events.query(student_id=subject.id, until=window.end)
        if subject.kind == "course":
            return await self._events.query(course_id=subject.id, until=window.end)
        return await self._events.query(section_id=subject.id, until=window.end)

    async def _expected_duration(self, section_id: str, cache: dict[str, int]) -> int:
        if section_id not in cache:
            context = await self._catalog.resolve_section_context(section_id)
            cache[section_id] = (
                context.expected_duration_seconds
                if context is not None
                else _DEFAULT_EXPECTED_DURATION
            )
        return cache[section_id]

    async def _compute(
        self, subject: Subject, window: Window, deadline: Deadline
    ) -> AnalyticsSnapshot:
        computed_at = self._clock()

        rows = await self._scope_rows(subject)
        deadline.check("completion scan")
        completion_rate: float | None = None
        if rows:
            completed = sum(1 for r in rows if window.contains(r.completed_at))
            completion_rate = round(completed / len(rows), 6)

        events = await self._scope_events(subject, window)
        deadline.check("event history load")
        grouped: dict[tuple[str, str], list[LearningEvent]] = defaultdict(list)
        for event in events:
            grouped[(event.student_id, event.section_id)].append(event)

        policy = self._settings.engagement
        durations: dict[str, int] = {}
        engagement_scores: list[float] = []
        data_points = 0
        active_seconds = 0
        progress_gained = 0

        for index, ((_, section_id), history) in enumerate(sorted(grouped.items())):
            if index % _YIELD_EVERY == 0:
                deadline.check(f"{subject.kind} snapshot")
                await asyncio.sleep(0)

            stats = self._replay(history, window)
            if stats.interactions == 0:
                continue
            data_points += stats.interactions
            active_seconds += stats.time_spent
            progress_gained += stats.progress_gained
            engagement_scores.append(
                progress_rules.engagement_score(
                    interactions=stats.interactions,
                    time_spent_seconds=stats.time_spent,
                    attempts=stats.attempts,
                    expected_duration_seconds=await self._expected_duration(
                        section_id, durations
                    ),
                    policy=policy,
                )
            )

        avg_engagement = (
            round(sum(engagement_scores) / len(engagement_scores), 6)
            if engagement_scores
            else None
        )

        velocity: float | None = None
        if data_points >= 2 and active_seconds > 0:
            velocity = round(progress_gained / (active_seconds / 60), 6)

        return AnalyticsSnapshot(
            subject=subject,
            window=window,
            metrics=SnapshotMetrics(
                completion_rate=completion_rate,
                avg_engagement=avg_engagement,
                learning_velocity=velocity,
                total_time_spent=active_seconds,
                data_points=data_points,
            ),
            computed_at=computed_at,
        )

    def _replay(self, history: list[LearningEvent], window: Window) -> _SectionWindowStats:
        """Fold one section's history; measure what happened inside the window."""
        first = history[0]
        progress = SectionProgress.new(
            student_id=first.student_id,
            section_id=first.section_id,
            lesson_id=first.lesson_id,
            course_id=first.course_id,
        )
        ceiling = self._settings.tick_ceiling_seconds
        pct_at_start: int | None = None
        interactions = attempts = time_spent = 0

        for event in history:
            if event.event_id in progress.applied_event_ids:
                continue
            in_window = window.contains(event.occurred_at)
            if in_window and pct_at_start is None:
                pct_at_start = progress.completion_percentage
            progress, _ = progress_rules.apply_event(progress, event, tick_ceiling=ceiling)
            if not in_window:
                continue
            interactions += 1
            if event.type == "attempt":
                attempts += 1
            elif event.type == "time_tick" and isinstance(event.payload, TimeTickPayload):
                time_spent += progress_rules.clamp_tick(event.payload.delta_seconds, ceiling)

        gained = 0
        if pct_at_start is not None:
            gained = progress.completion_percentage - pct_at_start
        return _SectionWindowStats(
            interactions=interactions,
            attempts=attempts,
            time_spent=time_spent,
            progress_gained=gained,
        )


def relative_change(current: float | None, previous: float | None) -> float | None:
    if current is None or previous is None or previous == 0:
        return None
    return round((current - previous) / abs(previous), 6)


def trend(
    current: float | None, previous: float | None, deadzone: float
) -> TrendDirection:
    """Direction of change with a dead zone so noise reads as "stable".

    Changes are relative to the previous value; from a zero baseline any
    movement beyond the dead zone (in absolute terms) counts.
    """
    if current is None or previous is None:
        return "stable"
    if previous == 0:
        delta = current
    else:
        delta = (current - previous) / abs(previous)
    if abs(delta) < deadzone:
        return "stable"
    return "up" if delta > 0 else "down"
