"""Progress aggregator, the only writer of SectionProgress.

APPLYING ONE EVENT
-------------------
  1. Resolve the section in the content catalog.  If it (or its
     lesson/course) no longer resolves, the event is ORPHANED: record a
     dead letter, log, raise AggregationError(orphaned_reference).  Never
     retried (it cannot succeed) and isolated to this one event.
  2. Under the per-section lock:
       read row → event_id already applied? → return as duplicate
       fold the event (progress_rules.apply_event) → refresh engagement
       save with expected_version (optimistic check)
     Lock timeouts and version conflicts are TRANSIENT: retried with
     exponential backoff up to RETRY_ATTEMPTS, then surfaced as
     AggregationError(lock_timeout).
  3. Schedule lesson → course recomputation.  Inline mode runs it now
     (read-your-writes for the API); queue mode hands it to the worker
     through the progress_recompute outbox.
  4. Invalidate materialized views scoped to this student and course.

IDEMPOTENCE
------------
Ingest may redeliver (client retries, at-least-once queues).  The
applied-event-id set on each section row turns any replay into a no-op
that returns the current state, so a time_tick delivered twice counts
once and a late duplicate of an old event cannot move completed_at.
In inline mode a replay still re-derives the lesson and course, so a
recompute that failed after the section write is repaired by the
client's retry."""

from __future__ import annotations

import asyncio
import logging
import time

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.core.errors import AggregationError, VersionConflictError
from app.core.metrics import (
    AGGREGATION_DURATION,
    AGGREGATION_RETRIES,
    DEAD_LETTERS,
    EVENTS_DUPLICATE,
    TICKS_TRUNCATED,
)
from app.models.content import SectionContext
from app.models.event import DeadLetter, LearningEvent
from app.models.progress import (
    AggregationResult,
    CourseProgress,
    LessonProgress,
    SectionProgress,
)
from app.repos.content_catalog import ContentCatalog
from app.repos.event_log import EventLog
from app.repos.progress_repo import ProgressRepo
from app.services import progress_rules
from app.services.locks import KeyedLockPool, section_key
from app.services.materialized_views import MaterializedViewService
from app.services.recompute import ProgressRecomputer
from app.services.task_queue import RECOMPUTE_QUEUE, TaskQueue

logger = logging.getLogger(__name__)


class ProgressAggregator:
    def __init__(
        self,
        *,
        catalog: ContentCatalog,
        repo: ProgressRepo,
        event_log: EventLog,
        recomputer: ProgressRecomputer,
        task_queue: TaskQueue,
        views: MaterializedViewService,
        locks: KeyedLockPool,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._catalog = catalog
        self._repo = repo
        self._events = event_log
        self._recomputer = recomputer
        self._queue = task_queue
        self._views = views
        self._locks = locks
        self._settings = settings
        self._clock = clock

    async def apply_event(self, event: LearningEvent) -> AggregationResult:
        start = time.monotonic()
        try:
            context = await self._resolve(event)
            section, duplicate = await self._apply_with_retry(event, context)
        finally:
            AGGREGATION_DURATION.observe(time.monotonic() - start)

        if duplicate:
            EVENTS_DUPLICATE.inc()
            logger.info(
                "Duplicate event %s ignored",
                event.event_id,
                extra=_log_context(event),
            )
            lesson, course = await self._settle_duplicate(event)
            return AggregationResult(
                event_id=event.event_id,
                duplicate=True,
                section=section,
                lesson=lesson,
                course=course,
            )

        lesson, course = None, None
        if self._settings.recompute_inline:
            lesson, course = await self._recomputer.recompute(
                event.student_id, event.lesson_id, event.course_id
            )
        else:
            await self._queue.enqueue(
                RECOMPUTE_QUEUE,
                {
                    "student_id": event.student_id,
                    "lesson_id": event.lesson_id,
                    "course_id": event.course_id,
                },
            )
            lesson = await self._repo.get_lesson(event.student_id, event.lesson_id)
            course = await self._repo.get_course(event.student_id, event.course_id)

        await self._views.invalidate_for(
            event.student_id, event.course_id, event.section_id
        )
        return AggregationResult(
            event_id=event.event_id,
            duplicate=False,
            section=section,
            lesson=lesson,
            course=course,
        )

    async def handle_recompute_task(self, payload: dict) -> None:
        """Worker entry point for progress_recompute tasks."""
        await self._recomputer.handle_task(payload)
        # Views computed between the section write and now saw old lesson
        # and course rows; mark them stale again.
        await self._views.invalidate_for(payload["student_id"], payload["course_id"])

    async def handle_requirement_change(self, section_id: str) -> int:
        """Re-derive a lesson for every student after a required-flag flip.

        Lesson completion always follows the CURRENT flags, so this can
        complete a lesson (flag turned off) or un-complete one (turned on).
        Returns the number of students scheduled.
        """
        context = await self._catalog.resolve_section_context(section_id)
        if context is None:
            raise AggregationError(
                "orphaned_reference", f"section {section_id} no longer exists"
            )
        rows = await self._repo.list_sections(lesson_id=context.lesson_id)
        students = sorted({r.student_id for r in rows})
        for student_id in students:
            payload = {
                "student_id": student_id,
                "lesson_id": context.lesson_id,
                "course_id": context.course_id,
            }
            if self._settings.recompute_inline:
                await self.handle_recompute_task(payload)
            else:
                await self._queue.enqueue(RECOMPUTE_QUEUE, payload)
        logger.info(
            "Requirement change on section=%s rescheduled %d students",
            section_id,
            len(students),
        )
        return len(students)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _settle_duplicate(
        self, event: LearningEvent
    ) -> tuple[LessonProgress | None, CourseProgress | None]:
        """Finish the cascade an earlier delivery may have left half done.

        The first delivery saves the section row before the inline
        recompute runs; if that recompute failed, the redelivery is the
        only thing left that can derive the lesson and course.
        """
        lesson = await self._repo.get_lesson(event.student_id, event.lesson_id)
        course = await self._repo.get_course(event.student_id, event.course_id)
        if not self._settings.recompute_inline:
            return lesson, course

        fresh_lesson, fresh_course = await self._recomputer.recompute(
            event.student_id, event.lesson_id, event.course_id
        )
        if (fresh_lesson, fresh_course) != (lesson, course):
            logger.warning(
                "Redelivery of %s repaired lesson=%s course=%s",
                event.event_id,
                event.lesson_id,
                event.course_id,
                extra=_log_context(event),
            )
            await self._views.invalidate_for(
                event.student_id, event.course_id, event.section_id
            )
        return fresh_lesson, fresh_course

    async def _resolve(self, event: LearningEvent) -> SectionContext:
        context = await self._catalog.resolve_section_context(event.section_id)
        problem: str | None = None
        if context is None:
            problem = f"section {event.section_id} no longer exists"
        elif context.lesson_id != event.lesson_id or context.course_id != event.course_id:
            problem = (
                f"section {event.section_id} now belongs to lesson "
                f"{context.lesson_id} in course {context.course_id}"
            )
        else:
            lessons = await self._catalog.course_lessons(event.course_id)
            if lessons is None or event.lesson_id not in lessons:
                problem = (
                    f"lesson {event.lesson_id} is not part of course {event.course_id}"
                )

        if problem is None and context is not None:
            return context
        problem = problem or f"section {event.section_id} no longer exists"

        DEAD_LETTERS.labels(kind="orphaned_reference").inc()
        await self._events.add_dead_letter(
            DeadLetter(
                event_id=event.event_id,
                student_id=event.student_id,
                section_id=event.section_id,
                kind="orphaned_reference",
                detail=problem,
                recorded_at=self._clock(),
            )
        )
        logger.error(
            "Dropping event %s: %s",
            event.event_id,
            problem,
            extra={**_log_context(event), "error_kind": "orphaned_reference"},
        )
        raise AggregationError("orphaned_reference", problem)

    async def _apply_with_retry(
        self, event: LearningEvent, context: SectionContext
    ) -> tuple[SectionProgress, bool]:
        attempts = self._settings.retry_attempts
        key = section_key(event.student_id, event.section_id)
        for attempt in range(1, attempts + 1):
            try:
                async with self._locks.hold(key):
                    return await self._apply_once(event, context)
            except VersionConflictError:
                reason = "version_conflict"
            except AggregationError as exc:
                if not exc.transient:
                    raise
                reason = "lock_timeout"

            if attempt == attempts:
                logger.error(
                    "Giving up on event %s after %d attempts (%s)",
                    event.event_id,
                    attempts,
                    reason,
                    extra={**_log_context(event), "error_kind": "lock_timeout"},
                )
                raise AggregationError(
                    "lock_timeout",
                    f"section {event.section_id} stayed contended after {attempts} attempts",
                )

            AGGREGATION_RETRIES.labels(reason=reason).inc()
            backoff = self._settings.retry_backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Retrying event %s in %.3fs (%s, attempt %d/%d)",
                event.event_id,
                backoff,
                reason,
                attempt,
                attempts,
                extra=_log_context(event),
            )
            await asyncio.sleep(backoff)

        raise AssertionError("unreachable")

    async def _apply_once(
        self, event: LearningEvent, context: SectionContext
    ) -> tuple[SectionProgress, bool]:
        current = await self._repo.get_section(event.student_id, event.section_id)
        if current is not None and event.event_id in current.applied_event_ids:
            return current, True

        base = current or SectionProgress.new(
            student_id=event.student_id,
            section_id=event.section_id,
            lesson_id=event.lesson_id,
            course_id=event.course_id,
        )
        updated, truncated = progress_rules.apply_event(
            base, event, tick_ceiling=self._settings.tick_ceiling_seconds
        )
        if truncated:
            TICKS_TRUNCATED.inc()
            logger.warning(
                "time_tick %s truncated to %ds ceiling",
                event.event_id,
                self._settings.tick_ceiling_seconds,
                extra=_log_context(event),
            )
        updated = progress_rules.with_engagement(
            updated,
            expected_duration_seconds=context.expected_duration_seconds,
            policy=self._settings.engagement,
        )
        stored = await self._repo.save_section(updated, expected_version=base.version)
        return stored, False


def _log_context(event: LearningEvent) -> dict[str, str]:
    return {
        "student_id": event.student_id,
        "section_id": event.section_id,
        "event_id": event.event_id,
    }
