"""Lesson and course recomputation, the consumer side of the outbox.

Both levels are pure re-derivations from current state, so a task can be
delivered twice (at-least-once queue) or run concurrently with another
recompute for the same student without corrupting anything: the last
writer stores the same value the first one did, or a fresher one.
"""

from __future__ import annotations

import logging

from app.core.errors import AggregationError
from app.core.metrics import RECOMPUTATIONS
from app.models.progress import CourseProgress, LessonProgress
from app.repos.content_catalog import ContentCatalog
from app.repos.progress_repo import ProgressRepo
from app.services import progress_rules

logger = logging.getLogger(__name__)


class ProgressRecomputer:
    def __init__(self, *, catalog: ContentCatalog, repo: ProgressRepo) -> None:
        self._catalog = catalog
        self._repo = repo

    async def recompute_lesson(
        self, student_id: str, lesson_id: str, course_id: str
    ) -> LessonProgress:
        sections = await self._catalog.lesson_sections(lesson_id)
        rows = await self._repo.list_sections(student_id=student_id, lesson_id=lesson_id)
        lesson = progress_rules.derive_lesson(
            student_id=student_id,
            lesson_id=lesson_id,
            course_id=course_id,
            sections=sections,
            progress_by_section={r.section_id: r for r in rows},
        )
        await self._repo.put_lesson(lesson)
        RECOMPUTATIONS.labels(level="lesson").inc()
        return lesson

    async def recompute_course(self, student_id: str, course_id: str) -> CourseProgress:
        lesson_ids = await self._catalog.course_lessons(course_id)
        if lesson_ids is None:
            raise AggregationError(
                "orphaned_reference", f"course {course_id} no longer exists"
            )
        lessons = await self._repo.list_lessons(student_id=student_id, course_id=course_id)
        sections = await self._repo.list_sections(student_id=student_id, course_id=course_id)
        course = progress_rules.derive_course(
            student_id=student_id,
            course_id=course_id,
            lesson_ids=lesson_ids,
            lessons_by_id={p.lesson_id: p for p in lessons},
            time_spent_seconds=sum(s.time_spent_seconds for s in sections),
        )
        await self._repo.put_course(course)
        RECOMPUTATIONS.labels(level="course").inc()
        return course

    async def recompute(
        self, student_id: str, lesson_id: str, course_id: str
    ) -> tuple[LessonProgress, CourseProgress]:
        """Lesson first, then course; the course reads the fresh lesson row."""
        lesson_ids = await self._catalog.course_lessons(course_id)
        if lesson_ids is None or lesson_id not in lesson_ids:
            raise AggregationError(
                "orphaned_reference",
                f"lesson {lesson_id} is not part of course {course_id}",
            )
        lesson = await self.recompute_lesson(student_id, lesson_id, course_id)
        course = await self.recompute_course(student_id, course_id)
        logger.debug(
            "Recomputed lesson=%s (%d%%) course=%s (%d%%)",
            lesson_id,
            lesson.progress_percentage,
            course_id,
            course.progress_percentage,
            extra={"student_id": student_id, "course_id": course_id},
        )
        return lesson, course

    async def handle_task(self, payload: dict) -> None:
        """Worker entry point for a progress_recompute task."""
        await self.recompute(
            payload["student_id"], payload["lesson_id"], payload["course_id"]
        )
