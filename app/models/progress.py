from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True, slots=True)
class SectionProgress:
    """Canonical per-(student, section) progress row.

    Only the aggregator writes these, one section at a time.  ``version``
    is bumped on every write and checked by the repo (optimistic
    concurrency).  ``applied_event_ids`` is the idempotence set.
    """

    student_id: str
    section_id: str
    lesson_id: str
    course_id: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    time_spent_seconds: int = 0
    attempts_count: int = 0
    interaction_count: int = 0
    completion_percentage: int = 0
    engagement_score: float | None = None
    last_attempt_score: float | None = None
    last_event_id_applied: str | None = None
    applied_event_ids: frozenset[str] = field(default_factory=frozenset)
    version: int = 0

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    @staticmethod
    def new(
        *, student_id: str, section_id: str, lesson_id: str, course_id: str
    ) -> SectionProgress:
        return SectionProgress(
            student_id=student_id,
            section_id=section_id,
            lesson_id=lesson_id,
            course_id=course_id,
        )


@dataclass(frozen=True, slots=True)
class LessonProgress:
    """Projection, derived from SectionProgress plus current catalog flags."""

    student_id: str
    lesson_id: str
    course_id: str
    completed_sections: int = 0
    total_required_sections: int = 0
    progress_percentage: int = 0
    completed_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class CourseProgress:
    """Projection, derived from LessonProgress and section time."""

    student_id: str
    course_id: str
    completed_lessons: int = 0
    total_lessons: int = 0
    progress_percentage: int = 0
    completed_at: datetime | None = None
    time_spent_seconds: int = 0


@dataclass(frozen=True, slots=True)
class AggregationResult:
    """Outcome of applying one event.

    ``duplicate`` is True when the event_id had already been applied; the
    progress fields then reflect the current (unchanged) state.
    """

    event_id: str
    duplicate: bool
    section: SectionProgress
    lesson: LessonProgress | None = None
    course: CourseProgress | None = None
