"""Student data export and erasure (GDPR access / right-to-be-forgotten).

Export gathers everything the engine holds about one learner: raw events,
dead letters, and every level of derived progress.  Erasure deletes the
same set, then drops the learner's dashboard view and marks every course
view and course or section snapshot they appeared in stale, so aggregate
numbers stop including them on the next read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from app.core.clock import Clock, utcnow
from app.models.progress import CourseProgress
from app.repos.event_log import EventLog
from app.repos.progress_repo import ProgressRepo
from app.services.materialized_views import MaterializedViewService, to_jsonable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ErasureReport:
    student_id: str
    events_deleted: int
    progress_rows_deleted: int
    courses_invalidated: tuple[str, ...]


class ComplianceService:
    def __init__(
        self,
        *,
        event_log: EventLog,
        repo: ProgressRepo,
        views: MaterializedViewService,
        clock: Clock = utcnow,
    ) -> None:
        self._events = event_log
        self._repo = repo
        self._views = views
        self._clock = clock

    async def export_student_data(self, student_id: str) -> dict[str, Any]:
        events = await self._events.query(student_id=student_id)
        dead_letters = await self._events.list_dead_letters(student_id=student_id)
        sections = await self._repo.list_sections(student_id=student_id)
        lessons = await self._repo.list_lessons(student_id=student_id)
        courses = await self._repo.list_courses(student_id=student_id)

        logger.info(
            "Exported data for student (%d events)",
            len(events),
            extra={"student_id": student_id},
        )
        return {
            "student_id": student_id,
            "exported_at": self._clock().isoformat(),
            "events": [
                {
                    "event_id": e.event_id,
                    "course_id": e.course_id,
                    "lesson_id": e.lesson_id,
                    "section_id": e.section_id,
                    "type": e.type,
                    "payload": e.payload_dict(),
                    "occurred_at": e.occurred_at.isoformat(),
                    "received_at": e.received_at.isoformat(),
                }
                for e in events
            ],
            "dead_letters": [
                {
                    "event_id": d.event_id,
                    "section_id": d.section_id,
                    "kind": d.kind,
                    "detail": d.detail,
                    "recorded_at": d.recorded_at.isoformat(),
                }
                for d in dead_letters
            ],
            "progress": {
                "sections": [to_jsonable(s) for s in sections],
                "lessons": [to_jsonable(p) for p in lessons],
                "courses": [to_jsonable(c) for c in courses],
            },
        }

    async def erase_student_data(self, student_id: str) -> ErasureReport:
        courses: list[CourseProgress] = await self._repo.list_courses(student_id=student_id)
        sections = await self._repo.list_sections(student_id=student_id)
        events = await self._events.query(student_id=student_id)
        course_ids = sorted(
            {c.course_id for c in courses}
            | {s.course_id for s in sections}
            | {e.course_id for e in events}
        )
        section_ids = sorted({s.section_id for s in sections} | {e.section_id for e in events})

        events_deleted = await self._events.purge_student(student_id)
        rows_deleted = await self._repo.purge_student(student_id)

        await self._views.purge_student(
            student_id, course_ids=course_ids, section_ids=section_ids
        )

        logger.warning(
            "Erased student data: %d events, %d progress rows, %d courses touched",
            events_deleted,
            rows_deleted,
            len(course_ids),
            extra={"student_id": student_id},
        )
        return ErasureReport(
            student_id=student_id,
            events_deleted=events_deleted,
            progress_rows_deleted=rows_deleted,
            courses_invalidated=tuple(course_ids),
        )
