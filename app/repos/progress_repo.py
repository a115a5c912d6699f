from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from app.core.errors import VersionConflictError
from app.models.progress import CourseProgress, LessonProgress, SectionProgress


class ProgressRepo(Protocol):
    async def get_section(
        self, student_id: str, section_id: str
    ) -> SectionProgress | None: ...

    async def save_section(
        self, progress: SectionProgress, *, expected_version: int
    ) -> SectionProgress:
        """Persist ``progress`` if the stored version equals expected_version.

        Returns the stored row (version bumped).  Raises VersionConflictError
        when another writer got there first.  expected_version=0 means
        "create"; it conflicts if a row already exists.
        """
        ...

    async def list_sections(
        self,
        *,
        student_id: str | None = None,
        course_id: str | None = None,
        lesson_id: str | None = None,
        section_id: str | None = None,
    ) -> list[SectionProgress]: ...

    async def get_lesson(self, student_id: str, lesson_id: str) -> LessonProgress | None: ...
    async def put_lesson(self, progress: LessonProgress) -> None: ...
    async def list_lessons(
        self, *, student_id: str, course_id: str | None = None
    ) -> list[LessonProgress]: ...

    async def get_course(self, student_id: str, course_id: str) -> CourseProgress | None: ...
    async def put_course(self, progress: CourseProgress) -> None: ...
    async def list_courses(
        self, *, student_id: str | None = None, course_id: str | None = None
    ) -> list[CourseProgress]: ...

    async def purge_student(self, student_id: str) -> int: ...


class InMemoryProgressRepo:
    def __init__(self) -> None:
        self._sections: dict[tuple[str, str], SectionProgress] = {}
        self._lessons: dict[tuple[str, str], LessonProgress] = {}
        self._courses: dict[tuple[str, str], CourseProgress] = {}

    # --- sections ---

    async def get_section(
        self, student_id: str, section_id: str
    ) -> SectionProgress | None:
        return self._sections.get((student_id, section_id))

    async def save_section(
        self, progress: SectionProgress, *, expected_version: int
    ) -> SectionProgress:
        key = (progress.student_id, progress.section_id)
        current = self._sections.get(key)
        current_version = current.version if current is not None else 0
        if current_version != expected_version:
            raise VersionConflictError(
                f"section {progress.section_id} for student {progress.student_id} "
                f"is at version {current_version}, expected {expected_version}"
            )
        stored = replace(progress, version=expected_version + 1)
        self._sections[key] = stored
        return stored

    async def list_sections(
        self,
        *,
        student_id: str | None = None,
        course_id: str | None = None,
        lesson_id: str | None = None,
        section_id: str | None = None,
    ) -> list[SectionProgress]:
        return [
            p
            for p in self._sections.values()
            if (student_id is None or p.student_id == student_id)
            and (course_id is None or p.course_id == course_id)
            and (lesson_id is None or p.lesson_id == lesson_id)
            and (section_id is None or p.section_id == section_id)
        ]

    # --- lessons ---

    async def get_lesson(self, student_id: str, lesson_id: str) -> LessonProgress | None:
        return self._lessons.get((student_id, lesson_id))

    async def put_lesson(self, progress: LessonProgress) -> None:
        self._lessons[(progress.student_id, progress.lesson_id)] = progress

    async def list_lessons(
        self, *, student_id: str, course_id: str | None = None
    ) -> list[LessonProgress]:
        return [
            p
            for p in self._lessons.values()
            if p.student_id == student_id
            and (course_id is None or p.course_id == course_id)
        ]

    # --- courses ---

    async def get_course(self, student_id: str, course_id: str) -> CourseProgress | None:
        return self._courses.get((student_id, course_id))

    async def put_course(self, progress: CourseProgress) -> None:
        self._courses[(progress.student_id, progress.course_id)] = progress

    async def list_courses(
        self, *, student_id: str | None = None, course_id: str | None = None
    ) -> list[CourseProgress]:
        return [
            p
            for p in self._courses.values()
            if (student_id is None or p.student_id == student_id)
            and (course_id is None or p.course_id == course_id)
        ]

    async def purge_student(self, student_id: str) -> int:
        removed = 0
        for store in (self._sections, self._lessons, self._courses):
            doomed = [k for k in store if k[0] == student_id]
            for k in doomed:
                del store[k]
            removed += len(doomed)
        return removed

    def clear(self) -> None:
        self._sections.clear()
        self._lessons.clear()
        self._courses.clear()
