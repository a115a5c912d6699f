"""PostgreSQL implementation of ProgressRepo."""

from __future__ import annotations

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import VersionConflictError
from app.db.tables import (
    AppliedEventRow,
    CourseProgressRow,
    LessonProgressRow,
    SectionProgressRow,
)
from app.models.progress import CourseProgress, LessonProgress, SectionProgress

_SECTION_FIELDS = (
    "lesson_id",
    "course_id",
    "started_at",
    "completed_at",
    "time_spent_seconds",
    "attempts_count",
    "interaction_count",
    "completion_percentage",
    "engagement_score",
    "last_attempt_score",
    "last_event_id_applied",
)


class PgProgressRepo:
    """Satisfies the ProgressRepo Protocol using PostgreSQL via SQLAlchemy.

    Section writes use a version column as an optimistic lock:
    UPDATE ... WHERE version = :expected.  Zero rows updated means a
    concurrent writer won and the caller must re-read and retry.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    # --- sections ---

    async def get_section(
        self, student_id: str, section_id: str
    ) -> SectionProgress | None:
        async with self._sessions() as session:
            row = (
                await session.execute(
                    select(SectionProgressRow).where(
                        SectionProgressRow.student_id == student_id,
                        SectionProgressRow.section_id == section_id,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            applied = (
                await session.execute(
                    select(AppliedEventRow.event_id).where(
                        AppliedEventRow.student_id == student_id,
                        AppliedEventRow.section_id == section_id,
                    )
                )
            ).scalars().all()
        return _row_to_section(row, frozenset(applied))

    async def save_section(
        self, progress: SectionProgress, *, expected_version: int
    ) -> SectionProgress:
        values = {f: getattr(progress, f) for f in _SECTION_FIELDS}
        new_version = expected_version + 1
        try:
            async with self._sessions() as session, session.begin():
                if expected_version == 0:
                    session.add(
                        SectionProgressRow(
                            student_id=progress.student_id,
                            section_id=progress.section_id,
                            version=new_version,
                            **values,
                        )
                    )
                    await session.flush()
                else:
                    result = await session.execute(
                        update(SectionProgressRow)
                        .where(
                            SectionProgressRow.student_id == progress.student_id,
                            SectionProgressRow.section_id == progress.section_id,
                            SectionProgressRow.version == expected_version,
                        )
                        .values(version=new_version, **values)
                    )
                    if result.rowcount == 0:
                        raise VersionConflictError(
                            f"section {progress.section_id} for student "
                            f"{progress.student_id} moved past version {expected_version}"
                        )
                # The aggregator applies one event per write, so only the
                # newest id needs recording; replays hit ON CONFLICT.
                if progress.last_event_id_applied is not None:
                    await session.execute(
                        insert(AppliedEventRow)
                        .values(
                            student_id=progress.student_id,
                            section_id=progress.section_id,
                            event_id=progress.last_event_id_applied,
                        )
                        .on_conflict_do_nothing()
                    )
        except IntegrityError:
            raise VersionConflictError(
                f"section {progress.section_id} for student "
                f"{progress.student_id} was created concurrently"
            ) from None

        stored = await self.get_section(progress.student_id, progress.section_id)
        if stored is None:
            raise VersionConflictError(
                f"section {progress.section_id} for student "
                f"{progress.student_id} was erased during the write"
            )
        return stored

    async def list_sections(
        self,
        *,
        student_id: str | None = None,
        course_id: str | None = None,
        lesson_id: str | None = None,
        section_id: str | None = None,
    ) -> list[SectionProgress]:
        stmt = select(SectionProgressRow)
        if student_id is not None:
            stmt = stmt.where(SectionProgressRow.student_id == student_id)
        if course_id is not None:
            stmt = stmt.where(SectionProgressRow.course_id == course_id)
        if lesson_id is not None:
            stmt = stmt.where(SectionProgressRow.lesson_id == lesson_id)
        if section_id is not None:
            stmt = stmt.where(SectionProgressRow.section_id == section_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        # Listing is for reads and recompute; the idempotence set is only
        # needed on the write path (get_section).
        return [_row_to_section(r, frozenset()) for r in rows]

    # --- lessons ---

    async def get_lesson(self, student_id: str, lesson_id: str) -> LessonProgress | None:
        async with self._sessions() as session:
            row = await session.get(LessonProgressRow, (student_id, lesson_id))
        return _row_to_lesson(row) if row is not None else None

    async def put_lesson(self, progress: LessonProgress) -> None:
        values = {
            "course_id": progress.course_id,
            "completed_sections": progress.completed_sections,
            "total_required_sections": progress.total_required_sections,
            "progress_percentage": progress.progress_percentage,
            "completed_at": progress.completed_at,
        }
        stmt = (
            insert(LessonProgressRow)
            .values(student_id=progress.student_id, lesson_id=progress.lesson_id, **values)
            .on_conflict_do_update(index_elements=["student_id", "lesson_id"], set_=values)
        )
        async with self._sessions() as session, session.begin():
            await session.execute(stmt)

    async def list_lessons(
        self, *, student_id: str, course_id: str | None = None
    ) -> list[LessonProgress]:
        stmt = select(LessonProgressRow).where(LessonProgressRow.student_id == student_id)
        if course_id is not None:
            stmt = stmt.where(LessonProgressRow.course_id == course_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_lesson(r) for r in rows]

    # --- courses ---

    async def get_course(self, student_id: str, course_id: str) -> CourseProgress | None:
        async with self._sessions() as session:
            row = await session.get(CourseProgressRow, (student_id, course_id))
        return _row_to_course(row) if row is not None else None

    async def put_course(self, progress: CourseProgress) -> None:
        values = {
            "completed_lessons": progress.completed_lessons,
            "total_lessons": progress.total_lessons,
            "progress_percentage": progress.progress_percentage,
            "completed_at": progress.completed_at,
            "time_spent_seconds": progress.time_spent_seconds,
        }
        stmt = (
            insert(CourseProgressRow)
            .values(student_id=progress.student_id, course_id=progress.course_id, **values)
            .on_conflict_do_update(index_elements=["student_id", "course_id"], set_=values)
        )
        async with self._sessions() as session, session.begin():
            await session.execute(stmt)

    async def list_courses(
        self, *, student_id: str | None = None, course_id: str | None = None
    ) -> list[CourseProgress]:
        stmt = select(CourseProgressRow)
        if student_id is not None:
            stmt = stmt.where(CourseProgressRow.student_id == student_id)
        if course_id is not None:
            stmt = stmt.where(CourseProgressRow.course_id == course_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_course(r) for r in rows]

    async def purge_student(self, student_id: str) -> int:
        removed = 0
        async with self._sessions() as session, session.begin():
            for table in (
                AppliedEventRow,
                SectionProgressRow,
                LessonProgressRow,
                CourseProgressRow,
            ):
                result = await session.execute(
                    delete(table).where(table.student_id == student_id)
                )
                if table is not AppliedEventRow:
                    removed += result.rowcount
        return removed


def _row_to_section(row: SectionProgressRow, applied: frozenset[str]) -> SectionProgress:
    return SectionProgress(
        student_id=row.student_id,
        section_id=row.section_id,
        lesson_id=row.lesson_id,
        course_id=row.course_id,
        started_at=row.started_at,
        completed_at=row.completed_at,
        time_spent_seconds=row.time_spent_seconds,
        attempts_count=row.attempts_count,
        interaction_count=row.interaction_count,
        completion_percentage=row.completion_percentage,
        engagement_score=row.engagement_score,
        last_attempt_score=row.last_attempt_score,
        last_event_id_applied=row.last_event_id_applied,
        applied_event_ids=applied,
        version=row.version,
    )


def _row_to_lesson(row: LessonProgressRow) -> LessonProgress:
    return LessonProgress(
        student_id=row.student_id,
        lesson_id=row.lesson_id,
        course_id=row.course_id,
        completed_sections=row.completed_sections,
        total_required_sections=row.total_required_sections,
        progress_percentage=row.progress_percentage,
        completed_at=row.completed_at,
    )


def _row_to_course(row: CourseProgressRow) -> CourseProgress:
    return CourseProgress(
        student_id=row.student_id,
        course_id=row.course_id,
        completed_lessons=row.completed_lessons,
        total_lessons=row.total_lessons,
        progress_percentage=row.progress_percentage,
        completed_at=row.completed_at,
        time_spent_seconds=row.time_spent_seconds,
    )
