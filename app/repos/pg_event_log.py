"""PostgreSQL implementation of EventLog."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.tables import DeadLetterRow, LearningEventRow
from app.models.event import DeadLetter, LearningEvent


class PgEventLog:
    """Satisfies the EventLog Protocol using PostgreSQL via SQLAlchemy.

    Each call runs in its own short transaction: the log is appended to
    from many concurrent requests and read by long analytics scans, so no
    session outlives a single operation.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def append(self, event: LearningEvent) -> bool:
        stmt = (
            insert(LearningEventRow)
            .values(
                event_id=event.event_id,
                student_id=event.student_id,
                course_id=event.course_id,
                lesson_id=event.lesson_id,
                section_id=event.section_id,
                type=event.type,
                payload=event.payload_dict(),
                occurred_at=event.occurred_at,
                received_at=event.received_at,
            )
            .on_conflict_do_nothing(index_elements=["event_id"])
        )
        async with self._sessions() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def get(self, event_id: str) -> LearningEvent | None:
        stmt = select(LearningEventRow).where(LearningEventRow.event_id == event_id)
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return _row_to_event(row) if row is not None else None

    async def query(
        self,
        *,
        student_id: str | None = None,
        course_id: str | None = None,
        section_id: str | None = None,
        until: datetime | None = None,
    ) -> list[LearningEvent]:
        stmt = select(LearningEventRow)
        if student_id is not None:
            stmt = stmt.where(LearningEventRow.student_id == student_id)
        if course_id is not None:
            stmt = stmt.where(LearningEventRow.course_id == course_id)
        if section_id is not None:
            stmt = stmt.where(LearningEventRow.section_id == section_id)
        if until is not None:
            stmt = stmt.where(LearningEventRow.occurred_at <= until)
        stmt = stmt.order_by(LearningEventRow.occurred_at, LearningEventRow.received_at)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_event(r) for r in rows]

    async def add_dead_letter(self, record: DeadLetter) -> None:
        async with self._sessions() as session, session.begin():
            session.add(
                DeadLetterRow(
                    event_id=record.event_id,
                    student_id=record.student_id,
                    section_id=record.section_id,
                    kind=record.kind,
                    detail=record.detail,
                    recorded_at=record.recorded_at,
                )
            )

    async def list_dead_letters(self, student_id: str | None = None) -> list[DeadLetter]:
        stmt = select(DeadLetterRow).order_by(DeadLetterRow.id)
        if student_id is not None:
            stmt = stmt.where(DeadLetterRow.student_id == student_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            DeadLetter(
                event_id=r.event_id,
                student_id=r.student_id,
                section_id=r.section_id,
                kind=r.kind,
                detail=r.detail,
                recorded_at=r.recorded_at,
            )
            for r in rows
        ]

    async def purge_student(self, student_id: str) -> int:
        async with self._sessions() as session, session.begin():
            events = await session.execute(
                delete(LearningEventRow).where(LearningEventRow.student_id == student_id)
            )
            dead = await session.execute(
                delete(DeadLetterRow).where(DeadLetterRow.student_id == student_id)
            )
        return events.rowcount + dead.rowcount


def _row_to_event(row: LearningEventRow) -> LearningEvent:
    return LearningEvent.from_stored(
        event_id=row.event_id,
        student_id=row.student_id,
        course_id=row.course_id,
        lesson_id=row.lesson_id,
        section_id=row.section_id,
        type=row.type,
        payload=row.payload or {},
        occurred_at=row.occurred_at,
        received_at=row.received_at,
    )
