from __future__ import annotations

from datetime import datetime
from typing import Protocol

from app.models.event import DeadLetter, LearningEvent


class EventLog(Protocol):
    """Append-only LearningEvent store plus the dead-letter audit trail."""

    async def append(self, event: LearningEvent) -> bool:
        """Store the event.  Returns False if the event_id was already logged."""
        ...

    async def get(self, event_id: str) -> LearningEvent | None: ...

    async def query(
        self,
        *,
        student_id: str | None = None,
        course_id: str | None = None,
        section_id: str | None = None,
        until: datetime | None = None,
    ) -> list[LearningEvent]:
        """Events matching every given filter, ordered by occurred_at."""
        ...

    async def add_dead_letter(self, record: DeadLetter) -> None: ...
    async def list_dead_letters(self, student_id: str | None = None) -> list[DeadLetter]: ...
    async def purge_student(self, student_id: str) -> int: ...


class InMemoryEventLog:
    def __init__(self) -> None:
        self._events: list[LearningEvent] = []
        self._by_id: dict[str, LearningEvent] = {}
        self._dead_letters: list[DeadLetter] = []

    async def append(self, event: LearningEvent) -> bool:
        if event.event_id in self._by_id:
            return False
        self._by_id[event.event_id] = event
        self._events.append(event)
        return True

    async def get(self, event_id: str) -> LearningEvent | None:
        return self._by_id.get(event_id)

    async def query(
        self,
        *,
        student_id: str | None = None,
        course_id: str | None = None,
        section_id: str | None = None,
        until: datetime | None = None,
    ) -> list[LearningEvent]:
        matches = [
            e
            for e in self._events
            if (student_id is None or e.student_id == student_id)
            and (course_id is None or e.course_id == course_id)
            and (section_id is None or e.section_id == section_id)
            and (until is None or e.occurred_at <= until)
        ]
        # sorted() is stable, so equal timestamps keep arrival order
        return sorted(matches, key=lambda e: e.occurred_at)

    async def add_dead_letter(self, record: DeadLetter) -> None:
        self._dead_letters.append(record)

    async def list_dead_letters(self, student_id: str | None = None) -> list[DeadLetter]:
        return [
            d
            for d in self._dead_letters
            if student_id is None or d.student_id == student_id
        ]

    async def purge_student(self, student_id: str) -> int:
        doomed = [e for e in self._events if e.student_id == student_id]
        for e in doomed:
            del self._by_id[e.event_id]
        self._events = [e for e in self._events if e.student_id != student_id]
        dead = [d for d in self._dead_letters if d.student_id == student_id]
        self._dead_letters = [
            d for d in self._dead_letters if d.student_id != student_id
        ]
        return len(doomed) + len(dead)

    def clear(self) -> None:
        self._events.clear()
        self._by_id.clear()
        self._dead_letters.clear()
