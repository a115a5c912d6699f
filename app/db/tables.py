"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in app/models/.
The domain models stay as-is; these tables are the persistence layer.
Repos convert between SQLAlchemy rows and domain dataclasses.
"""

from __future__ import annotations

import datetime

from sqlalchemy import DateTime, Float, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.engine import Base

# --- Event log (append-only source of truth) ---


class LearningEventRow(Base):
    __tablename__ = "learning_events"
    __table_args__ = (
        Index("ix_learning_events_student_occurred", "student_id", "occurred_at"),
        Index("ix_learning_events_course_occurred", "course_id", "occurred_at"),
        Index("ix_learning_events_section_occurred", "section_id", "occurred_at"),
    )

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    student_id: Mapped[str] = mapped_column(String(128), nullable=False)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lesson_id: Mapped[str] = mapped_column(String(128), nullable=False)
    section_id: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(
        String(16), nullable=False
    )  # view|complete|attempt|time_tick
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    occurred_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    received_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class DeadLetterRow(Base):
    __tablename__ = "dead_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    student_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    section_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
    recorded_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


# --- Canonical progress ---


class SectionProgressRow(Base):
    __tablename__ = "section_progress"
    __table_args__ = (
        Index("ix_section_progress_course", "course_id"),
        Index("ix_section_progress_lesson", "lesson_id"),
    )

    student_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    section_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lesson_id: Mapped[str] = mapped_column(String(128), nullable=False)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    started_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    time_spent_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    interaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_percentage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    engagement_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_attempt_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_event_id_applied: Mapped[str | None] = mapped_column(
        String(128), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class AppliedEventRow(Base):
    """Idempotence set: one row per event applied to a section."""

    __tablename__ = "applied_events"

    student_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    section_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)


# --- Derived projections ---


class LessonProgressRow(Base):
    __tablename__ = "lesson_progress"

    student_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lesson_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    completed_sections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_required_sections: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class CourseProgressRow(Base):
    __tablename__ = "course_progress"

    student_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    completed_lessons: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_lessons: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    time_spent_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
