"""create progress tables

Revision ID: 3b7e1c9d2a40
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b7e1c9d2a40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "learning_events",
        sa.Column("event_id", sa.String(length=128), primary_key=True),
        sa.Column("student_id", sa.String(length=128), nullable=False),
        sa.Column("course_id", sa.String(length=128), nullable=False),
        sa.Column("lesson_id", sa.String(length=128), nullable=False),
        sa.Column("section_id", sa.String(length=128), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_learning_events_student_occurred",
        "learning_events",
        ["student_id", "occurred_at"],
    )
    op.create_index(
        "ix_learning_events_course_occurred",
        "learning_events",
        ["course_id", "occurred_at"],
    )
    op.create_index(
        "ix_learning_events_section_occurred",
        "learning_events",
        ["section_id", "occurred_at"],
    )

    op.create_table(
        "dead_letters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("student_id", sa.String(length=128), nullable=False),
        sa.Column("section_id", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_dead_letters_student_id", "dead_letters", ["student_id"])

    op.create_table(
        "section_progress",
        sa.Column("student_id", sa.String(length=128), primary_key=True),
        sa.Column("section_id", sa.String(length=128), primary_key=True),
        sa.Column("lesson_id", sa.String(length=128), nullable=False),
        sa.Column("course_id", sa.String(length=128), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("time_spent_seconds", sa.Integer(), nullable=False),
        sa.Column("attempts_count", sa.Integer(), nullable=False),
        sa.Column("interaction_count", sa.Integer(), nullable=False),
        sa.Column("completion_percentage", sa.Integer(), nullable=False),
        sa.Column("engagement_score", sa.Float(), nullable=True),
        sa.Column("last_attempt_score", sa.Float(), nullable=True),
        sa.Column("last_event_id_applied", sa.String(length=128), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_section_progress_course", "section_progress", ["course_id"])
    op.create_index("ix_section_progress_lesson", "section_progress", ["lesson_id"])

    op.create_table(
        "applied_events",
        sa.Column("student_id", sa.String(length=128), primary_key=True),
        sa.Column("section_id", sa.String(length=128), primary_key=True),
        sa.Column("event_id", sa.String(length=128), primary_key=True),
    )

    op.create_table(
        "lesson_progress",
        sa.Column("student_id", sa.String(length=128), primary_key=True),
        sa.Column("lesson_id", sa.String(length=128), primary_key=True),
        sa.Column("course_id", sa.String(length=128), nullable=False),
        sa.Column("completed_sections", sa.Integer(), nullable=False),
        sa.Column("total_required_sections", sa.Integer(), nullable=False),
        sa.Column("progress_percentage", sa.Integer(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_lesson_progress_course_id", "lesson_progress", ["course_id"])

    op.create_table(
        "course_progress",
        sa.Column("student_id", sa.String(length=128), primary_key=True),
        sa.Column("course_id", sa.String(length=128), primary_key=True),
        sa.Column("completed_lessons", sa.Integer(), nullable=False),
        sa.Column("total_lessons", sa.Integer(), nullable=False),
        sa.Column("progress_percentage", sa.Integer(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("time_spent_seconds", sa.Integer(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("course_progress")
    op.drop_index("ix_lesson_progress_course_id", table_name="lesson_progress")
    op.drop_table("lesson_progress")
    op.drop_table("applied_events")
    op.drop_index("ix_section_progress_lesson", table_name="section_progress")
    op.drop_index("ix_section_progress_course", table_name="section_progress")
    op.drop_table("section_progress")
    op.drop_index("ix_dead_letters_student_id", table_name="dead_letters")
    op.drop_table("dead_letters")
    op.drop_index("ix_learning_events_section_occurred", table_name="learning_events")
    op.drop_index("ix_learning_events_course_occurred", table_name="learning_events")
    op.drop_index("ix_learning_events_student_occurred", table_name="learning_events")
    op.drop_table("learning_events")
