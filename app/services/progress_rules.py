"""Pure progress rules.

Everything here is a function of its arguments: no I/O, no clock, no
repos.  The aggregator uses these to apply live events; the analytics
engine uses the very same functions to replay history, so a replayed
section can never disagree with the stored one.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import datetime

from app.core.config import EngagementPolicy
from app.models.content import SectionContext
from app.models.event import (
    AttemptPayload,
    LearningEvent,
    TimeTickPayload,
    ViewPayload,
)
from app.models.progress import CourseProgress, LessonProgress, SectionProgress


def percent(numerator: int, denominator: int) -> int:
    """round(numerator / denominator * 100), halves rounded up.

    Integer arithmetic only, so 1/8 is 13 and not float-dependent.
    """
    if denominator <= 0:
        return 0
    return (200 * numerator + denominator) // (2 * denominator)


def clamp_tick(delta_seconds: int, ceiling: int) -> int:
    return max(0, min(delta_seconds, ceiling))


def engagement_score(
    *,
    interactions: int,
    time_spent_seconds: int,
    attempts: int,
    expected_duration_seconds: int,
    policy: EngagementPolicy,
) -> float:
    """Weighted sum of saturating ratios, in [0, 1].

    Each ratio is capped at 1.0 and non-decreasing in its input, so more
    engagement signal never lowers the score.
    """
    w_interactions, w_time, w_attempts = policy.normalized_weights
    interaction_ratio = min(1.0, interactions / policy.interaction_baseline)
    if expected_duration_seconds > 0:
        time_ratio = min(1.0, time_spent_seconds / expected_duration_seconds)
    else:
        time_ratio = 1.0 if time_spent_seconds > 0 else 0.0
    attempt_ratio = min(1.0, attempts / policy.normal_attempts)
    score = (
        w_interactions * interaction_ratio
        + w_time * time_ratio
        + w_attempts * attempt_ratio
    )
    return round(min(1.0, max(0.0, score)), 6)


def _complete(progress: SectionProgress, at: datetime) -> SectionProgress:
    # First completion wins: completed_at is never moved once set.
    if progress.completed_at is not None:
        return replace(progress, completion_percentage=100)
    return replace(progress, completion_percentage=100, completed_at=at)


def apply_event(
    progress: SectionProgress,
    event: LearningEvent,
    *,
    tick_ceiling: int,
) -> tuple[SectionProgress, bool]:
    """Fold one event into a section row.

    Returns the new row and whether a time_tick was truncated.  The caller
    is responsible for the idempotence check; this function assumes the
    event has not been applied yet.
    """
    truncated = False
    started_at = progress.started_at
    if started_at is None or event.occurred_at < started_at:
        started_at = event.occurred_at

    updated = replace(
        progress,
        started_at=started_at,
        interaction_count=progress.interaction_count + 1,
        last_event_id_applied=event.event_id,
        applied_event_ids=progress.applied_event_ids | {event.event_id},
    )

    payload = event.payload
    if event.type == "complete":
        updated = _complete(updated, event.occurred_at)
    elif event.type == "view" and isinstance(payload, ViewPayload):
        reported = payload.progress_percentage
        if reported is not None and reported > updated.completion_percentage:
            if reported >= 100:
                updated = _complete(updated, event.occurred_at)
            else:
                updated = replace(updated, completion_percentage=reported)
    elif event.type == "time_tick" and isinstance(payload, TimeTickPayload):
        delta = clamp_tick(payload.delta_seconds, tick_ceiling)
        truncated = delta < payload.delta_seconds
        updated = replace(updated, time_spent_seconds=updated.time_spent_seconds + delta)
    elif event.type == "attempt" and isinstance(payload, AttemptPayload):
        updated = replace(
            updated,
            attempts_count=updated.attempts_count + 1,
            last_attempt_score=(
                payload.score if payload.score is not None else updated.last_attempt_score
            ),
        )

    return updated, truncated


def with_engagement(
    progress: SectionProgress,
    *,
    expected_duration_seconds: int,
    policy: EngagementPolicy,
) -> SectionProgress:
    """Attach the lifetime engagement score once enough events exist."""
    if progress.interaction_count < policy.min_events:
        return replace(progress, engagement_score=None)
    return replace(
        progress,
        engagement_score=engagement_score(
            interactions=progress.interaction_count,
            time_spent_seconds=progress.time_spent_seconds,
            attempts=progress.attempts_count,
            expected_duration_seconds=expected_duration_seconds,
            policy=policy,
        ),
    )


def derive_lesson(
    *,
    student_id: str,
    lesson_id: str,
    course_id: str,
    sections: Iterable[SectionContext],
    progress_by_section: Mapping[str, SectionProgress],
) -> LessonProgress:
    """Lesson progress from current section flags and section rows.

    Only sections currently flagged required count; a lesson with no
    required sections is complete as soon as the student has touched it.
    """
    required = [s for s in sections if s.required_for_completion]
    rows = list(progress_by_section.values())

    done = [
        progress_by_section[s.section_id]
        for s in required
        if s.section_id in progress_by_section
        and progress_by_section[s.section_id].is_complete
    ]
    total = len(required)

    if total == 0:
        touched = [r.completed_at or r.started_at for r in rows]
        touched = [t for t in touched if t is not None]
        return LessonProgress(
            student_id=student_id,
            lesson_id=lesson_id,
            course_id=course_id,
            completed_sections=0,
            total_required_sections=0,
            progress_percentage=100 if touched else 0,
            completed_at=max(touched) if touched else None,
        )

    completed_at = None
    if len(done) == total:
        completed_at = max(p.completed_at for p in done if p.completed_at is not None)

    return LessonProgress(
        student_id=student_id,
        lesson_id=lesson_id,
        course_id=course_id,
        completed_sections=len(done),
        total_required_sections=total,
        progress_percentage=percent(len(done), total),
        completed_at=completed_at,
    )


def derive_course(
    *,
    student_id: str,
    course_id: str,
    lesson_ids: Iterable[str],
    lessons_by_id: Mapping[str, LessonProgress],
    time_spent_seconds: int,
) -> CourseProgress:
    lesson_list = list(lesson_ids)
    done = [
        lessons_by_id[lid]
        for lid in lesson_list
        if lid in lessons_by_id and lessons_by_id[lid].completed_at is not None
    ]
    total = len(lesson_list)
    completed_at = None
    if total > 0 and len(done) == total:
        completed_at = max(p.completed_at for p in done if p.completed_at is not None)
    return CourseProgress(
        student_id=student_id,
        course_id=course_id,
        completed_lessons=len(done),
        total_lessons=total,
        progress_percentage=percent(len(done), total),
        completed_at=completed_at,
        time_spent_seconds=time_spent_seconds,
    )
