"""Progress aggregator tests.

Verifies:
1. Lessons move from 50% to complete as required sections finish
2. Redelivered events are no-ops (state and time_spent unchanged)
3. completed_at follows event time, not arrival order
4. Events whose section left the catalog are dead-lettered, not retried
5. Lock contention is retried, then surfaced as lock_timeout
6. Queue mode hands lesson/course recomputation to the outbox
7. Flipping a required flag re-derives lessons for every learner
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from app.core.errors import AggregationError, VersionConflictError
from app.services.container import Services, build_services
from app.services.task_queue import RECOMPUTE_QUEUE
from tests.conftest import T0, make_settings, submission


def _get_sample(name: str, labels: dict | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


def _ingest(services: Services, *subs):
    async def run():
        return [await services.ingest.ingest(s) for s in subs]

    results = asyncio.run(run())
    return results[0] if len(results) == 1 else results


def _lesson(services: Services, lesson_id: str, student_id: str = "alice"):
    return asyncio.run(services.repo.get_lesson(student_id, lesson_id))


def _section(services: Services, section_id: str, student_id: str = "alice"):
    return asyncio.run(services.repo.get_section(student_id, section_id))


# ---- lesson completion ----


def test_first_of_two_required_sections_is_half_way(services: Services) -> None:
    result = _ingest(services, submission("e-a", "sa", "complete", minutes=1))

    assert result.accepted is True
    lesson = result.aggregation.lesson
    assert lesson.progress_percentage == 50
    assert lesson.completed_at is None
    assert result.aggregation.course.progress_percentage == 0


def test_second_required_section_completes_lesson_and_course(services: Services) -> None:
    _ingest(services, submission("e-a", "sa", "complete", minutes=1))
    result = _ingest(services, submission("e-b", "sb", "complete", minutes=7))

    lesson = result.aggregation.lesson
    assert lesson.progress_percentage == 100
    assert lesson.completed_at == T0 + timedelta(minutes=7)
    course = result.aggregation.course
    assert course.progress_percentage == 100
    assert course.completed_at == T0 + timedelta(minutes=7)


def test_resent_complete_changes_nothing(services: Services) -> None:
    _ingest(services, submission("e-a", "sa", "complete", minutes=1))
    _ingest(services, submission("e-b", "sb", "complete", minutes=7))
    before_section = _section(services, "sa")
    before_lesson = _lesson(services, "l4")

    dup = _ingest(services, submission("e-a", "sa", "complete", minutes=1))

    assert dup.accepted is True
    assert dup.duplicate is True
    assert _section(services, "sa") == before_section
    assert _lesson(services, "l4") == before_lesson
    assert dup.aggregation.lesson == before_lesson


def test_duplicate_time_tick_counts_once(services: Services) -> None:
    before = _get_sample("aggregation_duplicate_events_total")
    tick = submission("tick-1", "s1", "time_tick", payload={"delta_seconds": 500})

    first = _ingest(services, tick)
    second = _ingest(services, tick)

    assert first.duplicate is False
    assert second.duplicate is True
    assert _section(services, "s1").time_spent_seconds == 500
    assert first.aggregation.course.time_spent_seconds == 500
    assert _get_sample("aggregation_duplicate_events_total") - before == 1


def test_oversized_tick_is_truncated_to_ceiling(services: Services) -> None:
    before = _get_sample("aggregation_time_ticks_truncated_total")

    _ingest(
        services,
        submission("tick-big", "s1", "time_tick", payload={"delta_seconds": 10_000}),
    )

    assert _section(services, "s1").time_spent_seconds == 3600
    assert _get_sample("aggregation_time_ticks_truncated_total") - before == 1


def test_out_of_order_delivery_uses_event_time(services: Services) -> None:
    # sb finished at minute 30 but arrives first; sa finished at minute 10.
    _ingest(services, submission("e-b", "sb", "complete", minutes=30))
    _ingest(services, submission("e-a", "sa", "complete", minutes=10))

    lesson = _lesson(services, "l4")
    assert lesson.completed_at == T0 + timedelta(minutes=30)
    assert _section(services, "sa").completed_at == T0 + timedelta(minutes=10)


def test_late_complete_does_not_move_completed_at(services: Services) -> None:
    _ingest(services, submission("e-1", "s4", "complete", minutes=20))
    _ingest(services, submission("e-2", "s4", "complete", minutes=5))

    # First completion applied wins; the row is never rewritten backwards.
    assert _section(services, "s4").completed_at == T0 + timedelta(minutes=20)


def test_earlier_view_after_complete_keeps_section_complete(services: Services) -> None:
    _ingest(services, submission("e-done", "s2", "complete", minutes=15))
    _ingest(
        services,
        submission("e-view", "s2", "view", minutes=2, payload={"progress_percentage": 10}),
    )

    row = _section(services, "s2")
    assert row.completion_percentage == 100
    assert row.completed_at == T0 + timedelta(minutes=15)
    assert row.started_at == T0 + timedelta(minutes=2)


def test_engagement_appears_after_three_events(services: Services) -> None:
    _ingest(
        services,
        submission("v1", "s2", "view", minutes=1),
        submission("v2", "s2", "view", minutes=2, payload={"progress_percentage": 30}),
    )
    assert _section(services, "s2").engagement_score is None

    _ingest(services, submission("v3", "s2", "time_tick", minutes=3, payload={"delta_seconds": 60}))
    row = _section(services, "s2")
    assert row.engagement_score is not None
    assert 0.0 < row.engagement_score <= 1.0
    assert row.completion_percentage == 30


def test_learners_are_isolated(services: Services) -> None:
    _ingest(services, submission("e-a", "sa", "complete", student_id="alice"))

    assert _lesson(services, "l4", student_id="bob") is None
    assert _lesson(services, "l4", student_id="alice").progress_percentage == 50


# ---- orphaned references ----


def test_orphaned_event_is_dead_lettered(services: Services) -> None:
    before = _get_sample("aggregation_dead_letters_total", {"kind": "orphaned_reference"})
    event = asyncio.run(services.ingest.validate(submission("e-x", "s6", "complete")))
    # The lesson disappears between validation and aggregation.
    services.catalog.remove_lesson("c2", "l3")

    with pytest.raises(AggregationError) as exc_info:
        asyncio.run(services.aggregator.apply_event(event))

    assert exc_info.value.kind == "orphaned_reference"
    assert exc_info.value.transient is False
    letters = asyncio.run(services.event_log.list_dead_letters("alice"))
    assert [d.event_id for d in letters] == ["e-x"]
    assert letters[0].kind == "orphaned_reference"
    assert _section(services, "s6") is None
    after = _get_sample("aggregation_dead_letters_total", {"kind": "orphaned_reference"})
    assert after - before == 1


def test_orphan_does_not_disturb_other_events(services: Services) -> None:
    event = asyncio.run(services.ingest.validate(submission("e-x", "s6", "complete")))
    services.catalog.remove_lesson("c2", "l3")
    with pytest.raises(AggregationError):
        asyncio.run(services.aggregator.apply_event(event))

    result = _ingest(services, submission("e-ok", "s4", "complete"))
    assert result.accepted is True
    assert _lesson(services, "l2").completed_at is not None


# ---- contention ----


class _BusyLocks:
    """Lock pool whose first ``failures`` acquisitions time out."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    @asynccontextmanager
    async def hold(self, key: str):
        self.calls += 1
        if self.calls <= self.failures:
            raise AggregationError("lock_timeout", f"could not lock {key}")
        yield


def test_lock_timeout_is_retried(services: Services) -> None:
    locks = _BusyLocks(failures=2)
    services.aggregator._locks = locks
    before = _get_sample("aggregation_retries_total", {"reason": "lock_timeout"})

    result = _ingest(services, submission("e-1", "s1", "complete"))

    assert result.accepted is True
    assert locks.calls == 3
    after = _get_sample("aggregation_retries_total", {"reason": "lock_timeout"})
    assert after - before == 2


def test_lock_timeout_surfaces_after_retry_budget(services: Services) -> None:
    services.aggregator._locks = _BusyLocks(failures=100)

    with pytest.raises(AggregationError) as exc_info:
        _ingest(services, submission("e-1", "s1", "complete"))

    assert exc_info.value.kind == "lock_timeout"
    assert exc_info.value.transient is True
    assert _section(services, "s1") is None


def test_version_conflict_is_retried(services: Services) -> None:
    repo = services.repo
    original = repo.save_section
    conflicts = {"left": 1}

    async def flaky_save(progress, *, expected_version):
        if conflicts["left"]:
            conflicts["left"] -= 1
            raise VersionConflictError("someone else wrote first")
        return await original(progress, expected_version=expected_version)

    repo.save_section = flaky_save  # type: ignore[method-assign]
    before = _get_sample("aggregation_retries_total", {"reason": "version_conflict"})

    result = _ingest(services, submission("e-1", "s1", "complete"))

    assert result.accepted is True
    assert _section(services, "s1").version == 1
    after = _get_sample("aggregation_retries_total", {"reason": "version_conflict"})
    assert after - before == 1


def test_redelivery_repairs_failed_inline_recompute(services: Services) -> None:
    repo = services.repo
    original = repo.put_lesson
    failures = {"left": 1}

    async def flaky_put_lesson(lesson):
        if failures["left"]:
            failures["left"] -= 1
            raise ConnectionError("db blip")
        return await original(lesson)

    repo.put_lesson = flaky_put_lesson  # type: ignore[method-assign]

    with pytest.raises(ConnectionError):
        _ingest(services, submission("e-1", "s6", "complete"))
    assert _section(services, "s6").is_complete
    assert _lesson(services, "l3") is None

    retry = _ingest(services, submission("e-1", "s6", "complete"))

    assert retry.duplicate is True
    assert retry.aggregation.lesson.progress_percentage == 100
    assert _lesson(services, "l3").progress_percentage == 100
    assert asyncio.run(repo.get_course("alice", "c2")).completed_at is not None


def test_duplicate_leaves_settled_rows_alone(services: Services) -> None:
    first = _ingest(services, submission("e-a", "sa", "complete"))

    again = _ingest(services, submission("e-a", "sa", "complete"))

    assert again.duplicate is True
    assert again.aggregation.lesson == first.aggregation.lesson
    assert again.aggregation.course == first.aggregation.course


def test_concurrent_events_on_one_section_all_apply(services: Services) -> None:
    ticks = [
        submission(f"tick-{i}", "s2", "time_tick", payload={"delta_seconds": 10})
        for i in range(20)
    ]

    async def run():
        await asyncio.gather(*(services.ingest.ingest(t) for t in ticks))

    asyncio.run(run())

    row = _section(services, "s2")
    assert row.time_spent_seconds == 200
    assert row.interaction_count == 20
    assert row.version == 20


# ---- queued recomputation ----


def test_queue_mode_defers_lesson_recompute(clock, catalog) -> None:
    services = build_services(
        make_settings(recompute_inline=False), catalog=catalog, clock=clock
    )

    result = _ingest(services, submission("e-a", "sa", "complete"))

    assert result.aggregation.section.is_complete
    assert result.aggregation.lesson is None
    assert _lesson(services, "l4") is None
    assert asyncio.run(services.task_queue.queue_length(RECOMPUTE_QUEUE)) == 1

    task = asyncio.run(services.task_queue.dequeue(RECOMPUTE_QUEUE))
    assert task.payload == {"student_id": "alice", "lesson_id": "l4", "course_id": "c3"}
    asyncio.run(services.aggregator.handle_recompute_task(task.payload))
    assert _lesson(services, "l4").progress_percentage == 50


# ---- requirement changes ----


def test_dropping_last_incomplete_requirement_completes_lesson(services: Services) -> None:
    _ingest(services, submission("e-a", "sa", "complete", minutes=3))
    assert _lesson(services, "l4").completed_at is None

    services.catalog.set_required("sb", False)
    rescheduled = asyncio.run(services.aggregator.handle_requirement_change("sb"))

    assert rescheduled == 1
    lesson = _lesson(services, "l4")
    assert lesson.progress_percentage == 100
    assert lesson.total_required_sections == 1
    assert lesson.completed_at == T0 + timedelta(minutes=3)


def test_adding_requirement_can_reopen_lesson(services: Services) -> None:
    _ingest(services, submission("e-4", "s4", "complete"))
    assert _lesson(services, "l2").completed_at is not None

    services.catalog.set_required("s5", True)
    asyncio.run(services.aggregator.handle_requirement_change("s5"))

    lesson = _lesson(services, "l2")
    assert lesson.completed_at is None
    assert lesson.progress_percentage == 50


def test_requirement_change_for_unknown_section(services: Services) -> None:
    with pytest.raises(AggregationError) as exc_info:
        asyncio.run(services.aggregator.handle_requirement_change("nope"))
    assert exc_info.value.kind == "orphaned_reference"
