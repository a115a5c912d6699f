"""Analytics engine tests.

Verifies:
1. completion_rate counts completions inside the window over rows in scope
2. learning_velocity is null without enough signal, never a false zero
3. Velocity measures progress gained per active minute inside the window
4. Comparative snapshots report a trend with a dead zone
5. Snapshots never write progress rows
6. A deadline cancels long scans with AnalyticsComputationError
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from app.core.errors import AnalyticsComputationError
from app.models.analytics import Subject, Window
from app.services.analytics import Deadline, relative_change, trend
from app.services.container import Services
from tests.conftest import T0, submission

WEEK = Window(start=T0 - timedelta(days=6), end=T0 + timedelta(days=1))


def _get_sample(name: str, labels: dict | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


def _ingest(services: Services, *subs) -> None:
    async def run():
        for s in subs:
            await services.ingest.ingest(s)

    asyncio.run(run())


def _snapshot(services: Services, subject: Subject, window: Window = WEEK):
    return asyncio.run(services.analytics.compute_snapshot(subject, window))


# ---- completion_rate ----


def test_single_completion_in_week(services: Services) -> None:
    _ingest(
        services,
        # bob touched c1 long before the window; his row is in scope but not completed
        submission("old", "s4", "view", minutes=-10 * 24 * 60, student_id="bob"),
        submission("done", "s1", "complete", minutes=1),
    )

    snap = _snapshot(services, Subject("course", "c1"))

    assert snap.metrics.completion_rate == 0.5
    assert snap.metrics.data_points == 1
    assert snap.metrics.learning_velocity is None
    assert snap.sufficient_data is False


def test_completion_outside_window_does_not_count(services: Services) -> None:
    _ingest(services, submission("done", "s1", "complete", minutes=-8 * 24 * 60))

    snap = _snapshot(services, Subject("student", "alice"))

    assert snap.metrics.completion_rate == 0.0
    assert snap.metrics.data_points == 0


def test_empty_scope_has_no_rates(services: Services) -> None:
    snap = _snapshot(services, Subject("course", "c2"))

    assert snap.metrics.completion_rate is None
    assert snap.metrics.avg_engagement is None
    assert snap.metrics.learning_velocity is None
    assert snap.metrics.total_time_spent == 0


def test_section_scope(services: Services) -> None:
    _ingest(
        services,
        submission("a1", "s1", "complete", minutes=1, student_id="alice"),
        submission("b1", "s1", "view", minutes=2, student_id="bob"),
        submission("a2", "s2", "complete", minutes=3, student_id="alice"),
    )

    snap = _snapshot(services, Subject("section", "s1"))

    assert snap.metrics.completion_rate == 0.5
    assert snap.metrics.data_points == 2


# ---- learning_velocity ----


def test_velocity_is_progress_per_active_minute(services: Services) -> None:
    _ingest(
        services,
        submission("t1", "s2", "time_tick", minutes=1, payload={"delta_seconds": 120}),
        submission("v1", "s2", "view", minutes=2, payload={"progress_percentage": 50}),
        submission("t2", "s2", "time_tick", minutes=3, payload={"delta_seconds": 120}),
        submission("c1", "s2", "complete", minutes=4),
    )

    snap = _snapshot(services, Subject("student", "alice"))

    # 100 points over 4 active minutes
    assert snap.metrics.learning_velocity == 25.0
    assert snap.metrics.total_time_spent == 240
    assert snap.metrics.data_points == 4


def test_velocity_counts_only_progress_gained_in_window(services: Services) -> None:
    window = Window(start=T0 - timedelta(days=1), end=T0 + timedelta(days=1))
    _ingest(
        services,
        submission(
            "before", "s2", "view", minutes=-2 * 24 * 60, payload={"progress_percentage": 40}
        ),
        submission("t1", "s2", "time_tick", minutes=1, payload={"delta_seconds": 60}),
        submission("c1", "s2", "complete", minutes=2),
    )

    snap = _snapshot(services, Subject("student", "alice"), window)

    assert snap.metrics.learning_velocity == 60.0
    assert snap.metrics.total_time_spent == 60


def test_velocity_without_active_time_is_null(services: Services) -> None:
    _ingest(
        services,
        submission("v1", "s1", "view", minutes=1),
        submission("c1", "s1", "complete", minutes=2),
    )

    snap = _snapshot(services, Subject("student", "alice"))

    assert snap.metrics.data_points == 2
    assert snap.metrics.learning_velocity is None


def test_duplicate_events_do_not_inflate_metrics(services: Services) -> None:
    tick = submission("t1", "s2", "time_tick", minutes=1, payload={"delta_seconds": 500})
    _ingest(services, tick, tick)

    snap = _snapshot(services, Subject("student", "alice"))

    assert snap.metrics.total_time_spent == 500
    assert snap.metrics.data_points == 1


def test_engagement_is_averaged_over_active_sections(services: Services) -> None:
    _ingest(
        services,
        submission("v1", "s1", "view", minutes=1),
        submission("v2", "s4", "view", minutes=2),
    )

    snap = _snapshot(services, Subject("student", "alice"))

    assert snap.metrics.avg_engagement is not None
    assert 0.0 < snap.metrics.avg_engagement <= 1.0


# ---- read-only ----


def test_snapshot_does_not_write_progress(services: Services) -> None:
    _ingest(
        services,
        submission("t1", "s2", "time_tick", minutes=1, payload={"delta_seconds": 120}),
        submission("c1", "s2", "complete", minutes=2),
    )
    before = asyncio.run(services.repo.list_sections(student_id="alice"))
    lessons_before = asyncio.run(services.repo.list_lessons(student_id="alice"))

    _snapshot(services, Subject("student", "alice"))
    asyncio.run(services.analytics.compare(Subject("course", "c1"), WEEK))

    assert asyncio.run(services.repo.list_sections(student_id="alice")) == before
    assert asyncio.run(services.repo.list_lessons(student_id="alice")) == lessons_before


# ---- comparison ----


def test_compare_uses_adjacent_equal_window(services: Services) -> None:
    _ingest(services, submission("c1", "s1", "complete", minutes=1))

    comparison = asyncio.run(services.analytics.compare(Subject("student", "alice"), WEEK))

    assert comparison.previous.window.end == WEEK.start
    assert comparison.previous.window.length == WEEK.length
    assert comparison.current.metrics.completion_rate == 1.0
    assert comparison.previous.metrics.completion_rate == 0.0
    assert comparison.trend_direction == "up"
    # Relative change from a zero baseline is undefined.
    assert comparison.change is None


def test_compare_boundary_event_counts_once(services: Services) -> None:
    day = Window(start=T0, end=T0 + timedelta(days=1))
    _ingest(services, submission("c1", "s1", "complete", minutes=0))

    comparison = asyncio.run(services.analytics.compare(Subject("student", "alice"), day))

    assert comparison.current.metrics.data_points == 1
    assert comparison.current.metrics.completion_rate == 1.0
    assert comparison.previous.metrics.data_points == 0
    assert comparison.previous.metrics.completion_rate == 0.0


def test_previous_window_excludes_its_end() -> None:
    day = Window(start=T0, end=T0 + timedelta(days=1))
    previous = day.previous()

    assert previous.contains(T0 - timedelta(days=1))
    assert not previous.contains(T0)
    assert day.contains(T0)
    assert day.contains(day.end)


def test_compare_without_rows_falls_back_to_time(services: Services) -> None:
    comparison = asyncio.run(services.analytics.compare(Subject("student", "nobody"), WEEK))

    assert comparison.trend_direction == "stable"
    assert comparison.trends["completion_rate"] == "stable"
    assert comparison.change is None


def test_trend_dead_zone() -> None:
    assert trend(1.005, 1.0, 0.01) == "stable"
    assert trend(1.2, 1.0, 0.01) == "up"
    assert trend(0.8, 1.0, 0.01) == "down"
    assert trend(None, 1.0, 0.01) == "stable"
    assert trend(0.005, 0.0, 0.01) == "stable"
    assert trend(0.5, 0.0, 0.01) == "up"


def test_relative_change() -> None:
    assert relative_change(1.5, 1.0) == 0.5
    assert relative_change(0.5, 1.0) == -0.5
    assert relative_change(1.0, 0.0) is None
    assert relative_change(None, 1.0) is None


def test_window_rejects_inverted_bounds() -> None:
    with pytest.raises(ValueError):
        Window(start=T0, end=T0 - timedelta(seconds=1))


# ---- cancellation ----


def test_expired_deadline_raises(services: Services) -> None:
    _ingest(services, submission("c1", "s1", "complete", minutes=1))
    before = _get_sample("analytics_timeouts_total", {"subject_kind": "student"})

    with pytest.raises(AnalyticsComputationError) as exc_info:
        asyncio.run(
            services.analytics.compute_snapshot(
                Subject("student", "alice"), WEEK, deadline=Deadline(0)
            )
        )

    assert exc_info.value.kind == "timeout"
    after = _get_sample("analytics_timeouts_total", {"subject_kind": "student"})
    assert after - before == 1


def test_unbounded_deadline_never_expires() -> None:
    deadline = Deadline(None)
    assert deadline.expired() is False
    assert deadline.remaining is None
    deadline.check("anything")
