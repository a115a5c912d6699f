"""Materialized view tests.

Verifies:
1. Miss → compute, then hit while fresh
2. Aggregator writes mark affected views stale immediately
3. Sync views recompute when stale; leaderboards serve stale and revalidate
4. A failed refresh serves last-known-good flagged stale
5. Strong consistency always recomputes, or raises StalenessViolationError
6. Cache outages degrade to recompute-on-read
7. Analytics snapshots are reused until a write touches their subject
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from app.core.errors import StalenessViolationError
from app.models.analytics import Subject, Window
from app.services.container import Services
from app.services.materialized_views import ViewKey
from tests.conftest import T0, submission

MINUTE = timedelta(seconds=60)


def _get_sample(name: str, labels: dict | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


def _cache_ops(operation: str) -> float:
    return _get_sample("cache_operations_total", {"operation": operation})


def _ingest(services: Services, *subs) -> None:
    async def run():
        for s in subs:
            await services.ingest.ingest(s)

    asyncio.run(run())


def _view(services: Services, key: ViewKey, max_staleness: timedelta = MINUTE, **kwargs):
    return asyncio.run(
        services.views.get_materialized_view(key, max_staleness, **kwargs)
    )


class _BrokenCache:
    async def get(self, key: str) -> str | None:
        raise ConnectionError("redis down")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise ConnectionError("redis down")

    async def delete(self, key: str) -> None:
        raise ConnectionError("redis down")


# ---- keys ----


def test_view_key_round_trip() -> None:
    key = ViewKey.parse("view:course_stats:c1")
    assert key == ViewKey("course_stats", "c1")
    assert str(key) == "view:course_stats:c1"
    assert key.refresh_policy == "sync"
    assert ViewKey("course_leaderboard", "c1").refresh_policy == "stale_while_revalidate"


@pytest.mark.parametrize("raw", ["view:unknown:c1", "cache:course_stats:c1", "view:course_stats:"])
def test_view_key_rejects_garbage(raw: str) -> None:
    with pytest.raises(ValueError):
        ViewKey.parse(raw)


# ---- read path ----


def test_miss_then_hit(services: Services) -> None:
    key = ViewKey("student_dashboard", "alice")
    misses, hits = _cache_ops("miss"), _cache_ops("hit")

    first = _view(services, key)
    second = _view(services, key)

    assert first.stale is False
    assert second.computed_at == first.computed_at
    assert second.data == first.data
    assert _cache_ops("miss") - misses == 1
    assert _cache_ops("hit") - hits == 1


def test_write_invalidates_dashboard(services: Services) -> None:
    key = ViewKey("student_dashboard", "alice")
    before = _view(services, key)
    assert before.data["courses"] == []

    _ingest(services, submission("e-a", "sa", "complete", minutes=1))
    after = _view(services, key)

    assert after.stale is False
    assert after.computed_at > before.computed_at
    assert [c["course_id"] for c in after.data["courses"]] == ["c3"]
    assert after.data["courses"][0]["progress_percentage"] == 0


def test_other_students_write_keeps_dashboard_fresh(services: Services) -> None:
    key = ViewKey("student_dashboard", "alice")
    before = _view(services, key)

    _ingest(services, submission("e-b", "s1", "complete", student_id="bob"))
    after = _view(services, key)

    assert after.computed_at == before.computed_at


def test_write_invalidates_course_stats(services: Services) -> None:
    key = ViewKey("course_stats", "c1")
    before = _view(services, key)
    assert before.data["learners"] == 0

    _ingest(
        services,
        submission("e-1", "s1", "complete", minutes=1, student_id="alice"),
        submission("e-2", "s4", "view", minutes=2, student_id="bob"),
    )
    after = _view(services, key)

    assert after.data["learners"] == 2
    assert after.data["completed_learners"] == 0
    assert after.data["snapshot"]["subject"] == {"kind": "course", "id": "c1"}


def test_expired_view_recomputes(services: Services, clock) -> None:
    key = ViewKey("course_stats", "c1")
    first = _view(services, key)

    clock.advance(timedelta(minutes=5))
    second = _view(services, key)

    assert second.stale is False
    assert second.computed_at > first.computed_at


def test_leaderboard_serves_stale_then_revalidates(services: Services) -> None:
    key = ViewKey("course_leaderboard", "c3")
    _ingest(services, submission("e-a", "sa", "complete", minutes=1, student_id="alice"))
    _view(services, key)
    _ingest(services, submission("e-b", "sa", "complete", minutes=2, student_id="bob"))
    stale_before = _cache_ops("stale")

    async def read_twice():
        views = services.views
        stale = await views.get_materialized_view(key, MINUTE)
        await asyncio.gather(*list(views._refreshing.values()))
        fresh = await views.get_materialized_view(key, MINUTE)
        return stale, fresh

    stale, fresh = asyncio.run(read_twice())

    assert stale.stale is True
    assert [e["student_id"] for e in stale.data["entries"]] == ["alice"]
    assert fresh.stale is False
    assert [e["student_id"] for e in fresh.data["entries"]] == ["alice", "bob"]
    assert _cache_ops("stale") - stale_before == 1


def test_leaderboard_ranking(services: Services) -> None:
    _ingest(
        services,
        submission("a1", "sa", "complete", student_id="alice"),
        submission("b1", "sa", "complete", student_id="bob"),
        submission("b2", "sb", "complete", student_id="bob"),
        submission("c1", "sa", "view", student_id="carol"),
    )

    view = _view(services, ViewKey("course_leaderboard", "c3"))

    entries = view.data["entries"]
    assert [e["student_id"] for e in entries] == ["bob", "alice", "carol"]
    assert [e["rank"] for e in entries] == [1, 2, 3]
    assert entries[0]["progress_percentage"] == 100


def test_failed_refresh_serves_last_known_good(services: Services) -> None:
    key = ViewKey("student_dashboard", "alice")
    good = _view(services, key)
    _ingest(services, submission("e-a", "sa", "complete", minutes=1))

    async def broken(*args, **kwargs):
        raise RuntimeError("analytics store unavailable")

    services.analytics.compare = broken  # type: ignore[method-assign]
    degraded = _cache_ops("degraded")

    served = _view(services, key)

    assert served.stale is True
    assert served.data == good.data
    assert served.computed_at == good.computed_at
    assert _cache_ops("degraded") - degraded == 1


# ---- strong consistency ----


def test_strong_read_always_recomputes(services: Services) -> None:
    key = ViewKey("course_stats", "c1")
    cached = _view(services, key)

    strong = _view(services, key, consistency="strong")

    assert strong.stale is False
    assert strong.computed_at > cached.computed_at


def test_strong_read_past_deadline_is_staleness_violation(services: Services) -> None:
    _ingest(services, submission("e-1", "s1", "complete", minutes=1))

    with pytest.raises(StalenessViolationError):
        _view(
            services,
            ViewKey("student_dashboard", "alice"),
            consistency="strong",
            deadline_seconds=0,
        )


# ---- cache outages ----


def test_cache_outage_degrades_to_recompute(services: Services) -> None:
    services.views._cache = _BrokenCache()
    degraded = _cache_ops("degraded")

    first = _view(services, ViewKey("course_stats", "c1"))
    second = _view(services, ViewKey("course_stats", "c1"))

    assert first.stale is False
    assert second.computed_at > first.computed_at
    assert _cache_ops("degraded") - degraded >= 2


def test_cache_outage_does_not_block_writes(services: Services) -> None:
    services.views._cache = _BrokenCache()

    result = asyncio.run(services.ingest.ingest(submission("e-1", "s1", "complete")))

    assert result.accepted is True
    assert result.aggregation.section.is_complete


# ---- erasure ----


def test_purge_student_drops_dashboard(services: Services) -> None:
    key = ViewKey("student_dashboard", "alice")
    _view(services, key)
    misses = _cache_ops("miss")

    asyncio.run(services.views.purge_student("alice"))
    _view(services, key)

    assert _cache_ops("miss") - misses == 1


# ---- snapshot cache ----


def test_snapshot_cached_until_subject_written(services: Services) -> None:
    subject = Subject("student", "alice")
    window = Window(start=T0 - timedelta(days=6), end=T0 + timedelta(days=1))
    _ingest(services, submission("e-1", "s1", "complete", minutes=1))

    first = asyncio.run(services.views.get_snapshot(subject, window))
    second = asyncio.run(services.views.get_snapshot(subject, window))
    assert first["cached"] is False
    assert second["cached"] is True
    assert second["metrics"] == first["metrics"]

    _ingest(services, submission("e-2", "s4", "complete", minutes=2))
    third = asyncio.run(services.views.get_snapshot(subject, window))

    assert third["cached"] is False
    assert third["metrics"]["data_points"] == 2


def test_fresh_snapshot_skips_cache(services: Services) -> None:
    subject = Subject("course", "c1")
    window = Window(start=T0 - timedelta(days=6), end=T0 + timedelta(days=1))
    asyncio.run(services.views.get_snapshot(subject, window))

    again = asyncio.run(services.views.get_snapshot(subject, window, fresh=True))

    assert again["cached"] is False


def test_unrelated_write_keeps_snapshot_cached(services: Services) -> None:
    subject = Subject("course", "c1")
    window = Window(start=T0 - timedelta(days=6), end=T0 + timedelta(days=1))
    asyncio.run(services.views.get_snapshot(subject, window))

    _ingest(services, submission("e-1", "s6", "complete"))
    again = asyncio.run(services.views.get_snapshot(subject, window))

    assert again["cached"] is True
