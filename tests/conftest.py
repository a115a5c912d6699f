from __future__ import annotations

import sys
from collections.abc import Iterator
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.config import Settings, load_settings  # noqa: E402
from app.main import app  # noqa: E402
from app.models.event import EventSubmission  # noqa: E402
from app.repos.content_catalog import InMemoryContentCatalog  # noqa: E402
from app.services import token_service  # noqa: E402
from app.services.container import Services, build_services  # noqa: E402

# Events in tests happen on the morning of T0; the clock starts later that
# day so none of them trips the clock-skew check.
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
CLOCK_START = T0 + timedelta(hours=12)

CATALOG: dict[str, Any] = {
    "courses": [
        {
            "id": "c1",
            "lessons": [
                {
                    "id": "l1",
                    "sections": [
                        {"id": "s1", "kind": "text", "word_count": 800},
                        {
                            "id": "s2",
                            "kind": "video",
                            "duration_seconds": 540,
                            "expected_duration_seconds": 600,
                        },
                        {
                            "id": "s3",
                            "kind": "quiz",
                            "question_count": 5,
                            "passing_score": 70,
                            "expected_duration_seconds": 300,
                        },
                    ],
                },
                {
                    "id": "l2",
                    "sections": [
                        {"id": "s4", "kind": "text"},
                        {"id": "s5", "kind": "text", "required": False},
                    ],
                },
            ],
        },
        {
            "id": "c2",
            "lessons": [
                {"id": "l3", "sections": [{"id": "s6", "kind": "text"}]},
            ],
        },
        {
            "id": "c3",
            "lessons": [
                {
                    "id": "l4",
                    "sections": [
                        {"id": "sa", "kind": "text"},
                        {"id": "sb", "kind": "text"},
                    ],
                },
            ],
        },
    ]
}

# section_id -> (lesson_id, course_id)
SECTION_HOME = {
    "s1": ("l1", "c1"),
    "s2": ("l1", "c1"),
    "s3": ("l1", "c1"),
    "s4": ("l2", "c1"),
    "s5": ("l2", "c1"),
    "s6": ("l3", "c2"),
    "sa": ("l4", "c3"),
    "sb": ("l4", "c3"),
}


class TickingClock:
    """Deterministic clock that moves forward a little on every read.

    Invalidation markers compare timestamps, so a frozen clock would make
    a view computed right after a write look as old as the write.
    """

    def __init__(
        self, start: datetime = CLOCK_START, step: timedelta = timedelta(milliseconds=1)
    ) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        self.now += self.step
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def make_settings(**overrides: Any) -> Settings:
    base = replace(
        load_settings(),
        app_env="test",
        database_url=None,
        redis_url=None,
        content_catalog_path=None,
        jwt_public_key=None,
        recompute_inline=True,
        retry_backoff_seconds=0.0,
    )
    return replace(base, **overrides)


def submission(
    event_id: str,
    section_id: str,
    type: str,
    *,
    minutes: float = 0,
    student_id: str = "alice",
    payload: dict[str, Any] | None = None,
) -> EventSubmission:
    """An EventSubmission for a seeded section, ``minutes`` after T0."""
    lesson_id, course_id = SECTION_HOME[section_id]
    return EventSubmission(
        event_id=event_id,
        student_id=student_id,
        course_id=course_id,
        lesson_id=lesson_id,
        section_id=section_id,
        type=type,
        occurred_at=T0 + timedelta(minutes=minutes),
        payload=payload or {},
    )


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def catalog() -> InMemoryContentCatalog:
    return InMemoryContentCatalog.from_dict(CATALOG)


@pytest.fixture
def services(
    settings: Settings, catalog: InMemoryContentCatalog, clock: TickingClock
) -> Services:
    """A fully in-memory engine, rebuilt for every test."""
    return build_services(settings, catalog=catalog, clock=clock)


@pytest.fixture
def client(services: Services) -> Iterator[TestClient]:
    app.state.services = services
    yield TestClient(app)
    app.state.services = None


def mint_token(
    username: str = "alice",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


def auth(username: str = "alice", roles: list[str] | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {mint_token(username, roles)}"}


@pytest.fixture
def token() -> str:
    """Token for the learner alice (default role: student)."""
    return mint_token()


@pytest.fixture
def admin_token() -> str:
    """Token with admin role."""
    return mint_token(username="test-admin", roles=["admin"])
