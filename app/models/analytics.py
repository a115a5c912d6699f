from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

SubjectKind = Literal["student", "course", "section"]
SUBJECT_KINDS: tuple[SubjectKind, ...] = ("student", "course", "section")
TrendDirection = Literal["up", "down", "stable"]


@dataclass(frozen=True, slots=True)
class Subject:
    kind: SubjectKind
    id: str


@dataclass(frozen=True, slots=True)
class Window:
    """Time interval [start, end], or [start, end) when end_inclusive is False.

    Requested windows are closed.  previous() is half-open so a moment on
    the shared boundary belongs to the current period only.
    """

    start: datetime
    end: datetime
    end_inclusive: bool = True

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("window end must not precede window start")

    @property
    def length(self) -> timedelta:
        return self.end - self.start

    def contains(self, moment: datetime | None) -> bool:
        if moment is None or moment < self.start:
            return False
        return moment <= self.end if self.end_inclusive else moment < self.end

    def previous(self) -> Window:
        """The adjacent window of equal length that ends where this one starts."""
        return Window(start=self.start - self.length, end=self.start, end_inclusive=False)


@dataclass(frozen=True, slots=True)
class SnapshotMetrics:
    completion_rate: float | None
    avg_engagement: float | None
    learning_velocity: float | None  # progress-percentage points per active minute
    total_time_spent: int
    data_points: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "completion_rate": self.completion_rate,
            "avg_engagement": self.avg_engagement,
            "learning_velocity": self.learning_velocity,
            "total_time_spent": self.total_time_spent,
            "data_points": self.data_points,
        }


@dataclass(frozen=True, slots=True)
class AnalyticsSnapshot:
    subject: Subject
    window: Window
    metrics: SnapshotMetrics
    computed_at: datetime

    @property
    def sufficient_data(self) -> bool:
        return self.metrics.data_points >= 2

    def as_dict(self) -> dict[str, Any]:
        return {
            "subject": {"kind": self.subject.kind, "id": self.subject.id},
            "window": {
                "start": self.window.start.isoformat(),
                "end": self.window.end.isoformat(),
            },
            "metrics": self.metrics.as_dict(),
            "computed_at": self.computed_at.isoformat(),
            "sufficient_data": self.sufficient_data,
        }


@dataclass(frozen=True, slots=True)
class ComparativeSnapshot:
    current: AnalyticsSnapshot
    previous: AnalyticsSnapshot
    trend_direction: TrendDirection
    trends: dict[str, TrendDirection] = field(default_factory=dict)
    change: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "current": self.current.as_dict(),
            "previous": self.previous.as_dict(),
            "trend_direction": self.trend_direction,
            "trends": dict(self.trends),
            "change": self.change,
        }
