"""Error taxonomy for progress-engine.

Every error carries a machine-readable ``kind`` so the HTTP layer can map
it to an actionable status code and clients can branch on it without
parsing messages.

  InvalidEventError          client-correctable, never retried
  AggregationError           internal; lock_timeout is transient,
                             orphaned_reference is permanent
  VersionConflictError       optimistic-concurrency loss, always transient
  AnalyticsComputationError  deadline exceeded while scanning history
  StalenessViolationError    strong consistency demanded but not deliverable
"""

from __future__ import annotations

from typing import Literal

InvalidEventKind = Literal["unknown_reference", "malformed_payload", "clock_skew"]
AggregationErrorKind = Literal["orphaned_reference", "lock_timeout"]


class ProgressEngineError(Exception):
    """Base class for all domain errors raised by the engine."""

    kind: str = "internal"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class InvalidEventError(ProgressEngineError):
    def __init__(self, kind: InvalidEventKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind


class AggregationError(ProgressEngineError):
    def __init__(self, kind: AggregationErrorKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind == "lock_timeout"


class VersionConflictError(ProgressEngineError):
    """Raised by a progress repo when the stored version moved underneath us."""

    kind = "version_conflict"


class AnalyticsComputationError(ProgressEngineError):
    kind = "timeout"


class StalenessViolationError(ProgressEngineError):
    kind = "staleness_violation"
