from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

EventType = Literal["view", "complete", "attempt", "time_tick"]
EVENT_TYPES: tuple[EventType, ...] = ("view", "complete", "attempt", "time_tick")


# ---------------------------------------------------------------------------
# Payloads: one model per event type (tagged by LearningEvent.type)
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ViewPayload(_Payload):
    # Optional position reported by the player/reader (e.g. 40% through a video).
    progress_percentage: int | None = Field(default=None, ge=0, le=100)


class CompletePayload(_Payload):
    pass


class AttemptPayload(_Payload):
    score: float | None = Field(default=None, ge=0, le=100)


class TimeTickPayload(_Payload):
    delta_seconds: int = Field(ge=0)


EventPayload = ViewPayload | CompletePayload | AttemptPayload | TimeTickPayload

PAYLOAD_MODELS: dict[str, type[_Payload]] = {
    "view": ViewPayload,
    "complete": CompletePayload,
    "attempt": AttemptPayload,
    "time_tick": TimeTickPayload,
}


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EventSubmission:
    """A raw, not-yet-validated event as handed to ingest.

    The payload is whatever the client sent; ingest turns it into the typed
    payload for ``type`` or rejects the submission.
    """

    event_id: str
    student_id: str
    course_id: str
    lesson_id: str
    section_id: str
    type: str
    occurred_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LearningEvent:
    """An immutable learning fact, the source of truth for progress.

    Appended to the event log once; never mutated.  SectionProgress and
    everything above it can be rebuilt by replaying these.
    """

    event_id: str
    student_id: str
    course_id: str
    lesson_id: str
    section_id: str
    type: EventType
    payload: EventPayload
    occurred_at: datetime
    received_at: datetime

    def payload_dict(self) -> dict[str, Any]:
        return self.payload.model_dump()

    @staticmethod
    def from_stored(
        *,
        event_id: str,
        student_id: str,
        course_id: str,
        lesson_id: str,
        section_id: str,
        type: str,
        payload: Mapping[str, Any],
        occurred_at: datetime,
        received_at: datetime,
    ) -> LearningEvent:
        """Rebuild an event from a persisted row (payload already validated)."""
        model = PAYLOAD_MODELS[type]
        return LearningEvent(
            event_id=event_id,
            student_id=student_id,
            course_id=course_id,
            lesson_id=lesson_id,
            section_id=section_id,
            type=type,  # type: ignore[arg-type]
            payload=model.model_validate(dict(payload)),  # type: ignore[arg-type]
            occurred_at=occurred_at,
            received_at=received_at,
        )


@dataclass(frozen=True, slots=True)
class DeadLetter:
    """Audit record for an event that was dropped without being applied."""

    event_id: str
    student_id: str
    section_id: str
    kind: str
    detail: str
    recorded_at: datetime
