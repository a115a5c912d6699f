"""Event ingest: validation in front of the aggregator.

Nothing reaches the aggregator without passing validate().  Rejections are
InvalidEventError with one of three kinds, all client-correctable:

  unknown_reference  the section doesn't exist, or isn't in the lesson /
                     course the client named
  malformed_payload  the payload doesn't fit the event type, or the type
                     doesn't fit the section (an attempt on a video)
  clock_skew         occurred_at is further in the future than the
                     configured tolerance

Accepted events are appended to the log first, then applied.  If a crash
lands between the two, the client's retry finds the event already logged
and re-applies the STORED copy; the aggregator's idempotence makes that
safe whichever step had completed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, timedelta

from pydantic import ValidationError

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.core.errors import InvalidEventError, ProgressEngineError
from app.core.metrics import EVENTS_INGESTED, EVENTS_REJECTED
from app.models.content import SectionContext
from app.models.event import (
    EVENT_TYPES,
    PAYLOAD_MODELS,
    AttemptPayload,
    EventSubmission,
    LearningEvent,
    ViewPayload,
)
from app.models.progress import AggregationResult
from app.repos.content_catalog import ContentCatalog
from app.repos.event_log import EventLog
from app.services.aggregator import ProgressAggregator

logger = logging.getLogger(__name__)

_MAX_EVENT_ID_LENGTH = 128


@dataclass(frozen=True, slots=True)
class IngestResult:
    accepted: bool
    event_id: str
    duplicate: bool = False
    error: str | None = None  # error kind when not accepted
    detail: str | None = None
    aggregation: AggregationResult | None = None


class EventIngestService:
    def __init__(
        self,
        *,
        catalog: ContentCatalog,
        event_log: EventLog,
        aggregator: ProgressAggregator,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._catalog = catalog
        self._events = event_log
        self._aggregator = aggregator
        self._settings = settings
        self._clock = clock

    async def validate(self, submission: EventSubmission) -> LearningEvent:
        try:
            return await self._validate(submission)
        except InvalidEventError as exc:
            EVENTS_REJECTED.labels(kind=exc.kind).inc()
            logger.warning(
                "Rejected event %s: %s",
                submission.event_id,
                exc.detail,
                extra={
                    "student_id": submission.student_id,
                    "section_id": submission.section_id,
                    "event_id": submission.event_id,
                    "error_kind": exc.kind,
                },
            )
            raise

    async def ingest(self, submission: EventSubmission) -> IngestResult:
        event = await self.validate(submission)
        return await self._ingest_valid(event)

    async def ingest_batch(self, submissions: Sequence[EventSubmission]) -> list[IngestResult]:
        """Validate every item, then apply valid ones in occurred_at order.

        One bad item never aborts the batch: its result carries the error
        kind and the rest proceed.  Results come back in submission order.
        """
        results: list[IngestResult | None] = [None] * len(submissions)
        valid: list[tuple[int, LearningEvent]] = []

        for index, submission in enumerate(submissions):
            try:
                valid.append((index, await self.validate(submission)))
            except InvalidEventError as exc:
                results[index] = IngestResult(
                    accepted=False,
                    event_id=submission.event_id,
                    error=exc.kind,
                    detail=exc.detail,
                )

        # sort() is stable: same-timestamp events keep submission order.
        valid.sort(key=lambda item: item[1].occurred_at)
        for index, event in valid:
            try:
                results[index] = await self._ingest_valid(event)
            except ProgressEngineError as exc:
                results[index] = IngestResult(
                    accepted=False,
                    event_id=event.event_id,
                    error=exc.kind,
                    detail=exc.detail,
                )

        return [r for r in results if r is not None]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ingest_valid(self, event: LearningEvent) -> IngestResult:
        if not await self._events.append(event):
            stored = await self._events.get(event.event_id)
            if stored is not None:
                event = stored
        aggregation = await self._aggregator.apply_event(event)
        if not aggregation.duplicate:
            EVENTS_INGESTED.labels(type=event.type).inc()
        return IngestResult(
            accepted=True,
            event_id=event.event_id,
            duplicate=aggregation.duplicate,
            aggregation=aggregation,
        )

    async def _validate(self, submission: EventSubmission) -> LearningEvent:
        if not submission.event_id or len(submission.event_id) > _MAX_EVENT_ID_LENGTH:
            raise InvalidEventError(
                "malformed_payload",
                f"event_id must be 1..{_MAX_EVENT_ID_LENGTH} characters",
            )
        if submission.type not in EVENT_TYPES:
            raise InvalidEventError(
                "malformed_payload",
                f"type must be one of {'|'.join(EVENT_TYPES)} (got {submission.type!r})",
            )

        now = self._clock()
        occurred_at = submission.occurred_at
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=UTC)
        tolerance = timedelta(seconds=self._settings.clock_skew_seconds)
        if occurred_at > now + tolerance:
            raise InvalidEventError(
                "clock_skew",
                f"occurred_at {occurred_at.isoformat()} is ahead of server time "
                f"by more than {self._settings.clock_skew_seconds}s",
            )

        context = await self._catalog.resolve_section_context(submission.section_id)
        if context is None:
            raise InvalidEventError(
                "unknown_reference", f"unknown section {submission.section_id}"
            )
        if (
            context.lesson_id != submission.lesson_id
            or context.course_id != submission.course_id
        ):
            raise InvalidEventError(
                "unknown_reference",
                f"section {submission.section_id} is not in lesson "
                f"{submission.lesson_id} of course {submission.course_id}",
            )

        try:
            payload = PAYLOAD_MODELS[submission.type].model_validate(
                dict(submission.payload)
            )
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
                for err in exc.errors()
            )
            raise InvalidEventError(
                "malformed_payload", f"{submission.type} payload invalid: {problems}"
            ) from None

        _check_fits_section(submission.type, payload, context)

        return LearningEvent(
            event_id=submission.event_id,
            student_id=submission.student_id,
            course_id=submission.course_id,
            lesson_id=submission.lesson_id,
            section_id=submission.section_id,
            type=submission.type,  # type: ignore[arg-type]
            payload=payload,  # type: ignore[arg-type]
            occurred_at=occurred_at,
            received_at=now,
        )


def _check_fits_section(event_type: str, payload: object, context: SectionContext) -> None:
    if isinstance(payload, AttemptPayload) and not context.accepts_attempts():
        raise InvalidEventError(
            "malformed_payload",
            f"attempt events are only valid on quiz sections "
            f"({context.section_id} is {context.kind})",
        )
    if (
        isinstance(payload, ViewPayload)
        and payload.progress_percentage is not None
        and not context.accepts_view_position()
    ):
        raise InvalidEventError(
            "malformed_payload",
            f"{event_type} progress_percentage is not supported on {context.kind} sections",
        )
