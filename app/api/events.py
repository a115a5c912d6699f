"""Learning event ingestion.

  POST /v1/events        one event → 202 Accepted
  POST /v1/events/batch  many events → 200 with one result per item

The caller's token subject is the student the events belong to.  Staff
(admin, instructor) may submit on a learner's behalf by naming
student_id explicitly, e.g. when backfilling from an LMS export.

Replaying an event_id is safe: the response says duplicate=true and
nothing is counted twice.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from app.api.dependencies import CurrentUser, ServicesDep
from app.models.event import EventSubmission
from app.models.principal import Principal
from app.services.ingest import IngestResult

router = APIRouter(prefix="/v1/events", tags=["events"])

_MAX_BATCH = 500


class EventIn(BaseModel):
    event_id: str
    course_id: str
    lesson_id: str
    section_id: str
    # Left as str so an unknown type surfaces as malformed_payload.
    type: str
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    student_id: str | None = None


class EventBatchIn(BaseModel):
    events: list[EventIn] = Field(min_length=1, max_length=_MAX_BATCH)


class IngestOut(BaseModel):
    accepted: bool
    event_id: str
    duplicate: bool = False
    error: str | None = None
    detail: str | None = None
    section_completion_percentage: int | None = None


class BatchOut(BaseModel):
    accepted: int
    rejected: int
    results: list[IngestOut]


def _submission(event: EventIn, principal: Principal) -> EventSubmission:
    student_id = event.student_id or principal.user_id
    if student_id != principal.user_id and not principal.is_staff():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot submit events for another student",
        )
    return EventSubmission(
        event_id=event.event_id,
        student_id=student_id,
        course_id=event.course_id,
        lesson_id=event.lesson_id,
        section_id=event.section_id,
        type=event.type,
        occurred_at=event.occurred_at,
        payload=event.payload,
    )


def _out(result: IngestResult) -> IngestOut:
    section = result.aggregation.section if result.aggregation is not None else None
    return IngestOut(
        accepted=result.accepted,
        event_id=result.event_id,
        duplicate=result.duplicate,
        error=result.error,
        detail=result.detail,
        section_completion_percentage=(
            section.completion_percentage if section is not None else None
        ),
    )


@router.post("", response_model=IngestOut, status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    event: EventIn,
    principal: CurrentUser,
    services: ServicesDep,
) -> IngestOut:
    result = await services.ingest.ingest(_submission(event, principal))
    return _out(result)


@router.post("/batch", response_model=BatchOut)
async def ingest_batch(
    batch: EventBatchIn,
    principal: CurrentUser,
    services: ServicesDep,
) -> BatchOut:
    submissions = [_submission(e, principal) for e in batch.events]
    results = await services.ingest.ingest_batch(submissions)
    accepted = sum(1 for r in results if r.accepted)
    return BatchOut(
        accepted=accepted,
        rejected=len(results) - accepted,
        results=[_out(r) for r in results],
    )
