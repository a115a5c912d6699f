"""Analytics query endpoints.

  GET /v1/analytics/{kind}/{subject_id}?start&end&fresh
  GET /v1/analytics/{kind}/{subject_id}/compare?start&end

kind is student | course | section.  The window defaults to the last 7
days ending now.  Snapshots are cached until a write touches the subject;
fresh=true forces recomputation.  Learners may only query themselves;
course and section analytics are for staff.

A computation that overruns ANALYTICS_TIMEOUT_SECONDS answers 504 with
error=timeout; retry with a smaller window.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import APIRouter, HTTPException, status

from app.api.dependencies import CurrentUser, ServicesDep, ensure_can_read_student
from app.models.analytics import SUBJECT_KINDS, Subject, SubjectKind, Window
from app.models.principal import Principal
from app.services.container import Services

router = APIRouter(prefix="/v1/analytics", tags=["analytics"])

DEFAULT_WINDOW = timedelta(days=7)


def _subject(kind: str, subject_id: str, principal: Principal) -> Subject:
    if kind not in SUBJECT_KINDS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown subject kind {kind!r}",
        )
    if kind == "student":
        ensure_can_read_student(principal, subject_id)
    elif not principal.is_staff():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    subject_kind: SubjectKind = kind  # type: ignore[assignment]
    return Subject(kind=subject_kind, id=subject_id)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def _window(services: Services, start: datetime | None, end: datetime | None) -> Window:
    end = _aware(end) if end is not None else services.clock()
    start = _aware(start) if start is not None else end - DEFAULT_WINDOW
    try:
        return Window(start=start, end=end)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from None


@router.get("/{kind}/{subject_id}")
async def get_snapshot(
    kind: str,
    subject_id: str,
    principal: CurrentUser,
    services: ServicesDep,
    start: datetime | None = None,
    end: datetime | None = None,
    fresh: bool = False,
) -> dict[str, Any]:
    subject = _subject(kind, subject_id, principal)
    window = _window(services, start, end)
    return await services.views.get_snapshot(subject, window, fresh=fresh)


@router.get("/{kind}/{subject_id}/compare")
async def compare(
    kind: str,
    subject_id: str,
    principal: CurrentUser,
    services: ServicesDep,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    subject = _subject(kind, subject_id, principal)
    window = _window(services, start, end)
    comparison = await services.analytics.compare(subject, window)
    return comparison.as_dict()
