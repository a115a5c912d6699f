"""Materialized view endpoint.

  GET /v1/views/{kind}/{subject_id}?max_staleness=60&consistency=eventual

kind is course_stats | student_dashboard | course_leaderboard.

max_staleness (seconds) is the caller's tolerance.  The response always
says whether what it got is stale, so a dashboard can show a "refreshing"
hint instead of lying about freshness.  consistency=strong recomputes
under a hard deadline and answers 503 staleness_violation when that
cannot be met.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, status

from app.api.dependencies import CurrentUser, ServicesDep, ensure_can_read_student
from app.services.materialized_views import REFRESH_POLICIES, ViewKey

router = APIRouter(prefix="/v1/views", tags=["views"])


@router.get("/{kind}/{subject_id}")
async def get_view(
    kind: str,
    subject_id: str,
    principal: CurrentUser,
    services: ServicesDep,
    max_staleness: float = Query(default=60.0, ge=0),
    consistency: Literal["eventual", "strong"] = "eventual",
) -> dict[str, Any]:
    if kind not in REFRESH_POLICIES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown view kind {kind!r}",
        )
    if kind == "student_dashboard":
        ensure_can_read_student(principal, subject_id)
    elif not principal.is_staff():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )

    view = await services.views.get_materialized_view(
        ViewKey(kind=kind, subject_id=subject_id),  # type: ignore[arg-type]
        timedelta(seconds=max_staleness),
        consistency=consistency,
    )
    return view.as_dict()
