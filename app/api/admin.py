from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.api.dependencies import ServicesDep, require_role
from app.models.principal import Principal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])

AdminUser = Annotated[Principal, Depends(require_role("admin"))]


class ErasureOut(BaseModel):
    student_id: str
    events_deleted: int
    progress_rows_deleted: int
    courses_invalidated: list[str]


class RequirementIn(BaseModel):
    required: bool


class RequirementOut(BaseModel):
    section_id: str
    required: bool
    students_rescheduled: int


class DeadLetterOut(BaseModel):
    event_id: str
    student_id: str
    section_id: str
    kind: str
    detail: str
    recorded_at: str


@router.get("/students/{student_id}/data")
async def export_student_data(
    student_id: str,
    principal: AdminUser,
    services: ServicesDep,
) -> dict[str, Any]:
    logger.info(
        "Data export for student=%s requested by user=%s",
        student_id,
        principal.user_id,
    )
    return await services.compliance.export_student_data(student_id)


@router.delete("/students/{student_id}/data", response_model=ErasureOut)
async def erase_student_data(
    student_id: str,
    principal: AdminUser,
    services: ServicesDep,
) -> ErasureOut:
    logger.warning(
        "Data erasure for student=%s requested by user=%s",
        student_id,
        principal.user_id,
    )
    report = await services.compliance.erase_student_data(student_id)
    return ErasureOut(
        student_id=report.student_id,
        events_deleted=report.events_deleted,
        progress_rows_deleted=report.progress_rows_deleted,
        courses_invalidated=list(report.courses_invalidated),
    )


@router.put("/sections/{section_id}/requirement", response_model=RequirementOut)
async def set_section_requirement(
    section_id: str,
    body: RequirementIn,
    principal: AdminUser,
    services: ServicesDep,
) -> RequirementOut:
    try:
        services.catalog.set_required(section_id, body.required)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown section {section_id}",
        ) from None

    logger.info(
        "Section %s required=%s set by user=%s",
        section_id,
        body.required,
        principal.user_id,
    )
    rescheduled = await services.aggregator.handle_requirement_change(section_id)
    return RequirementOut(
        section_id=section_id,
        required=body.required,
        students_rescheduled=rescheduled,
    )


@router.get("/dead-letters", response_model=list[DeadLetterOut])
async def list_dead_letters(
    _principal: AdminUser,
    services: ServicesDep,
    student_id: str | None = None,
) -> list[DeadLetterOut]:
    records = await services.event_log.list_dead_letters(student_id=student_id)
    return [
        DeadLetterOut(
            event_id=r.event_id,
            student_id=r.student_id,
            section_id=r.section_id,
            kind=r.kind,
            detail=r.detail,
            recorded_at=r.recorded_at.isoformat(),
        )
        for r in records
    ]
