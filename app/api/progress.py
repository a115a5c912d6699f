"""Progress read endpoints.

  GET /v1/progress/courses/{course_id}
      the caller's own progress in a course
  GET /v1/progress/students/{student_id}/courses/{course_id}
      any learner's progress (admin, instructor)

Both return the three levels together (course, its lessons, their
sections) straight from the progress repository.  There is no caching
here: this is the read-your-writes path a learner hits right after
finishing a section.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.dependencies import CurrentUser, ServicesDep, require_any_role
from app.models.principal import STAFF_ROLES, Principal
from app.services.container import Services
from app.services.materialized_views import to_jsonable

router = APIRouter(prefix="/v1/progress", tags=["progress"])


async def _course_progress(services: Services, student_id: str, course_id: str) -> dict[str, Any]:
    lesson_ids = await services.catalog.course_lessons(course_id)
    if lesson_ids is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown course {course_id}",
        )
    course = await services.repo.get_course(student_id, course_id)
    lessons = await services.repo.list_lessons(student_id=student_id, course_id=course_id)
    sections = await services.repo.list_sections(student_id=student_id, course_id=course_id)

    order = {lesson_id: i for i, lesson_id in enumerate(lesson_ids)}
    lessons.sort(key=lambda p: order.get(p.lesson_id, len(order)))
    sections.sort(key=lambda s: (order.get(s.lesson_id, len(order)), s.section_id))

    return {
        "student_id": student_id,
        "course_id": course_id,
        "course": to_jsonable(course) if course is not None else None,
        "lessons": [to_jsonable(p) for p in lessons],
        "sections": [to_jsonable(s) for s in sections],
    }


@router.get("/courses/{course_id}")
async def get_my_course_progress(
    course_id: str,
    principal: CurrentUser,
    services: ServicesDep,
) -> dict[str, Any]:
    return await _course_progress(services, principal.user_id, course_id)


@router.get("/students/{student_id}/courses/{course_id}")
async def get_student_course_progress(
    student_id: str,
    course_id: str,
    _principal: Annotated[Principal, Depends(require_any_role(set(STAFF_ROLES)))],
    services: ServicesDep,
) -> dict[str, Any]:
    return await _course_progress(services, student_id, course_id)
