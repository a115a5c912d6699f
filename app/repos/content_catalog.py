"""Content catalog boundary.

Course/lesson/section content lives in another service.  The engine only
needs to resolve a section to its owning lesson/course and read the flags
that drive completion and engagement normalization.

InMemoryContentCatalog serves tests and local dev; it can be seeded from a
JSON file (CONTENT_CATALOG_PATH) shaped like:

  {"courses": [{"id": "c1", "lessons": [{"id": "l1", "sections": [
      {"id": "s1", "required": true, "expected_duration_seconds": 600,
       "kind": "video", "duration_seconds": 540}]}]}]}
"""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol

from app.models.content import (
    QuizMetadata,
    SectionContext,
    SectionMetadata,
    TextMetadata,
    VideoMetadata,
)


class ContentCatalog(Protocol):
    async def resolve_section_context(self, section_id: str) -> SectionContext | None: ...
    async def lesson_sections(self, lesson_id: str) -> list[SectionContext]: ...
    async def course_lessons(self, course_id: str) -> list[str] | None: ...


class InMemoryContentCatalog:
    def __init__(self) -> None:
        self._sections: dict[str, SectionContext] = {}
        self._lessons: dict[str, list[str]] = {}  # lesson_id -> section ids
        self._courses: dict[str, list[str]] = {}  # course_id -> lesson ids

    # --- ContentCatalog protocol ---

    async def resolve_section_context(self, section_id: str) -> SectionContext | None:
        return self._sections.get(section_id)

    async def lesson_sections(self, lesson_id: str) -> list[SectionContext]:
        return [
            self._sections[sid]
            for sid in self._lessons.get(lesson_id, [])
            if sid in self._sections
        ]

    async def course_lessons(self, course_id: str) -> list[str] | None:
        lessons = self._courses.get(course_id)
        return list(lessons) if lessons is not None else None

    # --- Catalog maintenance (dev/test seeding, admin flag flips) ---

    def add_course(self, course_id: str) -> None:
        self._courses.setdefault(course_id, [])

    def add_lesson(self, course_id: str, lesson_id: str) -> None:
        lessons = self._courses.setdefault(course_id, [])
        if lesson_id not in lessons:
            lessons.append(lesson_id)
        self._lessons.setdefault(lesson_id, [])

    def add_section(self, section: SectionContext) -> None:
        self.add_lesson(section.course_id, section.lesson_id)
        sections = self._lessons[section.lesson_id]
        if section.section_id not in sections:
            sections.append(section.section_id)
        self._sections[section.section_id] = section

    def set_required(self, section_id: str, required: bool) -> SectionContext:
        section = self._sections.get(section_id)
        if section is None:
            raise KeyError("section not found")
        updated = replace(section, required_for_completion=required)
        self._sections[section_id] = updated
        return updated

    def remove_lesson(self, course_id: str, lesson_id: str) -> None:
        lessons = self._courses.get(course_id, [])
        if lesson_id in lessons:
            lessons.remove(lesson_id)
        for sid in self._lessons.pop(lesson_id, []):
            self._sections.pop(sid, None)

    def clear(self) -> None:
        self._sections.clear()
        self._lessons.clear()
        self._courses.clear()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemoryContentCatalog:
        catalog = cls()
        for course in data.get("courses", []):
            catalog.add_course(course["id"])
            for lesson in course.get("lessons", []):
                catalog.add_lesson(course["id"], lesson["id"])
                for section in lesson.get("sections", []):
                    catalog.add_section(
                        SectionContext(
                            section_id=section["id"],
                            lesson_id=lesson["id"],
                            course_id=course["id"],
                            required_for_completion=section.get("required", True),
                            expected_duration_seconds=section.get(
                                "expected_duration_seconds", 600
                            ),
                            metadata=_metadata_from_dict(section),
                        )
                    )
        return catalog

    @classmethod
    def from_json_file(cls, path: str | Path) -> InMemoryContentCatalog:
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))


def _metadata_from_dict(section: dict[str, Any]) -> SectionMetadata:
    kind = section.get("kind", "text")
    if kind == "video":
        return VideoMetadata(duration_seconds=section.get("duration_seconds", 0))
    if kind == "quiz":
        return QuizMetadata(
            question_count=section.get("question_count", 0),
            passing_score=section.get("passing_score"),
        )
    if kind == "text":
        return TextMetadata(word_count=section.get("word_count", 0))
    raise ValueError(f"unknown section kind {kind!r} for section {section.get('id')!r}")
