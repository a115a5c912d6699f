from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Section metadata: a closed set of content kinds
# ---------------------------------------------------------------------------
# Each kind carries only what the engine needs from the catalog.  Validation
# code branches on the concrete class, so adding a kind means touching
# every isinstance chain that handles SectionMetadata.


@dataclass(frozen=True, slots=True)
class TextMetadata:
    word_count: int = 0


@dataclass(frozen=True, slots=True)
class VideoMetadata:
    duration_seconds: int = 0


@dataclass(frozen=True, slots=True)
class QuizMetadata:
    question_count: int = 0
    passing_score: float | None = None


SectionMetadata = TextMetadata | VideoMetadata | QuizMetadata


@dataclass(frozen=True, slots=True)
class SectionContext:
    """What the content catalog knows about one section."""

    section_id: str
    lesson_id: str
    course_id: str
    required_for_completion: bool = True
    expected_duration_seconds: int = 600
    metadata: SectionMetadata = TextMetadata()

    @property
    def kind(self) -> str:
        if isinstance(self.metadata, VideoMetadata):
            return "video"
        if isinstance(self.metadata, QuizMetadata):
            return "quiz"
        return "text"

    def accepts_attempts(self) -> bool:
        return isinstance(self.metadata, QuizMetadata)

    def accepts_view_position(self) -> bool:
        return isinstance(self.metadata, (TextMetadata, VideoMetadata))
