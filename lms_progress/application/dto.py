from dataclasses import dataclass, field
from datetime import datetime

from ..domain.entities import ContentItem


@dataclass
class ChapterContents:
    chapter_id: str
    items: list[ContentItem]
    completed: frozenset[str] = field(default_factory=frozenset)  # server flags
    completed_at: dict[str, datetime] = field(default_factory=dict)


@dataclass
class ContentProgressWrite:
    course_id: str
    chapter_id: str
    content_id: str
    is_completed: bool = True
    last_position: float | None = None
    completed_at: datetime | None = None


@dataclass
class CourseProgressSummary:
    course_id: str
    completed_chapters: int
    total_chapters: int
    progress_percent: float
    certificate_eligible: bool
