from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ContentType(str, Enum):
    VIDEO = "video"
    VIDEO_LINK = "video_link"
    TEXT = "text"
    PDF = "pdf"
    FILE = "file"
    QUIZ = "quiz"
    ASSIGNMENT = "assignment"

    @classmethod
    def parse(cls, value: str | None) -> "ContentType":
        """Unknown or missing types are rendered as text."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.TEXT


class CompletionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    LOCALLY_COMPLETE = "locally_complete"
    SERVER_CONFIRMED = "server_confirmed"


class CompletionTrigger(str, Enum):
    VIDEO_THRESHOLD = "video_threshold"
    VIDEO_ENDED = "video_ended"
    DWELL_ELAPSED = "dwell_elapsed"
    MANUAL = "manual"
    SUBMITTED = "submitted"
    RESUMED = "resumed"


@dataclass(frozen=True)
class Chapter:
    id: str
    course_id: str
    title: str = ""
    order_index: int = 0
    is_completed: bool = False  # server aggregate for the current learner


@dataclass(frozen=True)
class ContentItem:
    id: str
    chapter_id: str
    course_id: str
    content_type: ContentType = ContentType.TEXT
    order_index: int = 0
    title: str = ""
    content_url: str | None = None


@dataclass
class ContentProgress:
    student_id: str
    course_id: str
    chapter_id: str
    content_id: str
    is_completed: bool = False
    last_position: float | None = None
    completed_at: datetime | None = None


@dataclass
class ChapterProgress:
    student_id: str
    course_id: str
    chapter_id: str
    is_completed: bool = False
    progress_percent: float = 0.0
    completed_at: datetime | None = None


@dataclass(frozen=True)
class Confirmed(Generic[T]):
    """A value the server has persisted."""
    value: T


@dataclass(frozen=True)
class Optimistic(Generic[T]):
    """A value applied locally ahead of server confirmation."""
    value: T
