"""Session-scoped optimistic view of course progress.

The store is a plain in-memory map. It never performs I/O; callers are
responsible for persisting what they write here.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable

from ..domain.entities import ChapterProgress, ContentProgress


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LocalContentEntry:
    content_id: str
    chapter_id: str
    course_id: str
    is_completed: bool
    completed_at: datetime | None = None


@dataclass
class LocalChapterEntry:
    chapter_id: str
    course_id: str
    is_completed: bool
    progress_percent: float = 0.0
    completed_at: datetime | None = None


class ProgressStore:
    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._content: dict[str, LocalContentEntry] = {}
        self._chapters: dict[str, LocalChapterEntry] = {}
        self._positions: dict[str, float] = {}
        self._saving: set[str] = set()

    # --- content

    def is_content_completed(self, content_id: str) -> bool:
        entry = self._content.get(content_id)
        return bool(entry and entry.is_completed)

    def set_content_completed(self, content_id: str, chapter_id: str, course_id: str,
                              completed: bool, completed_at: datetime | None = None) -> None:
        """``completed_at`` defaults to the local clock when the server time is unknown."""
        self._content[content_id] = LocalContentEntry(
            content_id=content_id,
            chapter_id=chapter_id,
            course_id=course_id,
            is_completed=completed,
            completed_at=(completed_at or self._clock()) if completed else None,
        )

    def content_entry(self, content_id: str) -> LocalContentEntry | None:
        return self._content.get(content_id)

    # --- chapters

    def is_chapter_completed(self, chapter_id: str) -> bool:
        entry = self._chapters.get(chapter_id)
        return bool(entry and entry.is_completed)

    def set_chapter_completed(self, chapter_id: str, course_id: str, completed: bool,
                              percentage: float = 100.0) -> None:
        self._chapters[chapter_id] = LocalChapterEntry(
            chapter_id=chapter_id,
            course_id=course_id,
            is_completed=completed,
            progress_percent=percentage,
            completed_at=self._clock() if completed else None,
        )

    def get_chapter_progress(self, chapter_id: str) -> float:
        entry = self._chapters.get(chapter_id)
        return entry.progress_percent if entry else 0.0

    # --- video positions

    def get_video_position(self, content_id: str) -> float:
        return self._positions.get(content_id, 0.0)

    def set_video_position(self, content_id: str, seconds: float) -> None:
        self._positions[content_id] = seconds

    # --- in-flight writes

    def is_saving(self, content_id: str) -> bool:
        return content_id in self._saving

    def set_saving_progress(self, content_id: str, saving: bool) -> None:
        if saving:
            self._saving.add(content_id)
        else:
            self._saving.discard(content_id)

    # --- bulk

    def load_progress_from_server(self, records: Iterable[ContentProgress]) -> None:
        for r in records:
            self._content[r.content_id] = LocalContentEntry(
                content_id=r.content_id,
                chapter_id=r.chapter_id,
                course_id=r.course_id,
                is_completed=r.is_completed,
                completed_at=r.completed_at,
            )
            if r.last_position:
                self._positions[r.content_id] = r.last_position

    def load_chapter_progress_from_server(self, records: Iterable[ChapterProgress]) -> None:
        for r in records:
            self._chapters[r.chapter_id] = LocalChapterEntry(
                chapter_id=r.chapter_id,
                course_id=r.course_id,
                is_completed=r.is_completed,
                progress_percent=r.progress_percent,
                completed_at=r.completed_at,
            )

    def clear_course_progress(self, course_id: str) -> None:
        dropped = [k for k, v in self._content.items() if v.course_id == course_id]
        for key in dropped:
            del self._content[key]
            self._positions.pop(key, None)
            self._saving.discard(key)
        for key in [k for k, v in self._chapters.items() if v.course_id == course_id]:
            del self._chapters[key]
