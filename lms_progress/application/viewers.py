"""Content viewers.

Each viewer turns its own completion signal (watch threshold, dwell timer,
submission, manual click) into a trigger on the shared CompletionTracker.
"""
import asyncio
from typing import Awaitable, Callable

import structlog

from ..config import settings
from ..domain.entities import CompletionTrigger, ContentItem, ContentType
from .completion import CompletionTracker

logger = structlog.get_logger()

PositionCallback = Callable[[ContentItem, float], Awaitable[None]]

# Positions this close to either end are not worth resuming from.
RESUME_MARGIN_SECONDS = 5.0


class ContentViewer:
    def __init__(self, tracker: CompletionTracker):
        self.tracker = tracker
        self.content = tracker.content

    @property
    def is_completed(self) -> bool:
        return self.tracker.is_completed

    @property
    def is_saving(self) -> bool:
        return self.tracker.store.is_saving(self.content.id)

    def mark_complete(self) -> bool:
        return self.tracker.trigger(CompletionTrigger.MANUAL)

    async def drain(self) -> None:
        await self.tracker.drain()

    async def unmount(self) -> None:
        self.tracker.unmount()


class VideoViewer(ContentViewer):
    def __init__(self, tracker: CompletionTracker, on_position: PositionCallback | None = None,
                 completion_ratio: float | None = None, min_save_delta: float | None = None):
        super().__init__(tracker)
        self._on_position = on_position
        self._ratio = settings.VIDEO_COMPLETION_RATIO if completion_ratio is None else completion_ratio
        self._min_delta = settings.POSITION_SAVE_MIN_DELTA if min_save_delta is None else min_save_delta
        self._last_saved: float | None = None

    def resume_position(self, duration: float | None = None) -> float | None:
        position = self.tracker.store.get_video_position(self.content.id)
        if position <= RESUME_MARGIN_SECONDS:
            return None
        if duration is not None and position >= duration - RESUME_MARGIN_SECONDS:
            return None
        return position

    async def on_time_update(self, current: float, duration: float) -> bool:
        """Record playback progress. Returns True if this update triggered completion."""
        store = self.tracker.store
        if self._last_saved is None:
            # first update after mount: measure from the resumed position
            self._last_saved = store.get_video_position(self.content.id)
        store.set_video_position(self.content.id, current)
        if (self._on_position is not None and current >= RESUME_MARGIN_SECONDS
                and abs(current - self._last_saved) >= self._min_delta):
            self._last_saved = current
            await self._on_position(self.content, current)

        if duration > 0 and not self.tracker.is_completed and current / duration >= self._ratio:
            return self.tracker.trigger(CompletionTrigger.VIDEO_THRESHOLD)
        return False

    def on_ended(self) -> bool:
        return self.tracker.trigger(CompletionTrigger.VIDEO_ENDED)


class DwellViewer(ContentViewer):
    """Text, PDF and file content: complete after dwelling while visible."""

    def __init__(self, tracker: CompletionTracker, dwell_seconds: float | None = None):
        super().__init__(tracker)
        self.dwell_seconds = settings.DWELL_SECONDS if dwell_seconds is None else dwell_seconds
        self._timer: asyncio.Task | None = None

    @property
    def timer_started(self) -> bool:
        return self._timer is not None

    def on_visible(self) -> bool:
        """Content scrolled into view or finished loading. Starts the dwell timer once."""
        if self.tracker.is_completed or self._timer is not None:
            return False
        self._timer = asyncio.get_running_loop().create_task(self._countdown())
        return True

    async def _countdown(self) -> None:
        await asyncio.sleep(self.dwell_seconds)
        self.tracker.trigger(CompletionTrigger.DWELL_ELAPSED)

    async def drain(self) -> None:
        if self._timer is not None and not self._timer.cancelled():
            await self._timer
        await super().drain()

    async def unmount(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        await super().unmount()


class QuizViewer(ContentViewer):
    def submit(self) -> bool:
        return self.tracker.trigger(CompletionTrigger.SUBMITTED)


def viewer_for(tracker: CompletionTracker, on_position: PositionCallback | None = None,
               dwell_seconds: float | None = None) -> ContentViewer:
    content_type = tracker.content.content_type
    if content_type is ContentType.VIDEO:
        return VideoViewer(tracker, on_position=on_position)
    if content_type is ContentType.VIDEO_LINK:
        # embedded players report no playback events
        return DwellViewer(tracker, dwell_seconds=(settings.LINKED_VIDEO_DWELL_SECONDS
                                                   if dwell_seconds is None else dwell_seconds))
    if content_type in (ContentType.QUIZ, ContentType.ASSIGNMENT):
        return QuizViewer(tracker)
    return DwellViewer(tracker, dwell_seconds=dwell_seconds)
