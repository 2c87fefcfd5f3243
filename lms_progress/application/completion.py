"""Per-content completion state machine.

One tracker exists per mounted content item. Viewers report completion
triggers; the tracker collapses them into a single debounced fire, flips the
local flag and hands persistence to the parent ``on_complete`` contract.
"""
import asyncio
from datetime import datetime
from typing import Awaitable, Callable

import structlog

from ..config import settings
from ..domain.entities import CompletionState, CompletionTrigger, ContentItem, ContentProgress
from ..domain.errors import InvalidTransition, ProgressError
from .progress_store import ProgressStore

logger = structlog.get_logger()

# Returns True once the server has recorded the completion.
OnComplete = Callable[[ContentItem], Awaitable[bool]]

_TRANSITIONS: dict[CompletionState, frozenset[CompletionState]] = {
    CompletionState.NOT_STARTED: frozenset({
        CompletionState.IN_PROGRESS,
        CompletionState.LOCALLY_COMPLETE,
        CompletionState.SERVER_CONFIRMED,
    }),
    CompletionState.IN_PROGRESS: frozenset({
        CompletionState.LOCALLY_COMPLETE,
        CompletionState.SERVER_CONFIRMED,
    }),
    CompletionState.LOCALLY_COMPLETE: frozenset({CompletionState.SERVER_CONFIRMED}),
    CompletionState.SERVER_CONFIRMED: frozenset(),
}

_DONE = (CompletionState.LOCALLY_COMPLETE, CompletionState.SERVER_CONFIRMED)


class CompletionTracker:
    def __init__(self, content: ContentItem, store: ProgressStore, on_complete: OnComplete,
                 debounce_seconds: float | None = None):
        self.content = content
        self.store = store
        self._on_complete = on_complete
        self._debounce = (settings.COMPLETION_DEBOUNCE_SECONDS
                          if debounce_seconds is None else debounce_seconds)
        self._state = CompletionState.NOT_STARTED
        self._pending: asyncio.Task | None = None
        self._persisting: asyncio.Task | None = None
        self._fired = False

    @property
    def state(self) -> CompletionState:
        return self._state

    @property
    def is_completed(self) -> bool:
        return self._state in _DONE

    @property
    def is_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def _transition(self, new: CompletionState) -> None:
        if new is self._state:
            return
        if new not in _TRANSITIONS[self._state]:
            raise InvalidTransition(f"{self._state.value} -> {new.value} for content {self.content.id}")
        self._state = new

    def _mark_local(self, completed_at: datetime | None = None) -> None:
        self.store.set_content_completed(
            self.content.id, self.content.chapter_id, self.content.course_id, True,
            completed_at=completed_at,
        )

    async def mount(self, server_record: ContentProgress | None) -> CompletionState:
        if server_record is not None and server_record.last_position:
            if not self.store.get_video_position(self.content.id):
                self.store.set_video_position(self.content.id, server_record.last_position)

        if server_record is not None and server_record.is_completed:
            self._mark_local(server_record.completed_at)
            self._transition(CompletionState.SERVER_CONFIRMED)
            return self._state

        if self.store.is_content_completed(self.content.id):
            # completed earlier in this session but the write never landed
            self._fired = True
            self._transition(CompletionState.LOCALLY_COMPLETE)
            await self._persist(CompletionTrigger.RESUMED)
            return self._state

        self._transition(CompletionState.IN_PROGRESS)
        return self._state

    def trigger(self, source: CompletionTrigger) -> bool:
        """Schedule the one-shot completion. Returns False if it was absorbed."""
        if self._fired or self.is_pending or self._state in _DONE:
            logger.debug("completion_trigger_ignored", content_id=self.content.id,
                         trigger=source.value, state=self._state.value)
            return False
        self._pending = asyncio.get_running_loop().create_task(self._fire(source))
        return True

    async def _fire(self, source: CompletionTrigger) -> None:
        await asyncio.sleep(self._debounce)
        self._fired = True
        if self._state in _DONE:
            return
        self._mark_local()
        self._transition(CompletionState.LOCALLY_COMPLETE)
        # the local flag is set; its write must survive the viewer unmounting
        self._persisting = asyncio.get_running_loop().create_task(self._persist(source))
        await asyncio.shield(self._persisting)

    async def _persist(self, source: CompletionTrigger) -> None:
        try:
            confirmed = await self._on_complete(self.content)
        except ProgressError as e:
            logger.warning("completion_persist_failed", content_id=self.content.id, error=str(e))
            confirmed = False
        if confirmed:
            self._transition(CompletionState.SERVER_CONFIRMED)
        logger.info(
            "content_completed",
            content_id=self.content.id,
            trigger=source.value,
            state=self._state.value,
        )

    @property
    def in_flight_write(self) -> asyncio.Task | None:
        """The completion write, while it is still running."""
        task = self._persisting
        return task if task is not None and not task.done() else None

    async def drain(self) -> None:
        """Wait for a scheduled completion and its write to finish."""
        if self._pending is not None:
            await self._pending
        if self._persisting is not None:
            await self._persisting

    def unmount(self) -> None:
        # a trigger still inside its debounce is dropped; a started write is not
        if self.is_pending:
            self._pending.cancel()
        self._pending = None
