import asyncio
from datetime import datetime, timezone

import structlog

from ...domain.entities import (
    Chapter, ChapterProgress, CompletionState, ContentItem, ContentProgress,
)
from ...domain.errors import ContentNotFound, ProgressError, TransientReadError
from ...infrastructure.metrics import progress_writes_total
from ..completion import CompletionTracker
from ..dto import ChapterContents, ContentProgressWrite
from ..navigation import NavigationTarget, next_target, previous_target, sort_chapters, sort_contents
from ..progress_store import ProgressStore
from ..reconciliation import ChapterRecompute, recompute_chapter
from ..viewers import ContentViewer, viewer_for

logger = structlog.get_logger()


class IProgressBackend:
    async def list_chapters(self, course_id: str) -> list[Chapter]: ...
    async def list_contents(self, course_id: str, chapter_id: str) -> ChapterContents: ...
    async def get_content_progress(self, content_id: str) -> ContentProgress | None: ...
    async def upsert_content_progress(self, write: ContentProgressWrite) -> ContentProgress: ...
    async def upsert_chapter_progress(self, course_id: str, chapter_id: str, is_completed: bool,
                                      progress_percent: float) -> ChapterProgress: ...
    async def save_video_position(self, course_id: str, chapter_id: str, content_id: str,
                                  seconds: float) -> None: ...


class INotifier:
    def success(self, message: str) -> None: ...
    def warning(self, message: str) -> None: ...


class LogNotifier(INotifier):
    def success(self, message: str) -> None:
        logger.info("notify", level="success", message=message)

    def warning(self, message: str) -> None:
        logger.warning("notify", level="warning", message=message)


class CoursePlayer:
    """Drives one learner through a course: chapters, contents, viewers and completion.

    The player owns no global state. Its ProgressStore is passed in so that
    several players (or tests) can share or isolate it explicitly.

    Completion flows content -> chapter:

    1. a viewer's tracker fires ``handle_complete``;
    2. the local flag is set and the ContentProgress upsert is attempted once;
    3. the item's chapter is reconciled, open or not; when it turns complete
       the chapter upsert is issued, once.

    A write that has started runs to the end even if the learner navigates
    away; ``settle`` (and ``close``) wait for such writes.

    Remote failures are logged and surfaced through the notifier. The store is
    never rolled back; the next mount or chapter pass retries the write.
    """

    def __init__(self, backend: IProgressBackend, store: ProgressStore | None = None,
                 notifier: INotifier | None = None, *, debounce_seconds: float | None = None,
                 dwell_seconds: float | None = None):
        self.backend = backend
        self.store = store if store is not None else ProgressStore()
        self.notifier = notifier or LogNotifier()
        self._debounce = debounce_seconds
        self._dwell = dwell_seconds

        self.course_id: str | None = None
        self.chapters: list[Chapter] = []
        self.chapter_id: str | None = None
        self.contents: list[ContentItem] = []
        self.viewer: ContentViewer | None = None
        self._contents_by_chapter: dict[str, list[ContentItem]] = {}
        self._server_completed: set[str] = set()
        self._server_completed_at: dict[str, datetime] = {}
        self._chapters_confirmed: set[str] = set()
        self._writes: set[asyncio.Task] = set()

    @property
    def current_content(self) -> ContentItem | None:
        return self.viewer.content if self.viewer else None

    def _find_content(self, content_id: str, chapter_id: str | None = None) -> ContentItem | None:
        contents = self.contents if chapter_id is None else self._contents_by_chapter.get(chapter_id, [])
        for c in contents:
            if c.id == content_id:
                return c
        return None

    # --- loading

    async def open_course(self, course_id: str) -> list[Chapter]:
        if not course_id:
            raise ContentNotFound("No course selected.")
        chapters = await self.backend.list_chapters(course_id)
        if not chapters:
            logger.warning("course_has_no_chapters", course_id=course_id)
            raise ContentNotFound("This course has no chapters yet.")

        self.course_id = course_id
        self.chapters = sort_chapters(chapters)
        self._chapters_confirmed = {c.id for c in chapters if c.is_completed}
        for c in chapters:
            if c.is_completed and not self.store.is_chapter_completed(c.id):
                self.store.set_chapter_completed(c.id, course_id, True, 100.0)
        return self.chapters

    async def open_chapter(self, chapter_id: str | None = None) -> ChapterRecompute:
        if self.course_id is None:
            raise ContentNotFound("No course selected.")
        if chapter_id is None:
            chapter_id = self.chapters[0].id
        if not any(c.id == chapter_id for c in self.chapters):
            raise ContentNotFound(f"Chapter {chapter_id} was not found in this course.")

        await self._close_viewer()
        listing = await self.backend.list_contents(self.course_id, chapter_id)
        self.chapter_id = chapter_id
        self.contents = sort_contents(listing.items)
        # completion is sticky, so server flags only accumulate
        self._server_completed |= listing.completed
        self._server_completed_at.update(listing.completed_at)
        if not self.contents:
            logger.warning("chapter_has_no_contents", course_id=self.course_id, chapter_id=chapter_id)
            raise ContentNotFound("No content available for this chapter.")
        self._contents_by_chapter[chapter_id] = self.contents
        return await self._reconcile_chapter(chapter_id)

    async def open_content(self, content_id: str | None = None) -> ContentViewer:
        if self.chapter_id is None:
            raise ContentNotFound("No chapter selected.")
        content = self._find_content(content_id) if content_id else self.contents[0]
        if content is None:
            raise ContentNotFound(f"Content {content_id} could not be found in this chapter.")

        await self._close_viewer()
        tracker = CompletionTracker(content, self.store, self.handle_complete,
                                    debounce_seconds=self._debounce)
        viewer = viewer_for(tracker, on_position=self._save_position, dwell_seconds=self._dwell)

        record = None
        try:
            record = await self.backend.get_content_progress(content.id)
        except TransientReadError as e:
            # the completion check is an optimisation; the viewer still works without it
            logger.warning("completion_check_failed", content_id=content.id, error=str(e))

        state = await tracker.mount(record)
        if state is CompletionState.SERVER_CONFIRMED:
            self._server_completed.add(content.id)
        self.viewer = viewer
        return viewer

    # --- completion

    async def handle_complete(self, content: ContentItem) -> bool:
        """The onComplete contract shared by every viewer. Returns True once persisted."""
        if not self.store.is_content_completed(content.id):
            self.store.set_content_completed(content.id, content.chapter_id, content.course_id, True)

        confirmed = content.id in self._server_completed
        if not confirmed:
            confirmed = await self._write_content(content)

        # the learner may have moved on; the item's own chapter is reconciled regardless
        if content.chapter_id in self._contents_by_chapter:
            result = await self._reconcile_chapter(content.chapter_id, skip={content.id})
            if confirmed and result.newly_completed:
                self.notifier.success("Chapter completed!")
            elif confirmed:
                self.notifier.success("Progress saved!")
        return confirmed

    async def mark_complete(self, content_id: str | None = None) -> bool:
        """Manual "Mark as Complete" on the open content."""
        if self.viewer is None or (content_id and self.viewer.content.id != content_id):
            raise ContentNotFound("Open the content before marking it complete.")
        return self.viewer.mark_complete()

    async def _write_content(self, content: ContentItem) -> bool:
        position = self.store.get_video_position(content.id)
        entry = self.store.content_entry(content.id)
        write = ContentProgressWrite(
            course_id=content.course_id,
            chapter_id=content.chapter_id,
            content_id=content.id,
            is_completed=True,
            last_position=position or None,
            completed_at=(entry.completed_at if entry and entry.completed_at
                          else datetime.now(timezone.utc)),
        )
        self.store.set_saving_progress(content.id, True)
        try:
            await self.backend.upsert_content_progress(write)
        except ProgressError as e:
            progress_writes_total.labels(kind="content", result="error").inc()
            logger.warning("content_progress_save_failed", content_id=content.id, error=str(e))
            self.notifier.warning(f"Failed to save progress: {e.message}")
            return False
        finally:
            self.store.set_saving_progress(content.id, False)

        progress_writes_total.labels(kind="content", result="ok").inc()
        self._server_completed.add(content.id)
        return True

    async def _write_chapter(self, result: ChapterRecompute) -> bool:
        try:
            await self.backend.upsert_chapter_progress(
                result.course_id, result.chapter_id, result.is_complete, result.percent
            )
        except ProgressError as e:
            progress_writes_total.labels(kind="chapter", result="error").inc()
            logger.warning("chapter_progress_save_failed", chapter_id=result.chapter_id, error=str(e))
            self.notifier.warning(f"Failed to save chapter progress: {e.message}")
            return False

        progress_writes_total.labels(kind="chapter", result="ok").inc()
        if result.is_complete:
            self._chapters_confirmed.add(result.chapter_id)
        else:
            self._chapters_confirmed.discard(result.chapter_id)
        logger.info("chapter_progress_saved", chapter_id=result.chapter_id,
                    is_completed=result.is_complete, percent=result.percent)
        return True

    async def _reconcile_chapter(self, chapter_id: str,
                                 skip: set[str] | frozenset[str] = frozenset()) -> ChapterRecompute:
        contents = self._contents_by_chapter[chapter_id]
        result = recompute_chapter(self.store, chapter_id, contents[0].course_id, contents,
                                   self._server_completed, self._server_completed_at)
        for content_id in result.pending_writes:
            content = self._find_content(content_id, chapter_id)
            if content is not None and content_id not in skip:
                await self._write_content(content)

        confirmed = chapter_id in self._chapters_confirmed
        if result.is_complete and not confirmed:
            await self._write_chapter(result)
        elif not result.is_complete and confirmed:
            # content was added after the chapter had been completed
            await self._write_chapter(result)
        return result

    async def _save_position(self, content: ContentItem, seconds: float) -> None:
        try:
            await self.backend.save_video_position(
                content.course_id, content.chapter_id, content.id, seconds
            )
        except ProgressError as e:
            logger.warning("video_position_save_failed", content_id=content.id, error=str(e))

    # --- navigation

    def next_target(self) -> NavigationTarget | None:
        if self.chapter_id is None:
            return None
        current = self.current_content.id if self.current_content else None
        return next_target(self.chapters, self.contents, self.chapter_id, current)

    def previous_target(self) -> NavigationTarget | None:
        if self.chapter_id is None:
            return None
        current = self.current_content.id if self.current_content else None
        return previous_target(self.contents, self.chapter_id, current)

    async def resolve_next(self) -> NavigationTarget | None:
        """Like next_target, with a chapter hop resolved to that chapter's first item."""
        target = self.next_target()
        if target is None or target.content_id is not None:
            return target
        listing = await self.backend.list_contents(self.course_id, target.chapter_id)
        items = sort_contents(listing.items)
        return NavigationTarget(target.chapter_id, items[0].id if items else None)

    # --- teardown

    async def _close_viewer(self) -> None:
        if self.viewer is not None:
            await self.viewer.unmount()
            write = self.viewer.tracker.in_flight_write
            if write is not None:
                self._writes.add(write)
                write.add_done_callback(self._writes.discard)
            self.viewer = None

    async def settle(self) -> None:
        """Wait for completion writes that outlived their viewer."""
        if self._writes:
            await asyncio.gather(*self._writes)

    async def close(self) -> None:
        await self._close_viewer()
        await self.settle()
