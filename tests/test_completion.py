import asyncio
from datetime import datetime, timezone

import pytest

from lms_progress.application.completion import CompletionTracker
from lms_progress.domain.entities import (
    CompletionState, CompletionTrigger, ContentItem, ContentProgress, ContentType,
)
from lms_progress.domain.errors import InvalidTransition, ProgressWriteError

ITEM = ContentItem(id="c1", chapter_id="ch1", course_id="course", content_type=ContentType.VIDEO)


class Recorder:
    def __init__(self, result=True, error=None):
        self.calls = []
        self.result = result
        self.error = error

    async def __call__(self, content):
        self.calls.append(content.id)
        if self.error is not None:
            raise self.error
        return self.result


def _record(completed: bool, position: float | None = None) -> ContentProgress:
    return ContentProgress("s", "course", "ch1", "c1", is_completed=completed, last_position=position)


@pytest.mark.asyncio
async def test_server_confirmed_record_short_circuits(store):
    on_complete = Recorder()
    tracker = CompletionTracker(ITEM, store, on_complete, debounce_seconds=0)

    state = await tracker.mount(_record(True))

    assert state is CompletionState.SERVER_CONFIRMED
    assert store.is_content_completed("c1")
    assert on_complete.calls == []
    assert tracker.trigger(CompletionTrigger.VIDEO_ENDED) is False


@pytest.mark.asyncio
async def test_mount_seeds_resume_position(store):
    tracker = CompletionTracker(ITEM, store, Recorder(), debounce_seconds=0)
    assert await tracker.mount(_record(False, position=73.5)) is CompletionState.IN_PROGRESS
    assert store.get_video_position("c1") == 73.5


@pytest.mark.asyncio
async def test_two_triggers_inside_debounce_window_fire_once(store):
    on_complete = Recorder()
    tracker = CompletionTracker(ITEM, store, on_complete, debounce_seconds=0.05)
    await tracker.mount(None)

    assert tracker.trigger(CompletionTrigger.VIDEO_ENDED) is True
    assert tracker.trigger(CompletionTrigger.MANUAL) is False
    assert tracker.is_pending
    await tracker.drain()

    assert on_complete.calls == ["c1"]
    assert tracker.state is CompletionState.SERVER_CONFIRMED
    assert tracker.trigger(CompletionTrigger.MANUAL) is False


@pytest.mark.asyncio
async def test_local_flag_is_set_only_after_debounce(store):
    tracker = CompletionTracker(ITEM, store, Recorder(), debounce_seconds=0.05)
    await tracker.mount(None)
    tracker.trigger(CompletionTrigger.VIDEO_THRESHOLD)
    assert not store.is_content_completed("c1")
    await tracker.drain()
    assert store.is_content_completed("c1")


@pytest.mark.asyncio
async def test_failed_write_keeps_local_completion(store):
    tracker = CompletionTracker(ITEM, store, Recorder(result=False), debounce_seconds=0)
    await tracker.mount(None)
    tracker.trigger(CompletionTrigger.MANUAL)
    await tracker.drain()

    assert tracker.state is CompletionState.LOCALLY_COMPLETE
    assert tracker.is_completed
    assert store.is_content_completed("c1")


@pytest.mark.asyncio
async def test_raising_on_complete_does_not_escape(store):
    tracker = CompletionTracker(ITEM, store, Recorder(error=ProgressWriteError()), debounce_seconds=0)
    await tracker.mount(None)
    tracker.trigger(CompletionTrigger.MANUAL)
    await tracker.drain()
    assert tracker.state is CompletionState.LOCALLY_COMPLETE
    assert store.is_content_completed("c1")


@pytest.mark.asyncio
async def test_remount_retries_unsaved_completion(store):
    store.set_content_completed("c1", "ch1", "course", True)
    on_complete = Recorder()
    tracker = CompletionTracker(ITEM, store, on_complete, debounce_seconds=0)

    state = await tracker.mount(None)

    assert state is CompletionState.SERVER_CONFIRMED
    assert on_complete.calls == ["c1"]


@pytest.mark.asyncio
async def test_unmount_cancels_pending_completion(store):
    on_complete = Recorder()
    tracker = CompletionTracker(ITEM, store, on_complete, debounce_seconds=0.05)
    await tracker.mount(None)
    tracker.trigger(CompletionTrigger.VIDEO_ENDED)
    tracker.unmount()
    await asyncio.sleep(0.1)

    assert on_complete.calls == []
    assert not store.is_content_completed("c1")
    assert tracker.state is CompletionState.IN_PROGRESS


@pytest.mark.asyncio
async def test_backward_transition_is_rejected(store):
    tracker = CompletionTracker(ITEM, store, Recorder(), debounce_seconds=0)
    await tracker.mount(_record(True))
    with pytest.raises(InvalidTransition):
        tracker._transition(CompletionState.IN_PROGRESS)


@pytest.mark.asyncio
async def test_unmount_during_the_write_lets_it_finish(store):
    started, release = asyncio.Event(), asyncio.Event()
    calls = []

    async def slow_write(content):
        calls.append(content.id)
        started.set()
        await release.wait()
        return True

    tracker = CompletionTracker(ITEM, store, slow_write, debounce_seconds=0)
    await tracker.mount(None)
    tracker.trigger(CompletionTrigger.MANUAL)
    await started.wait()

    tracker.unmount()
    write = tracker.in_flight_write
    assert write is not None
    release.set()
    await write

    assert calls == ["c1"]
    assert tracker.state is CompletionState.SERVER_CONFIRMED
    assert tracker.in_flight_write is None


@pytest.mark.asyncio
async def test_server_completion_time_is_kept(store):
    completed_at = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    record = ContentProgress("s", "course", "ch1", "c1", is_completed=True, completed_at=completed_at)
    tracker = CompletionTracker(ITEM, store, Recorder(), debounce_seconds=0)

    await tracker.mount(record)

    assert store.content_entry("c1").completed_at == completed_at
