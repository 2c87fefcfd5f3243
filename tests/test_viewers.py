import asyncio

import pytest

from lms_progress.application.completion import CompletionTracker
from lms_progress.application.viewers import (
    DwellViewer, QuizViewer, VideoViewer, viewer_for,
)
from lms_progress.config import settings
from lms_progress.domain.entities import ContentItem, ContentType


def _tracker(store, content_type, calls):
    item = ContentItem(id="c1", chapter_id="ch1", course_id="course", content_type=content_type)

    async def on_complete(content):
        calls.append(content.id)
        return True

    return CompletionTracker(item, store, on_complete, debounce_seconds=0)


@pytest.mark.asyncio
async def test_video_completes_at_eighty_percent(store):
    calls = []
    viewer = VideoViewer(_tracker(store, ContentType.VIDEO, calls))
    await viewer.tracker.mount(None)

    assert await viewer.on_time_update(79, 100) is False
    assert await viewer.on_time_update(80, 100) is True
    assert await viewer.on_time_update(95, 100) is False
    assert viewer.on_ended() is False
    await viewer.drain()

    assert calls == ["c1"]
    assert viewer.is_completed


@pytest.mark.asyncio
async def test_video_position_saves_are_throttled(store):
    saved = []

    async def on_position(content, seconds):
        saved.append(seconds)

    viewer = VideoViewer(_tracker(store, ContentType.VIDEO, []), on_position=on_position)
    await viewer.tracker.mount(None)

    for t in (3, 12, 15, 21, 22, 40):
        await viewer.on_time_update(t, 600)

    # under 5s is never saved; afterwards only moves of 10s or more
    assert saved == [12, 22, 40]
    assert store.get_video_position("c1") == 40


@pytest.mark.asyncio
async def test_video_without_duration_never_completes(store):
    viewer = VideoViewer(_tracker(store, ContentType.VIDEO, []))
    await viewer.tracker.mount(None)
    assert await viewer.on_time_update(30, 0) is False


def test_resume_position_skips_the_edges(store):
    viewer = VideoViewer(_tracker(store, ContentType.VIDEO, []))
    store.set_video_position("c1", 3)
    assert viewer.resume_position(100) is None
    store.set_video_position("c1", 50)
    assert viewer.resume_position(100) == 50
    store.set_video_position("c1", 97)
    assert viewer.resume_position(100) is None
    assert viewer.resume_position() == 97


@pytest.mark.asyncio
async def test_dwell_timer_starts_once_and_completes(store):
    calls = []
    viewer = DwellViewer(_tracker(store, ContentType.TEXT, calls), dwell_seconds=0.02)
    await viewer.tracker.mount(None)

    assert viewer.on_visible() is True
    assert viewer.on_visible() is False
    assert viewer.timer_started
    await viewer.drain()

    assert calls == ["c1"]
    assert store.is_content_completed("c1")


@pytest.mark.asyncio
async def test_leaving_before_dwell_elapses_does_not_complete(store):
    calls = []
    viewer = DwellViewer(_tracker(store, ContentType.PDF, calls), dwell_seconds=0.05)
    await viewer.tracker.mount(None)
    viewer.on_visible()
    await viewer.unmount()
    await asyncio.sleep(0.1)

    assert calls == []
    assert not store.is_content_completed("c1")


@pytest.mark.asyncio
async def test_manual_completion_skips_the_dwell(store):
    calls = []
    viewer = DwellViewer(_tracker(store, ContentType.TEXT, calls), dwell_seconds=60)
    await viewer.tracker.mount(None)
    assert viewer.mark_complete() is True
    await viewer.tracker.drain()
    assert calls == ["c1"]
    assert viewer.on_visible() is False


@pytest.mark.asyncio
async def test_quiz_completes_on_submit(store):
    calls = []
    viewer = QuizViewer(_tracker(store, ContentType.QUIZ, calls))
    await viewer.tracker.mount(None)
    assert viewer.submit() is True
    await viewer.drain()
    assert calls == ["c1"]


@pytest.mark.parametrize("content_type,expected", [
    (ContentType.VIDEO, VideoViewer),
    (ContentType.TEXT, DwellViewer),
    (ContentType.PDF, DwellViewer),
    (ContentType.FILE, DwellViewer),
    (ContentType.VIDEO_LINK, DwellViewer),
    (ContentType.QUIZ, QuizViewer),
    (ContentType.ASSIGNMENT, QuizViewer),
])
def test_viewer_for_content_type(store, content_type, expected):
    assert type(viewer_for(_tracker(store, content_type, []))) is expected


def test_linked_video_uses_longer_dwell(store):
    linked = viewer_for(_tracker(store, ContentType.VIDEO_LINK, []))
    text = viewer_for(_tracker(store, ContentType.TEXT, []))
    assert linked.dwell_seconds == settings.LINKED_VIDEO_DWELL_SECONDS
    assert text.dwell_seconds == settings.DWELL_SECONDS
