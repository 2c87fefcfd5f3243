"""In-process query cache for the learner client.

Entries are keyed by tuple query identities such as ``("courseChapters", course_id)``.
Invalidation works on key prefixes, so ``("studentCourse",)`` marks every
single-course entry stale at once.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Hashable

import structlog

logger = structlog.get_logger()

QueryKey = tuple
Fetcher = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class CacheProfile:
    stale_time: float  # seconds a result is served without refetching
    gc_time: float     # seconds an unused entry is kept at all


DEFAULT_PROFILE = CacheProfile(stale_time=600, gc_time=900)

PROFILES: dict[str, CacheProfile] = {
    "course_list": CacheProfile(stale_time=120, gc_time=900),
    "chapters": CacheProfile(stale_time=60, gc_time=900),
    "contents": CacheProfile(stale_time=60, gc_time=900),
    "progress": CacheProfile(stale_time=30, gc_time=300),
}


def profile_for(kind: str) -> CacheProfile:
    return PROFILES.get(kind, DEFAULT_PROFILE)


# Query identities used across the client and the realtime bridge.
def student_course_key(course_id: str) -> QueryKey:
    return ("studentCourse", course_id)


STUDENT_COURSES_KEY: QueryKey = ("studentCourses",)
STUDENT_ASSIGNMENTS_KEY: QueryKey = ("studentAssignments",)


def course_chapters_key(course_id: str) -> QueryKey:
    return ("courseChapters", course_id)


def chapter_contents_key(chapter_id: str, course_id: str) -> QueryKey:
    return ("chapterContents", chapter_id, course_id)


def course_assignments_key(course_id: str) -> QueryKey:
    return ("courseAssignments", course_id)


@dataclass
class _Entry:
    data: Any
    updated_at: float
    last_used: float
    gc_time: float
    invalidated: bool = False


def _matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[:len(prefix)] == prefix


class QueryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[QueryKey, _Entry] = {}
        self._inflight: dict[QueryKey, asyncio.Task] = {}
        # in-flight keys invalidated before their fetch returned
        self._invalidated_inflight: set[QueryKey] = set()

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._entries

    def get(self, key: QueryKey) -> Any | None:
        entry = self._entries.get(key)
        return entry.data if entry else None

    def set(self, key: QueryKey, data: Any, profile: CacheProfile = DEFAULT_PROFILE) -> None:
        now = self._clock()
        self._entries[key] = _Entry(data=data, updated_at=now, last_used=now, gc_time=profile.gc_time)

    def is_stale(self, key: QueryKey, profile: CacheProfile = DEFAULT_PROFILE) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.invalidated:
            return True
        return self._clock() - entry.updated_at >= profile.stale_time

    async def fetch(self, key: QueryKey, fetcher: Fetcher,
                    profile: CacheProfile = DEFAULT_PROFILE) -> Any:
        """Fresh cached data, or the result of one shared fetch for ``key``."""
        if not self.is_stale(key, profile):
            entry = self._entries[key]
            entry.last_used = self._clock()
            return entry.data

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._load(key, fetcher, profile))
            self._inflight[key] = task
        # one caller giving up must not cancel the fetch for the others
        return await asyncio.shield(task)

    async def _load(self, key: QueryKey, fetcher: Fetcher, profile: CacheProfile) -> Any:
        try:
            data = await fetcher()
            self.set(key, data, profile)
            if key in self._invalidated_inflight:
                # fetched before the change landed
                self._entries[key].invalidated = True
            return data
        finally:
            self._inflight.pop(key, None)
            self._invalidated_inflight.discard(key)

    def invalidate(self, prefix: QueryKey) -> int:
        count = 0
        for key, entry in self._entries.items():
            if _matches(key, prefix):
                entry.invalidated = True
                count += 1
        for key in self._inflight:
            if _matches(key, prefix):
                self._invalidated_inflight.add(key)
                if key not in self._entries:
                    count += 1
        return count

    def remove(self, prefix: QueryKey) -> int:
        dropped = [k for k in self._entries if _matches(k, prefix)]
        for key in dropped:
            del self._entries[key]
        return len(dropped)

    def collect_garbage(self) -> int:
        now = self._clock()
        dropped = [k for k, e in self._entries.items()
                   if k not in self._inflight and now - e.last_used > e.gc_time]
        for key in dropped:
            del self._entries[key]
        if dropped:
            logger.debug("query_cache_gc", dropped=len(dropped))
        return len(dropped)


@dataclass
class _Pending:
    future: asyncio.Future
    started_at: float = field(default=0.0)


class RequestDeduplicator:
    """Share one in-flight call per key between concurrent callers.

    Finished calls are forgotten immediately; anything still registered after
    ``max_age`` seconds is treated as hung and dropped on the next call.
    """

    def __init__(self, max_age: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.max_age = max_age
        self._clock = clock
        self._pending: dict[Hashable, _Pending] = {}

    def _cleanup(self) -> None:
        now = self._clock()
        for key in [k for k, p in self._pending.items() if now - p.started_at > self.max_age]:
            del self._pending[key]

    async def deduplicate(self, key: Hashable, fn: Fetcher) -> Any:
        self._cleanup()
        pending = self._pending.get(key)
        if pending is None:
            future = asyncio.ensure_future(fn())
            pending = _Pending(future=future, started_at=self._clock())
            self._pending[key] = pending
            future.add_done_callback(lambda _f, k=key, p=pending: self._forget(k, p))
        return await asyncio.shield(pending.future)

    def _forget(self, key: Hashable, pending: _Pending) -> None:
        if self._pending.get(key) is pending:
            del self._pending[key]

    @property
    def in_flight(self) -> int:
        return len(self._pending)
