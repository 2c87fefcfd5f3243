"""Realtime course sync over Redis pub/sub.

The service publishes a small JSON notification on ``course-sync:{course_id}:{table}``
whenever a row under a course changes. Learner clients hold one pattern
subscription per open course and turn notifications into query-cache
invalidations, so the next read refetches ground truth.
"""
import asyncio
import json
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from . import cache
from .metrics import realtime_invalidations_total
from .query_cache import (
    QueryCache, QueryKey, STUDENT_ASSIGNMENTS_KEY, STUDENT_COURSES_KEY,
    chapter_contents_key, course_assignments_key, course_chapters_key, student_course_key,
)
from ..config import settings

logger = structlog.get_logger()

CHANNEL_PREFIX = "course-sync"
SYNC_TABLES = frozenset({
    "courses", "chapters", "chapter_contents", "course_progress", "student_progress", "assignments",
})


def channel_for(course_id: str, table: str) -> str:
    return f"{CHANNEL_PREFIX}:{course_id}:{table}"


def publish_change(table: str, course_id: str, chapter_id: str | None = None,
                   event: str = "UPDATE", record: dict[str, Any] | None = None) -> bool:
    """Best effort: a lost notification only delays a client refresh."""
    payload = {
        "table": table,
        "event": event,
        "course_id": course_id,
        "chapter_id": chapter_id,
        "record": record or {},
    }
    try:
        cache.get_redis().publish(channel_for(course_id, table), json.dumps(payload, default=str))
        return True
    except Exception as e:
        logger.warning("realtime_publish_failed", table=table, course_id=course_id, error=str(e))
        return False


def _chapter_of(table: str, payload: dict) -> str | None:
    record = payload.get("record") or {}
    if payload.get("chapter_id"):
        return payload["chapter_id"]
    if record.get("chapter_id"):
        return record["chapter_id"]
    if table == "chapters":
        return record.get("id")
    return None


def query_keys_for_change(course_id: str, table: str, payload: dict) -> list[QueryKey]:
    keys = [student_course_key(course_id), course_chapters_key(course_id)]
    chapter_id = _chapter_of(table, payload or {})
    if chapter_id:
        keys.append(chapter_contents_key(chapter_id, course_id))
    if table == "assignments":
        keys += [course_assignments_key(course_id), STUDENT_ASSIGNMENTS_KEY]
    keys.append(STUDENT_COURSES_KEY)
    return keys


class CourseSyncChannel:
    """Scoped subscription to one course's change notifications.

    Use as ``async with CourseSyncChannel(course_id, query_cache):``. An empty
    course id subscribes to nothing. Connection problems are logged and the
    channel simply goes quiet; the subscription is always released on exit.
    """

    def __init__(self, course_id: str | None, query_cache: QueryCache,
                 client: aioredis.Redis | None = None, debounce_seconds: float | None = None):
        self.course_id = course_id
        self.query_cache = query_cache
        self._client = client
        self._owns_client = client is None
        self._debounce = (settings.REALTIME_DEBOUNCE_SECONDS
                          if debounce_seconds is None else debounce_seconds)
        self._pubsub = None
        self._listener: asyncio.Task | None = None
        self._flush_task: asyncio.Task | None = None
        self._pending: dict[QueryKey, None] = {}
        self._tables: set[str] = set()

    @property
    def active(self) -> bool:
        return self._pubsub is not None

    @property
    def pattern(self) -> str:
        return f"{CHANNEL_PREFIX}:{self.course_id}:*"

    async def __aenter__(self) -> "CourseSyncChannel":
        if not self.course_id:
            return self
        try:
            if self._client is None:
                self._client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
            pubsub = self._client.pubsub()
            await pubsub.psubscribe(self.pattern)
            self._pubsub = pubsub
        except (RedisError, OSError) as e:
            logger.warning("course_sync_subscribe_failed", course_id=self.course_id, error=str(e))
            await self._release()
            return self
        self._listener = asyncio.get_running_loop().create_task(self._listen())
        logger.info("course_sync_subscribed", course_id=self.course_id)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self._release()
        return False

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                self.handle_message(message.get("channel"), message.get("data"))
        except (RedisError, OSError) as e:
            logger.warning("course_sync_connection_lost", course_id=self.course_id, error=str(e))

    def handle_message(self, channel: str | bytes, data: str | bytes | None) -> list[QueryKey]:
        if isinstance(channel, bytes):
            channel = channel.decode()
        table = (channel or "").rsplit(":", 1)[-1]
        if table not in SYNC_TABLES:
            return []
        try:
            payload = json.loads(data) if data else {}
        except (TypeError, ValueError):
            logger.warning("course_sync_bad_payload", channel=channel)
            payload = {}

        keys = query_keys_for_change(self.course_id, table, payload)
        for key in keys:
            self._pending[key] = None
        self._tables.add(table)

        # every notification restarts the quiet period
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_later())
        return keys

    async def _flush_later(self) -> None:
        await asyncio.sleep(self._debounce)
        self.flush()

    def flush(self) -> int:
        keys, self._pending = list(self._pending), {}
        tables, self._tables = self._tables, set()
        for key in keys:
            self.query_cache.invalidate(key)
        for table in tables:
            realtime_invalidations_total.labels(table=table).inc()
        if keys:
            logger.info("course_sync_invalidated", course_id=self.course_id,
                        tables=sorted(tables), keys=len(keys))
        return len(keys)

    async def _release(self) -> None:
        for task in (self._listener, self._flush_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._listener = self._flush_task = None
        self._pending, self._tables = {}, set()

        pubsub, self._pubsub = self._pubsub, None
        try:
            if pubsub is not None:
                await pubsub.punsubscribe()
                await pubsub.aclose()
            if self._owns_client and self._client is not None:
                await self._client.aclose()
                self._client = None
        except (RedisError, OSError) as e:
            logger.warning("course_sync_release_failed", course_id=self.course_id, error=str(e))
