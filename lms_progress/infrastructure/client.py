"""httpx client for the progress service, used by the course player as its backend."""
import asyncio
from datetime import datetime
from typing import Any

import httpx
import structlog

from .query_cache import (
    QueryCache, RequestDeduplicator, STUDENT_COURSES_KEY, chapter_contents_key,
    course_chapters_key, profile_for, student_course_key,
)
from ..application.dto import ChapterContents, ContentProgressWrite, CourseProgressSummary
from ..application.use_cases.course_player import IProgressBackend
from ..config import settings
from ..domain.entities import Chapter, ChapterProgress, ContentItem, ContentProgress, ContentType
from ..domain.errors import (
    ACCESS_ERRORS, AccessDenied, ContentNotFound, ProgressError, ProgressWriteError,
    SessionExpired, TransientReadError,
)

logger = structlog.get_logger()


def get_retry_delay(attempt: int, base: float | None = None, cap: float | None = None) -> float:
    """Exponential backoff: base, 2*base, 4*base... capped. ``attempt`` is zero-based."""
    base = settings.RETRY_BASE_SECONDS if base is None else base
    cap = settings.RETRY_MAX_SECONDS if cap is None else cap
    return min(base * 2 ** attempt, cap)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _detail(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        return detail
    return {"message": detail} if detail else {}


def _content_progress(data: dict) -> ContentProgress:
    return ContentProgress(
        student_id=data.get("student_id", ""),
        course_id=data["course_id"],
        chapter_id=data["chapter_id"],
        content_id=data["content_id"],
        is_completed=bool(data.get("is_completed")),
        last_position=data.get("last_position"),
        completed_at=_parse_dt(data.get("completed_at")),
    )


class ProgressApiClient(IProgressBackend):
    def __init__(self, token: str, base_url: str | None = None,
                 transport: httpx.AsyncBaseTransport | None = None,
                 query_cache: QueryCache | None = None,
                 read_retries: int | None = None, retry_base_seconds: float | None = None):
        self._http = httpx.AsyncClient(
            base_url=base_url or settings.API_BASE_URL,
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(settings.REQUEST_TIMEOUT_SECONDS),
            transport=transport,
        )
        self.query_cache = query_cache if query_cache is not None else QueryCache()
        self._dedup = RequestDeduplicator()
        self.read_retries = settings.READ_RETRIES if read_retries is None else read_retries
        self._retry_base = retry_base_seconds

    async def __aenter__(self) -> "ProgressApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # --- transport

    def _raise_for(self, response: httpx.Response, write: bool = False) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = _detail(response)
        if status == 401:
            raise SessionExpired()
        if status == 403:
            raise ACCESS_ERRORS.get(detail.get("code"), AccessDenied)(detail.get("message"))
        if status == 404:
            raise ContentNotFound(detail.get("message"))
        if write:
            raise ProgressWriteError(f"Server rejected the write ({status}).")
        if status >= 500:
            raise TransientReadError(f"Server error ({status}).")
        raise ProgressError(f"Unexpected response ({status}).")

    async def _get(self, path: str, params: dict | None = None) -> Any:
        """GET with bounded retries on timeouts, dropped connections and 5xx."""
        attempt = 0
        while True:
            try:
                response = await self._http.get(path, params=params)
            except httpx.TransportError as e:
                error = TransientReadError(f"Could not reach the server: {e.__class__.__name__}")
            else:
                if response.status_code < 500:
                    self._raise_for(response)
                    return response.json()
                error = TransientReadError(f"Server error ({response.status_code}).")

            if attempt >= self.read_retries:
                raise error
            delay = get_retry_delay(attempt, base=self._retry_base)
            logger.warning("read_retry", path=path, attempt=attempt + 1, delay=delay, error=str(error))
            await asyncio.sleep(delay)
            attempt += 1

    async def _write(self, method: str, path: str, payload: dict) -> Any:
        try:
            response = await self._http.request(method, path, json=payload)
        except httpx.TransportError as e:
            raise ProgressWriteError(f"Could not reach the server: {e.__class__.__name__}") from e
        self._raise_for(response, write=True)
        return response.json()

    # --- session

    async def check_session(self) -> str:
        """Return the learner id behind the token; a slow or rejected check means log in again."""
        try:
            response = await self._http.get(
                "/api/progress/session", timeout=settings.SESSION_CHECK_TIMEOUT_SECONDS
            )
        except httpx.TimeoutException as e:
            logger.warning("session_check_timeout")
            raise SessionExpired() from e
        except httpx.TransportError as e:
            raise TransientReadError(f"Could not reach the server: {e.__class__.__name__}") from e
        self._raise_for(response)
        return response.json()["student_id"]

    # --- reads

    async def list_chapters(self, course_id: str) -> list[Chapter]:
        async def load():
            rows = await self._get(f"/api/courses/{course_id}/chapters")
            return [
                Chapter(id=r["id"], course_id=r["course_id"], title=r.get("title", ""),
                        order_index=r.get("order_index", 0), is_completed=bool(r.get("is_completed")))
                for r in rows
            ]
        return await self.query_cache.fetch(course_chapters_key(course_id), load, profile_for("chapters"))

    async def list_contents(self, course_id: str, chapter_id: str) -> ChapterContents:
        async def load():
            rows = await self._get(f"/api/courses/{course_id}/chapters/{chapter_id}/contents")
            items = [
                ContentItem(
                    id=r["id"], chapter_id=r["chapter_id"], course_id=r["course_id"],
                    content_type=ContentType.parse(r.get("content_type")),
                    order_index=r.get("order_index", 0), title=r.get("title", ""),
                    content_url=r.get("content_url"),
                )
                for r in rows
            ]
            completed = frozenset(r["id"] for r in rows if r.get("is_completed"))
            completed_at = {r["id"]: _parse_dt(r["completed_at"])
                            for r in rows if r.get("is_completed") and r.get("completed_at")}
            return ChapterContents(chapter_id=chapter_id, items=items, completed=completed,
                                   completed_at=completed_at)
        return await self.query_cache.fetch(
            chapter_contents_key(chapter_id, course_id), load, profile_for("contents")
        )

    async def get_content_progress(self, content_id: str) -> ContentProgress | None:
        async def load():
            data = await self._get(f"/api/progress/contents/{content_id}")
            return _content_progress(data) if data else None
        return await self._dedup.deduplicate(("contentProgress", content_id), load)

    async def get_course_progress(self, course_id: str) -> CourseProgressSummary:
        data = await self._get(f"/api/courses/{course_id}/progress")
        return CourseProgressSummary(
            course_id=data["course_id"],
            completed_chapters=data["completed_chapters"],
            total_chapters=data["total_chapters"],
            progress_percent=data["progress_percent"],
            certificate_eligible=data["certificate_eligible"],
        )

    # --- writes (single attempt; the course player retries on its own schedule)

    async def upsert_content_progress(self, write: ContentProgressWrite) -> ContentProgress:
        data = await self._write("POST", f"/api/progress/contents/{write.content_id}/complete", {
            "course_id": write.course_id,
            "chapter_id": write.chapter_id,
            "last_position": write.last_position,
            "completed_at": write.completed_at.isoformat() if write.completed_at else None,
        })
        self.query_cache.invalidate(chapter_contents_key(write.chapter_id, write.course_id))
        return _content_progress(data)

    async def upsert_chapter_progress(self, course_id: str, chapter_id: str, is_completed: bool,
                                      progress_percent: float) -> ChapterProgress:
        data = await self._write("POST", f"/api/progress/chapters/{chapter_id}", {
            "course_id": course_id,
            "is_completed": is_completed,
            "progress_percent": progress_percent,
        })
        for key in (course_chapters_key(course_id), student_course_key(course_id), STUDENT_COURSES_KEY):
            self.query_cache.invalidate(key)
        return ChapterProgress(
            student_id=data.get("student_id", ""),
            course_id=data["course_id"],
            chapter_id=data["chapter_id"],
            is_completed=bool(data["is_completed"]),
            progress_percent=data["progress_percent"],
            completed_at=_parse_dt(data.get("completed_at")),
        )

    async def save_video_position(self, course_id: str, chapter_id: str, content_id: str,
                                  seconds: float) -> None:
        await self._write("PUT", f"/api/progress/contents/{content_id}/position", {
            "course_id": course_id,
            "chapter_id": chapter_id,
            "seconds": seconds,
        })
