from dataclasses import asdict

import structlog
from fastapi import APIRouter, Depends, Query, HTTPException, status
from sqlalchemy.orm import Session
from ....infrastructure.db import get_db
from ....infrastructure.cache import (
    get_cache, set_cache, invalidate_course, courses_key, chapters_key, contents_key,
)
from ....infrastructure.metrics import cache_hits_total, cache_misses_total, db_queries_total
from ....infrastructure.realtime import publish_change
from ....infrastructure.repositories import CourseRepository, ProgressRepository
from ..schemas import CourseOut, ChapterOut, ContentOut, CourseProgressOut
from ..authz import get_student_id, require_admin, require_course_access

logger = structlog.get_logger()

router = APIRouter(prefix="/api/courses", tags=["courses"])

@router.get("", response_model=list[CourseOut])
def list_courses(db: Session = Depends(get_db),
                 limit: int = Query(10, ge=1, le=100),
                 offset: int = Query(0, ge=0)):
    cache_key = courses_key(limit, offset)
    cached = get_cache(cache_key)
    if cached:
        cache_hits_total.inc()
        return cached

    cache_misses_total.inc()
    db_queries_total.inc()
    rows = CourseRepository(db).list_published(limit=limit, offset=offset)
    result = [CourseOut.model_validate(row) for row in rows]
    set_cache(cache_key, [r.model_dump() for r in result])
    return result

def _chapter_structure(course_id: str, db: Session) -> list[dict]:
    """Published chapters of a course, shared by every learner and cached."""
    cache_key = chapters_key(course_id)
    cached = get_cache(cache_key)
    if cached:
        cache_hits_total.inc()
        return cached

    cache_misses_total.inc()
    db_queries_total.inc()
    repo = CourseRepository(db)
    if not repo.get_course(course_id): raise HTTPException(404, "course not found")
    result = [
        {"id": c.id, "course_id": c.course_id, "title": c.title, "order_index": c.order_index}
        for c in repo.list_chapters(course_id)
    ]
    set_cache(cache_key, result)
    return result

def _content_structure(course_id: str, chapter_id: str, db: Session) -> list[dict]:
    cache_key = contents_key(course_id, chapter_id)
    cached = get_cache(cache_key)
    if cached:
        cache_hits_total.inc()
        return cached

    cache_misses_total.inc()
    db_queries_total.inc()
    repo = CourseRepository(db)
    if not repo.get_chapter(course_id, chapter_id): raise HTTPException(404, "chapter not found")
    result = [
        {"id": c.id, "chapter_id": c.chapter_id, "course_id": c.course_id, "title": c.title,
         "content_type": c.content_type, "content_url": c.content_url, "order_index": c.order_index}
        for c in repo.list_contents(chapter_id)
    ]
    set_cache(cache_key, result)
    return result

@router.get("/{course_id}/chapters", response_model=list[ChapterOut])
def course_chapters(course_id: str,
                    student_id: str = Depends(get_student_id),
                    db: Session = Depends(get_db)):
    chapters = _chapter_structure(course_id, db)
    require_course_access(course_id, student_id, db)
    done = ProgressRepository(db).completed_chapter_ids(student_id, course_id)
    return [ChapterOut(**c, is_completed=c["id"] in done) for c in chapters]

@router.get("/{course_id}/chapters/{chapter_id}/contents", response_model=list[ContentOut])
def chapter_contents(course_id: str, chapter_id: str,
                     student_id: str = Depends(get_student_id),
                     db: Session = Depends(get_db)):
    contents = _content_structure(course_id, chapter_id, db)
    require_course_access(course_id, student_id, db)
    done = ProgressRepository(db).completed_contents(student_id, chapter_id)
    return [ContentOut(**c, is_completed=c["id"] in done, completed_at=done.get(c["id"]))
            for c in contents]

@router.get("/{course_id}/progress", response_model=CourseProgressOut)
def course_progress(course_id: str,
                    student_id: str = Depends(get_student_id),
                    db: Session = Depends(get_db)):
    repo = CourseRepository(db)
    if not repo.get_course(course_id): raise HTTPException(404, "course not found")
    require_course_access(course_id, student_id, db)
    summary = repo.course_summary(student_id, course_id, ProgressRepository(db))
    return CourseProgressOut(**asdict(summary))

# --- Structure edits happen elsewhere; authors ping this to push them to learners.

@router.post("/{course_id}/refresh", status_code=status.HTTP_202_ACCEPTED, dependencies=[Depends(require_admin)])
def refresh_course(course_id: str, db: Session = Depends(get_db)):
    if not CourseRepository(db).get_course(course_id): raise HTTPException(404, "course not found")
    dropped = invalidate_course(course_id)
    publish_change("courses", course_id, event="UPDATE", record={"id": course_id})
    logger.info("course_refreshed", course_id=course_id, cache_keys_dropped=dropped)
    return {"ok": True, "cache_keys_dropped": dropped}
