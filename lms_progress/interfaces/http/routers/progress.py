from dataclasses import asdict

import structlog
from fastapi import APIRouter, Depends, Query, HTTPException
from sqlalchemy.orm import Session
from ....application.dto import ContentProgressWrite
from ....infrastructure.db import get_db
from ....infrastructure.metrics import db_queries_total
from ....infrastructure.realtime import publish_change
from ....infrastructure.repositories import CourseRepository, ProgressRepository
from ..authz import get_student_id, require_course_access
from ..schemas import (
    ChapterProgressIn, ChapterProgressOut, CompleteContentIn, ContentProgressOut,
    PositionIn, SessionOut,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/progress", tags=["progress"])

@router.get("/session", response_model=SessionOut)
def session(student_id: str = Depends(get_student_id)):
    return SessionOut(student_id=student_id)

def _check_content(content_id: str, course_id: str, chapter_id: str, student_id: str, db: Session):
    row = CourseRepository(db).get_content(content_id)
    if not row or row.chapter_id != chapter_id or row.course_id != course_id:
        raise HTTPException(404, "content not found")
    require_course_access(course_id, student_id, db)

@router.get("/contents/{content_id}", response_model=ContentProgressOut | None)
def get_content_progress(content_id: str,
                         student_id: str = Depends(get_student_id),
                         db: Session = Depends(get_db)):
    db_queries_total.inc()
    row = CourseRepository(db).get_content(content_id)
    if not row:
        raise HTTPException(404, "content not found")
    require_course_access(row.course_id, student_id, db)
    record = ProgressRepository(db).get_content(student_id, content_id)
    return ContentProgressOut(**asdict(record)) if record else None

@router.post("/contents/{content_id}/complete", response_model=ContentProgressOut)
def complete_content(content_id: str, payload: CompleteContentIn,
                     student_id: str = Depends(get_student_id),
                     db: Session = Depends(get_db)):
    _check_content(content_id, payload.course_id, payload.chapter_id, student_id, db)
    # idempotent UPSERT on (student_id, content_id); repeated calls change nothing
    record = ProgressRepository(db).upsert_content(student_id, ContentProgressWrite(
        course_id=payload.course_id,
        chapter_id=payload.chapter_id,
        content_id=content_id,
        is_completed=True,
        last_position=payload.last_position,
        completed_at=payload.completed_at,
    ))
    publish_change("student_progress", payload.course_id, payload.chapter_id,
                   record={"content_id": content_id, "is_completed": True})
    logger.info("content_progress_upserted", student_id=student_id, content_id=content_id)
    return ContentProgressOut(**asdict(record))

@router.put("/contents/{content_id}/position", response_model=ContentProgressOut)
def save_position(content_id: str, payload: PositionIn,
                  student_id: str = Depends(get_student_id),
                  db: Session = Depends(get_db)):
    _check_content(content_id, payload.course_id, payload.chapter_id, student_id, db)
    record = ProgressRepository(db).save_position(
        student_id, payload.course_id, payload.chapter_id, content_id, payload.seconds
    )
    return ContentProgressOut(**asdict(record))

@router.post("/chapters/{chapter_id}", response_model=ChapterProgressOut)
def upsert_chapter_progress(chapter_id: str, payload: ChapterProgressIn,
                            student_id: str = Depends(get_student_id),
                            db: Session = Depends(get_db)):
    if not CourseRepository(db).get_chapter(payload.course_id, chapter_id):
        raise HTTPException(404, "chapter not found")
    require_course_access(payload.course_id, student_id, db)
    record = ProgressRepository(db).upsert_chapter(
        student_id, payload.course_id, chapter_id, payload.is_completed, payload.progress_percent
    )
    publish_change("course_progress", payload.course_id, chapter_id,
                   record={"chapter_id": chapter_id, "completed": payload.is_completed})
    logger.info("chapter_progress_upserted", student_id=student_id, chapter_id=chapter_id,
                is_completed=payload.is_completed, percent=payload.progress_percent)
    return ChapterProgressOut(**asdict(record))

@router.get("/my", response_model=list[ContentProgressOut])
def my_progress(student_id: str = Depends(get_student_id),
                db: Session = Depends(get_db),
                limit: int = Query(50, ge=1, le=200),
                offset: int = Query(0, ge=0)):
    rows = ProgressRepository(db).history(student_id, limit=limit, offset=offset)
    return [ContentProgressOut(**asdict(r)) for r in rows]
