import re
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from .models import (
    Chapter as ChapterRow, ChapterContent, Course, CourseAccess, CourseProgress,
    Enrollment, StudentProgress, StudentSchool,
)
from ..application.dto import ContentProgressWrite, CourseProgressSummary
from ..application.reconciliation import chapter_percent
from ..domain.entities import Chapter, ChapterProgress, ContentItem, ContentProgress, ContentType
from ..domain.errors import AccessDenied, EnrollmentPending


def content_to_domain(r: StudentProgress) -> ContentProgress:
    return ContentProgress(
        student_id=r.student_id, course_id=r.course_id, chapter_id=r.chapter_id,
        content_id=r.content_id, is_completed=bool(r.is_completed),
        last_position=r.last_position, completed_at=r.completed_at,
    )


def chapter_progress_to_domain(r: CourseProgress) -> ChapterProgress:
    return ChapterProgress(
        student_id=r.student_id, course_id=r.course_id, chapter_id=r.chapter_id,
        is_completed=bool(r.completed), progress_percent=r.progress_percent,
        completed_at=r.completed_at,
    )


def chapter_to_domain(r: ChapterRow, is_completed: bool = False) -> Chapter:
    return Chapter(id=r.id, course_id=r.course_id, title=r.title,
                   order_index=r.order_index, is_completed=is_completed)


def item_to_domain(r: ChapterContent) -> ContentItem:
    return ContentItem(
        id=r.id, chapter_id=r.chapter_id, course_id=r.course_id,
        content_type=ContentType.parse(r.content_type), order_index=r.order_index,
        title=r.title, content_url=r.content_url,
    )


def _insert(db: Session):
    # ON CONFLICT upserts exist in both dialects under the same API
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


class ProgressRepository:
    def __init__(self, db: Session): self.db = db

    def _content_row(self, student_id: str, content_id: str) -> StudentProgress | None:
        q = (select(StudentProgress)
             .where(StudentProgress.student_id == student_id,
                    StudentProgress.content_id == content_id)
             .execution_options(populate_existing=True))
        return self.db.execute(q).scalar_one_or_none()

    def get_content(self, student_id: str, content_id: str) -> ContentProgress | None:
        row = self._content_row(student_id, content_id)
        return content_to_domain(row) if row else None

    def upsert_content(self, student_id: str, write: ContentProgressWrite) -> ContentProgress:
        """Idempotent on (student_id, content_id). Completion never reverts."""
        completed_at = write.completed_at or datetime.now(timezone.utc)
        stmt = _insert(self.db)(StudentProgress).values(
            student_id=student_id,
            course_id=write.course_id,
            chapter_id=write.chapter_id,
            content_id=write.content_id,
            is_completed=write.is_completed,
            last_position=write.last_position,
            completed_at=completed_at if write.is_completed else None,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["student_id", "content_id"],
            set_={
                "is_completed": or_(StudentProgress.is_completed, stmt.excluded.is_completed),
                "completed_at": func.coalesce(StudentProgress.completed_at, stmt.excluded.completed_at),
                "last_position": func.coalesce(stmt.excluded.last_position, StudentProgress.last_position),
                "updated_at": func.now(),
            },
        )
        self.db.execute(stmt)
        self.db.commit()
        return content_to_domain(self._content_row(student_id, write.content_id))

    def save_position(self, student_id: str, course_id: str, chapter_id: str, content_id: str,
                      seconds: float) -> ContentProgress:
        stmt = _insert(self.db)(StudentProgress).values(
            student_id=student_id, course_id=course_id, chapter_id=chapter_id,
            content_id=content_id, is_completed=False, last_position=seconds,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["student_id", "content_id"],
            set_={"last_position": stmt.excluded.last_position, "updated_at": func.now()},
        )
        self.db.execute(stmt)
        self.db.commit()
        return content_to_domain(self._content_row(student_id, content_id))

    def upsert_chapter(self, student_id: str, course_id: str, chapter_id: str,
                       completed: bool, progress_percent: float) -> ChapterProgress:
        stmt = _insert(self.db)(CourseProgress).values(
            student_id=student_id, course_id=course_id, chapter_id=chapter_id,
            completed=completed, progress_percent=progress_percent,
            completed_at=datetime.now(timezone.utc) if completed else None,
        )
        if completed:
            completed_at = func.coalesce(CourseProgress.completed_at, stmt.excluded.completed_at)
        else:
            completed_at = None
        stmt = stmt.on_conflict_do_update(
            index_elements=["student_id", "chapter_id"],
            set_={
                "completed": stmt.excluded.completed,
                "progress_percent": stmt.excluded.progress_percent,
                "completed_at": completed_at,
                "updated_at": func.now(),
            },
        )
        self.db.execute(stmt)
        self.db.commit()
        q = (select(CourseProgress)
             .where(CourseProgress.student_id == student_id, CourseProgress.chapter_id == chapter_id)
             .execution_options(populate_existing=True))
        return chapter_progress_to_domain(self.db.execute(q).scalar_one())

    def completed_contents(self, student_id: str, chapter_id: str) -> dict[str, datetime | None]:
        """Completed content ids in a chapter mapped to when they were completed."""
        q = select(StudentProgress.content_id, StudentProgress.completed_at).where(
            StudentProgress.student_id == student_id,
            StudentProgress.chapter_id == chapter_id,
            StudentProgress.is_completed.is_(True),
        )
        return {content_id: completed_at for content_id, completed_at in self.db.execute(q)}

    def completed_chapter_ids(self, student_id: str, course_id: str) -> set[str]:
        q = select(CourseProgress.chapter_id).where(
            CourseProgress.student_id == student_id,
            CourseProgress.course_id == course_id,
            CourseProgress.completed.is_(True),
        )
        return set(self.db.execute(q).scalars())

    def history(self, student_id: str, limit: int = 50, offset: int = 0) -> list[ContentProgress]:
        q = (select(StudentProgress)
             .where(StudentProgress.student_id == student_id,
                    StudentProgress.is_completed.is_(True))
             .order_by(StudentProgress.completed_at.desc())
             .limit(limit).offset(offset))
        return [content_to_domain(r) for r in self.db.execute(q).scalars()]


class CourseRepository:
    def __init__(self, db: Session): self.db = db

    def list_published(self, limit: int = 10, offset: int = 0) -> list[Course]:
        q = (select(Course).where(Course.is_published.is_(True))
             .order_by(Course.title).limit(limit).offset(offset))
        return list(self.db.execute(q).scalars())

    def get_course(self, course_id: str) -> Course | None:
        return self.db.get(Course, course_id)

    def list_chapters(self, course_id: str) -> list[ChapterRow]:
        q = (select(ChapterRow)
             .where(ChapterRow.course_id == course_id, ChapterRow.is_published.is_(True))
             .order_by(ChapterRow.order_index))
        return list(self.db.execute(q).scalars())

    def get_chapter(self, course_id: str, chapter_id: str) -> ChapterRow | None:
        q = select(ChapterRow).where(ChapterRow.id == chapter_id, ChapterRow.course_id == course_id)
        return self.db.execute(q).scalar_one_or_none()

    def list_contents(self, chapter_id: str) -> list[ChapterContent]:
        q = (select(ChapterContent)
             .where(ChapterContent.chapter_id == chapter_id, ChapterContent.is_published.is_(True))
             .order_by(ChapterContent.order_index))
        return list(self.db.execute(q).scalars())

    def get_content(self, content_id: str) -> ChapterContent | None:
        return self.db.get(ChapterContent, content_id)

    def course_summary(self, student_id: str, course_id: str,
                       progress: ProgressRepository) -> CourseProgressSummary:
        chapter_ids = {c.id for c in self.list_chapters(course_id)}
        done = progress.completed_chapter_ids(student_id, course_id) & chapter_ids
        percent = chapter_percent(len(done), len(chapter_ids))
        return CourseProgressSummary(
            course_id=course_id,
            completed_chapters=len(done),
            total_chapters=len(chapter_ids),
            progress_percent=percent,
            certificate_eligible=bool(chapter_ids) and len(done) == len(chapter_ids),
        )


def normalize_grade(grade: str | None) -> str:
    """'Grade 7 ', 'grade7' and '7' all compare equal."""
    return re.sub(r"grade", "", (grade or "").strip().lower()).strip()


def check_course_access(db: Session, student_id: str, course_id: str) -> None:
    """Raise AccessDenied or EnrollmentPending unless the learner may open the course."""
    enrollment = db.execute(
        select(Enrollment).where(Enrollment.student_id == student_id, Enrollment.course_id == course_id)
    ).scalar_one_or_none()
    if enrollment is not None and enrollment.status == "active":
        return

    school = db.execute(
        select(StudentSchool).where(StudentSchool.student_id == student_id,
                                    StudentSchool.is_active.is_(True))
    ).scalar_one_or_none()
    if school is not None:
        grants = db.execute(
            select(CourseAccess).where(CourseAccess.course_id == course_id,
                                       CourseAccess.school_id == school.school_id)
        ).scalars()
        wanted = normalize_grade(school.grade)
        if any(normalize_grade(g.grade) == wanted for g in grants):
            return

    if enrollment is not None and enrollment.status == "pending":
        raise EnrollmentPending()
    raise AccessDenied()
