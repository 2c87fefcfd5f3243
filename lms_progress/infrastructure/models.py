from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean, Float, ForeignKey, Integer, String, Text, TIMESTAMP, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class CourseORM(Base):
    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    chapters: Mapped[list["ChapterORM"]] = relationship(
        "ChapterORM",
        back_populates="course",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"CourseORM(id={self.id!r}, title={self.title!r})"


class ChapterORM(Base):
    __tablename__ = "chapters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    course_id: Mapped[str] = mapped_column(
        ForeignKey("courses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    course: Mapped["CourseORM"] = relationship("CourseORM", back_populates="chapters")
    contents: Mapped[list["ChapterContentORM"]] = relationship(
        "ChapterContentORM",
        back_populates="chapter",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"ChapterORM(id={self.id!r}, course_id={self.course_id!r}, title={self.title!r})"


class ChapterContentORM(Base):
    __tablename__ = "chapter_contents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    chapter_id: Mapped[str] = mapped_column(
        ForeignKey("chapters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    course_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    content_type: Mapped[str] = mapped_column(String(32), nullable=False, default="text")
    content_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    chapter: Mapped["ChapterORM"] = relationship("ChapterORM", back_populates="contents")


class EnrollmentORM(Base):
    __tablename__ = "enrollments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    __table_args__ = (UniqueConstraint("student_id", "course_id", name="uq_enrollment_student_course"),)


class StudentSchoolORM(Base):
    __tablename__ = "student_schools"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    school_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    grade: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class CourseAccessORM(Base):
    __tablename__ = "course_access"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    course_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    school_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    grade: Mapped[str] = mapped_column(String(32), nullable=False)


class StudentProgressORM(Base):
    """One row per learner and content item."""
    __tablename__ = "student_progress"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)  # JWT sub
    course_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    chapter_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    content_id: Mapped[str] = mapped_column(String(36), nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_position: Mapped[float | None] = mapped_column(Float, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        default=func.now(),
    )
    __table_args__ = (UniqueConstraint("student_id", "content_id", name="uq_student_content"),)


class CourseProgressORM(Base):
    """One row per learner and chapter."""
    __tablename__ = "course_progress"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    chapter_id: Mapped[str] = mapped_column(String(36), nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    progress_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        default=func.now(),
    )
    __table_args__ = (UniqueConstraint("student_id", "chapter_id", name="uq_student_chapter"),)


Course = CourseORM
Chapter = ChapterORM
ChapterContent = ChapterContentORM
Enrollment = EnrollmentORM
StudentSchool = StudentSchoolORM
CourseAccess = CourseAccessORM
StudentProgress = StudentProgressORM
CourseProgress = CourseProgressORM

__all__ = [
    "Base",
    "Course",
    "Chapter",
    "ChapterContent",
    "Enrollment",
    "StudentSchool",
    "CourseAccess",
    "StudentProgress",
    "CourseProgress",
]
