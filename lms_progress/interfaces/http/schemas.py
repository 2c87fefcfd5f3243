from datetime import datetime
from pydantic import BaseModel, Field

class CourseOut(BaseModel):
    id: str
    title: str
    description: str | None = None
    class Config: from_attributes = True

class ChapterOut(BaseModel):
    id: str
    course_id: str
    title: str
    order_index: int
    is_completed: bool = False

class ContentOut(BaseModel):
    id: str
    chapter_id: str
    course_id: str
    title: str
    content_type: str
    content_url: str | None = None
    order_index: int
    is_completed: bool = False
    completed_at: datetime | None = None

class CourseProgressOut(BaseModel):
    course_id: str
    completed_chapters: int
    total_chapters: int
    progress_percent: float
    certificate_eligible: bool

class ContentProgressOut(BaseModel):
    student_id: str
    course_id: str
    chapter_id: str
    content_id: str
    is_completed: bool
    last_position: float | None = None
    completed_at: datetime | None = None

class ChapterProgressOut(BaseModel):
    student_id: str
    course_id: str
    chapter_id: str
    is_completed: bool
    progress_percent: float
    completed_at: datetime | None = None

class CompleteContentIn(BaseModel):
    course_id: str
    chapter_id: str
    last_position: float | None = Field(default=None, ge=0)
    completed_at: datetime | None = None

class PositionIn(BaseModel):
    course_id: str
    chapter_id: str
    seconds: float = Field(ge=0)

class ChapterProgressIn(BaseModel):
    course_id: str
    is_completed: bool
    progress_percent: float = Field(default=100.0, ge=0, le=100)

class SessionOut(BaseModel):
    student_id: str
