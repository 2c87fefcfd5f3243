import asyncio
import os
import sys
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.dirname(CURRENT_DIR)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("REDIS_URL", "redis://localhost:6379/99")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lms_progress.application.dto import ChapterContents
from lms_progress.application.progress_store import ProgressStore
from lms_progress.application.use_cases.course_player import INotifier, IProgressBackend
from lms_progress.config import settings
from lms_progress.domain.entities import Chapter, ChapterProgress, ContentItem, ContentProgress, ContentType
from lms_progress.domain.errors import ProgressWriteError
from lms_progress.infrastructure.db import Base, get_db
from lms_progress.infrastructure import models

# In-memory DB shared across threads: TestClient runs the app on its own thread
test_engine = create_engine(
    "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()

import lms_progress.infrastructure.db
import lms_progress.main
lms_progress.infrastructure.db.engine = test_engine
lms_progress.main.engine = test_engine
lms_progress.infrastructure.db.SessionLocal = TestingSessionLocal

from lms_progress.main import app

app.dependency_overrides[get_db] = override_get_db


# --- learner client fakes

COURSE_ID = "course-1"


def _item(id, chapter_id, order, content_type=ContentType.TEXT):
    return ContentItem(id=id, chapter_id=chapter_id, course_id=COURSE_ID,
                       content_type=content_type, order_index=order, title=id)


class FakeBackend(IProgressBackend):
    """Server stand-in for the course player. Chapters A, B, C with two items each."""

    def __init__(self):
        self.chapters = [
            Chapter(id="B", course_id=COURSE_ID, title="Second", order_index=1),
            Chapter(id="A", course_id=COURSE_ID, title="First", order_index=0),
            Chapter(id="C", course_id=COURSE_ID, title="Third", order_index=2),
        ]
        self.contents = {
            "A": [_item("a1", "A", 0), _item("a2", "A", 1, ContentType.VIDEO)],
            "B": [_item("b2", "B", 1, ContentType.QUIZ), _item("b1", "B", 0)],
            "C": [_item("c1", "C", 0, ContentType.VIDEO_LINK), _item("c2", "C", 1, ContentType.PDF)],
        }
        self.completed_content: set[str] = set()
        self.completed_at: dict = {}
        self.completed_chapters: set[str] = set()
        self.positions: dict[str, float] = {}

        self.content_writes = []
        self.chapter_writes = []
        self.position_writes = []
        self.fail_content_writes = 0
        self.fail_chapter_writes = 0
        self.access_error = None
        self.write_delay = 0.0

    async def list_chapters(self, course_id):
        if self.access_error is not None:
            raise self.access_error
        return [replace(c, is_completed=c.id in self.completed_chapters) for c in self.chapters]

    async def list_contents(self, course_id, chapter_id):
        items = self.contents.get(chapter_id, [])
        done = frozenset(i.id for i in items if i.id in self.completed_content)
        stamps = {cid: self.completed_at[cid] for cid in done if cid in self.completed_at}
        return ChapterContents(chapter_id=chapter_id, items=list(items), completed=done,
                               completed_at=stamps)

    async def get_content_progress(self, content_id):
        if content_id not in self.completed_content and content_id not in self.positions:
            return None
        chapter_id = next(ch for ch, items in self.contents.items() if any(i.id == content_id for i in items))
        return ContentProgress(
            student_id="student-1", course_id=COURSE_ID, chapter_id=chapter_id,
            content_id=content_id, is_completed=content_id in self.completed_content,
            last_position=self.positions.get(content_id),
        )

    async def upsert_content_progress(self, write):
        self.content_writes.append(write)
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.fail_content_writes:
            self.fail_content_writes -= 1
            raise ProgressWriteError("Server rejected the write (500).")
        self.completed_content.add(write.content_id)
        return ContentProgress(student_id="student-1", course_id=write.course_id,
                               chapter_id=write.chapter_id, content_id=write.content_id,
                               is_completed=True, last_position=write.last_position,
                               completed_at=write.completed_at)

    async def upsert_chapter_progress(self, course_id, chapter_id, is_completed, progress_percent):
        self.chapter_writes.append((chapter_id, is_completed, progress_percent))
        if self.fail_chapter_writes:
            self.fail_chapter_writes -= 1
            raise ProgressWriteError("Server rejected the write (500).")
        if is_completed:
            self.completed_chapters.add(chapter_id)
        else:
            self.completed_chapters.discard(chapter_id)
        return ChapterProgress(student_id="student-1", course_id=course_id, chapter_id=chapter_id,
                               is_completed=is_completed, progress_percent=progress_percent)

    async def save_video_position(self, course_id, chapter_id, content_id, seconds):
        self.position_writes.append((content_id, seconds))
        self.positions[content_id] = seconds


class RecordingNotifier(INotifier):
    def __init__(self):
        self.successes = []
        self.warnings = []

    def success(self, message):
        self.successes.append(message)

    def warning(self, message):
        self.warnings.append(message)


@pytest.fixture
def store():
    return ProgressStore()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def notifier():
    return RecordingNotifier()


# --- service fixtures

@pytest.fixture
def redis_mock():
    """Redis is never reached: every lookup misses and publishes are recorded."""
    mock_client = MagicMock()
    mock_client.get.return_value = None
    mock_client.keys.return_value = []
    with patch("lms_progress.infrastructure.cache.get_redis", return_value=mock_client):
        yield mock_client


@pytest.fixture
def client(redis_mock):
    Base.metadata.drop_all(bind=test_engine)
    Base.metadata.create_all(bind=test_engine)
    yield TestClient(app)
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db_session(client):
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def make_token(sub: str, role: str = "student") -> str:
    return jwt.encode({"sub": sub, "role": role}, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def auth():
    def _headers(sub: str = "student-1", role: str = "student") -> dict:
        return {"Authorization": f"Bearer {make_token(sub, role)}"}
    return _headers


@pytest.fixture
def seeded(db_session):
    """One published course, two chapters of two items, and learners in every access state.

    student-1: active enrollment
    student-2: pending enrollment
    student-3: school access by grade ("Grade 7" learner, "7" grant)
    student-4: nothing
    """
    db = db_session
    db.add(models.Course(id=COURSE_ID, title="Algebra", description="Intro"))
    db.add(models.Course(id="course-draft", title="Draft", is_published=False))
    db.add_all([
        models.Chapter(id="ch-2", course_id=COURSE_ID, title="Equations", order_index=1),
        models.Chapter(id="ch-1", course_id=COURSE_ID, title="Numbers", order_index=0),
        models.ChapterContent(id="ct-1", chapter_id="ch-1", course_id=COURSE_ID, title="Read",
                              content_type="text", order_index=0),
        models.ChapterContent(id="ct-2", chapter_id="ch-1", course_id=COURSE_ID, title="Watch",
                              content_type="video", content_url="https://cdn/x.mp4", order_index=1),
        models.ChapterContent(id="ct-3", chapter_id="ch-2", course_id=COURSE_ID, title="Quiz",
                              content_type="quiz", order_index=0),
        models.ChapterContent(id="ct-4", chapter_id="ch-2", course_id=COURSE_ID, title="Notes",
                              content_type="pdf", order_index=1),
        models.Enrollment(student_id="student-1", course_id=COURSE_ID, status="active"),
        models.Enrollment(student_id="student-2", course_id=COURSE_ID, status="pending"),
        models.StudentSchool(student_id="student-3", school_id="school-1", grade="Grade 7"),
        models.CourseAccess(course_id=COURSE_ID, school_id="school-1", grade="7"),
    ])
    db.commit()
    return db
