"""Shared fixtures: SQLite-backed store and queue, deterministic fakes."""

from pathlib import Path
from typing import Optional

import pytest

from src.ebook.errors import GenerationError, RendererUnavailableError
from src.ebook.schemas import (
    ChapterOutline,
    EbookContent,
    EbookDescription,
    ContentMetadata,
    GeneratedChapter,
)
from src.ebook.store import EbookStore
from src.executor.db import Database
from src.executor.job_queue import JobQueue
from src.executor.rate_limit import TokenBucket
from src.orchestrator.pipeline import EbookPipeline
from src.orchestrator.submission import SubmissionService


def make_description(chapters: int = 10, pages: int = 5, total: Optional[int] = None) -> EbookDescription:
    return EbookDescription(
        description="A practical guide to growing a local business online.",
        target_audience="Small business owners",
        objectives=["Understand SEO basics", "Plan content", "Measure results"],
        benefits=["More leads", "Lower ad spend", "Clear plan"],
        chapters=[
            ChapterOutline(number=i, title=f"Chapter {i}", description=f"Covers topic {i}", pages=pages)
            for i in range(1, chapters + 1)
        ],
        total_pages=total if total is not None else chapters * pages,
        estimated_read_time="2-3 hours",
        difficulty="beginner",
    )


def make_content(chapters: int = 2) -> EbookContent:
    return EbookContent(
        introduction="## Welcome\n\nIntro.",
        chapters=[
            GeneratedChapter(
                chapter_number=i,
                title=f"Chapter {i}",
                content=f"## Chapter {i}\n\nBody {i}.",
                word_count=3,
                key_points=[f"Point {i}"],
            )
            for i in range(1, chapters + 1)
        ],
        conclusion="## The end\n\nBye.",
        metadata=ContentMetadata(total_chapters=chapters, total_pages=chapters * 5),
    )


class FakeClock:
    """Epoch-milliseconds clock advanced by hand."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeGenerator:
    """Deterministic ContentGenerator.

    ``descriptions`` are returned in order by generate_description (then a
    valid default). Chapters listed in ``fail_chapters`` raise GenerationError.
    """

    def __init__(self, descriptions=None, fail_chapters=(), fail_description: bool = False):
        self.descriptions = list(descriptions or [])
        self.fail_chapters = set(fail_chapters)
        self.fail_description = fail_description
        self.calls: list[str] = []
        self.description_problems: list = []
        self.conclusion_key_points: list[str] = []

    def generate_description(self, title, target_audience=None, industry=None, *,
                             chapters=10, pages_per_chapter=5, previous_problems=None):
        self.calls.append("description")
        self.description_problems.append(previous_problems)
        if self.fail_description:
            raise GenerationError("model unavailable")
        if self.descriptions:
            return self.descriptions.pop(0)
        return make_description(chapters, pages_per_chapter)

    def generate_introduction(self, title, description):
        self.calls.append("introduction")
        return f"## Welcome to {title}\n\nIntroduction."

    def generate_chapter(self, title, description, chapter, total_chapters):
        self.calls.append(f"chapter-{chapter.number}")
        if chapter.number in self.fail_chapters:
            raise GenerationError(f"chapter {chapter.number} failed")
        return GeneratedChapter(
            chapter_number=chapter.number,
            title=chapter.title,
            content=f"## {chapter.title}\n\nBody of chapter {chapter.number}.",
            word_count=5,
            key_points=[f"Point {chapter.number}", "Shared insight"],
        )

    def generate_conclusion(self, title, key_points):
        self.calls.append("conclusion")
        self.conclusion_key_points = list(key_points)
        return "## Conclusion\n\nApply what you learned."


class FakeRenderer:
    def __init__(self, unavailable: bool = False):
        self.unavailable = unavailable
        self.rendered: list[str] = []

    def render(self, title, description, content) -> bytes:
        if self.unavailable:
            raise RendererUnavailableError("PDF rendering is not available in this environment")
        self.rendered.append(title)
        return b"%PDF-1.4 fake"


class MemoryArtifacts:
    def __init__(self):
        self.files: dict[str, bytes] = {}

    def save(self, filename: str, data: bytes) -> str:
        self.files[filename] = data
        return f"/generated/{filename}"


class RecordingBucket(TokenBucket):
    """TokenBucket that never sleeps and counts acquisitions."""

    def __init__(self):
        super().__init__(rate=1.0, sleep=lambda seconds: None)
        self.acquired = 0

    def acquire(self, tokens: float = 1.0) -> float:
        self.acquired += 1
        return 0.0


@pytest.fixture
def db(tmp_path: Path) -> Database:
    database = Database(sqlite_path=tmp_path / "ebooks.db")
    database.init_db()
    return database


@pytest.fixture
def store(db: Database) -> EbookStore:
    return EbookStore(db)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(db: Database, clock: FakeClock) -> JobQueue:
    return JobQueue(db, clock=clock)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def artifacts() -> MemoryArtifacts:
    return MemoryArtifacts()


@pytest.fixture
def bucket() -> RecordingBucket:
    return RecordingBucket()


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def pipeline(store, generator, renderer, artifacts, bucket, events) -> EbookPipeline:
    return EbookPipeline(
        store,
        generator,
        renderer,
        artifacts,
        rate_limiter=bucket,
        on_event=lambda event, fields: events.append((event, fields)),
    )


@pytest.fixture
def service(store, queue) -> SubmissionService:
    return SubmissionService(store, queue)
