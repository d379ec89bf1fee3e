"""Ebook pipeline orchestrator.

Runs the three stage jobs (description, content, pdf) against the record
store. Each handler re-reads the ebook, checks that the stage may run,
reports progress through its JobContext and persists only the fields its
stage owns.

Failure handling:
- Precondition violations raise PreconditionError; the ebook is untouched
  and the queue does not retry.
- Anything failing after the precondition check is recorded on the ebook
  as ERROR (best effort) and re-raised as StageExecutionError, which keeps
  the primary exception and any problem writing the ERROR status.
"""

import logging
from typing import Any, Callable, Optional

from src.ebook.errors import (
    GenerationError,
    PreconditionError,
    StageExecutionError,
)
from src.ebook.generator import ContentGenerator
from src.ebook.renderer import ArtifactStore, DocumentRenderer, build_pdf_filename
from src.ebook.schemas import (
    ContentMetadata,
    Ebook,
    EbookContent,
    EbookDescription,
    EbookStatus,
    GeneratedChapter,
    StageResult,
)
from src.ebook.state_machine import can_transition
from src.ebook.store import EbookStore
from src.executor.rate_limit import TokenBucket
from src.executor.schemas import JobKind, JobPayload, JobRecord

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict[str, Any]], None]


WARNING_EVENTS = {"stage.failed", "job.failed", "worker.stopping"}


def log_event(event: str, fields: dict[str, Any]) -> None:
    """Default event callback for the pipeline and the worker."""
    details = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
    level = logging.WARNING if event in WARNING_EVENTS else logging.INFO
    logger.log(level, f"{event} {details}")


class JobContext:
    """What a stage handler knows about the job it is running.

    Progress is non-decreasing: a lower value than the last one reported
    is ignored.
    """

    def __init__(
        self,
        job_id: str,
        payload: JobPayload,
        attempt: int = 1,
        report_progress: Optional[Callable[[str, int], Any]] = None,
    ):
        self.job_id = job_id
        self.payload = payload
        self.attempt = attempt
        self._report_progress = report_progress
        self._progress = 0

    @classmethod
    def from_record(cls, job: JobRecord, report_progress: Optional[Callable[[str, int], Any]] = None) -> "JobContext":
        return cls(
            job_id=job.job_id,
            payload=job.payload,
            attempt=job.attempts_made,
            report_progress=report_progress,
        )

    @property
    def kind(self) -> JobKind:
        return self.payload.step

    @property
    def ebook_id(self) -> str:
        return self.payload.ebook_id

    @property
    def progress(self) -> int:
        return self._progress

    def update_progress(self, value: int) -> None:
        value = max(0, min(100, int(value)))
        if value < self._progress:
            logger.debug(f"Job {self.job_id}: ignoring progress {value} < {self._progress}")
            return
        self._progress = value
        if self._report_progress is not None:
            self._report_progress(self.job_id, value)


def validate_description_shape(
    description: EbookDescription,
    chapters: int = 10,
    pages_per_chapter: int = 5,
) -> list[str]:
    """Return the problems that make a description unusable (empty if valid)."""
    problems: list[str] = []
    if len(description.chapters) != chapters:
        problems.append(f"expected exactly {chapters} chapters, got {len(description.chapters)}")

    numbers = [c.number for c in description.chapters]
    if numbers != list(range(1, len(numbers) + 1)):
        problems.append(f"chapters must be numbered 1..{len(numbers)} in order, got {numbers}")

    wrong_pages = [c.number for c in description.chapters if c.pages != pages_per_chapter]
    if wrong_pages:
        problems.append(f"chapters {wrong_pages} do not have exactly {pages_per_chapter} pages")

    expected_total = chapters * pages_per_chapter
    if description.total_pages != expected_total:
        problems.append(f"total_pages must be {expected_total}, got {description.total_pages}")

    return problems


def merge_key_points(chapters: list[GeneratedChapter]) -> list[str]:
    """Union of all chapters' key points, first occurrence wins."""
    seen: set[str] = set()
    merged: list[str] = []
    for chapter in chapters:
        for point in chapter.key_points:
            key = " ".join(point.split()).casefold()
            if key and key not in seen:
                seen.add(key)
                merged.append(point.strip())
    return merged


class EbookPipeline:
    """Stage handlers for the ebook-generation queue."""

    def __init__(
        self,
        store: EbookStore,
        generator: ContentGenerator,
        renderer: DocumentRenderer,
        artifacts: ArtifactStore,
        *,
        rate_limiter: Optional[TokenBucket] = None,
        chapters_per_ebook: int = 10,
        pages_per_chapter: int = 5,
        description_attempts: int = 2,
        on_event: Optional[EventCallback] = None,
    ):
        self.store = store
        self.generator = generator
        self.renderer = renderer
        self.artifacts = artifacts
        self.rate_limiter = rate_limiter or TokenBucket(rate=1.0)
        self.chapters_per_ebook = chapters_per_ebook
        self.pages_per_chapter = pages_per_chapter
        self.description_attempts = max(1, description_attempts)
        self.on_event = on_event or log_event

    def handle(self, ctx: JobContext) -> dict:
        """Dispatch a job to its stage handler. Returns the job's return value."""
        handlers = {
            JobKind.DESCRIPTION.value: self.run_description,
            JobKind.CONTENT.value: self.run_content,
            JobKind.PDF.value: self.run_pdf,
        }
        step = getattr(ctx.kind, "value", ctx.kind)
        handler = handlers.get(step)
        if handler is None:
            raise ValueError(f"Unknown job kind: {step}")
        return handler(ctx).model_dump()

    # --- Stages ---

    def run_description(self, ctx: JobContext) -> StageResult:
        ebook = self._load(ctx)
        if ebook.content is not None:
            raise PreconditionError(ebook.ebook_id, "content already exists for the current description")
        if not can_transition(ebook.status, EbookStatus.DESCRIPTION_GENERATED):
            raise PreconditionError(
                ebook.ebook_id,
                f"cannot regenerate the description while status is {ebook.status.value}",
            )

        def body() -> StageResult:
            ctx.update_progress(10)
            description = self._generate_valid_description(ctx, ebook)
            ctx.update_progress(80)
            self.store.save_description(ebook.ebook_id, description)
            ctx.update_progress(100)
            return StageResult(
                step=JobKind.DESCRIPTION.value,
                ebook_id=ebook.ebook_id,
                payload_ref="description",
                message=f"Description generated with {len(description.chapters)} chapters",
            )

        return self._run(JobKind.DESCRIPTION, ctx, ebook, body)

    def run_content(self, ctx: JobContext) -> StageResult:
        ebook = self._load(ctx)
        if ebook.description is None:
            raise PreconditionError(ebook.ebook_id, "description has not been generated")
        if not ebook.is_description_approved:
            raise PreconditionError(ebook.ebook_id, "description has not been approved")
        if not can_transition(ebook.status, EbookStatus.GENERATING):
            raise PreconditionError(
                ebook.ebook_id,
                f"cannot generate content while status is {ebook.status.value}",
            )

        description = ctx.payload.approved_description or ebook.description
        if not description.chapters:
            raise PreconditionError(ebook.ebook_id, "approved description has no chapters")

        def body() -> StageResult:
            self.store.set_status(ebook.ebook_id, EbookStatus.GENERATING)
            ctx.update_progress(5)

            introduction = self.generator.generate_introduction(ebook.title, description)
            ctx.update_progress(10)

            outlines = sorted(description.chapters, key=lambda c: c.number)
            total = len(outlines)
            chapters: list[GeneratedChapter] = []
            for index, outline in enumerate(outlines, start=1):
                self.rate_limiter.acquire()
                chapters.append(
                    self.generator.generate_chapter(ebook.title, description, outline, total)
                )
                logger.info(f"Ebook {ebook.ebook_id}: chapter {outline.number}/{total} written")
                ctx.update_progress(10 + (70 * index) // total)

            conclusion = self.generator.generate_conclusion(ebook.title, merge_key_points(chapters))
            ctx.update_progress(90)

            content = EbookContent(
                introduction=introduction,
                chapters=chapters,
                conclusion=conclusion,
                metadata=ContentMetadata(
                    total_chapters=len(chapters),
                    total_pages=description.total_pages,
                ),
            )
            self.store.save_content(ebook.ebook_id, content)
            ctx.update_progress(100)

            words = sum(c.word_count for c in chapters)
            return StageResult(
                step=JobKind.CONTENT.value,
                ebook_id=ebook.ebook_id,
                payload_ref="content",
                message=f"Generated {len(chapters)} chapters ({words:,} words)",
            )

        return self._run(JobKind.CONTENT, ctx, ebook, body)

    def run_pdf(self, ctx: JobContext) -> StageResult:
        ebook = self._load(ctx)
        if ebook.description is None:
            raise PreconditionError(ebook.ebook_id, "description has not been generated")
        if ebook.content is None:
            raise PreconditionError(ebook.ebook_id, "content has not been generated")
        if not can_transition(ebook.status, EbookStatus.GENERATING_PDF):
            raise PreconditionError(
                ebook.ebook_id,
                f"cannot render the PDF while status is {ebook.status.value}",
            )

        def body() -> StageResult:
            self.store.set_status(ebook.ebook_id, EbookStatus.GENERATING_PDF)
            ctx.update_progress(10)

            pdf_bytes = self.renderer.render(ebook.title, ebook.description, ebook.content)
            ctx.update_progress(60)

            url = self.artifacts.save(build_pdf_filename(ebook.title, ebook.ebook_id), pdf_bytes)
            ctx.update_progress(80)

            self.store.save_pdf(ebook.ebook_id, url)
            ctx.update_progress(100)
            return StageResult(
                step=JobKind.PDF.value,
                ebook_id=ebook.ebook_id,
                payload_ref=url,
                message=f"PDF rendered ({len(pdf_bytes):,} bytes)",
            )

        return self._run(JobKind.PDF, ctx, ebook, body)

    # --- Internals ---

    def _load(self, ctx: JobContext) -> Ebook:
        """Re-fetch the ebook; the job payload is never trusted for state."""
        ebook = self.store.require(ctx.ebook_id)
        if ctx.payload.agency_id and ctx.payload.agency_id != ebook.agency_id:
            raise PreconditionError(ebook.ebook_id, "job agency does not own this ebook")
        return ebook

    def _generate_valid_description(self, ctx: JobContext, ebook: Ebook) -> EbookDescription:
        target_audience = ebook.target_audience or ctx.payload.target_audience
        industry = ebook.industry or ctx.payload.industry
        problems: list[str] = []

        for attempt in range(1, self.description_attempts + 1):
            description = self.generator.generate_description(
                ebook.title,
                target_audience,
                industry,
                chapters=self.chapters_per_ebook,
                pages_per_chapter=self.pages_per_chapter,
                previous_problems=problems or None,
            )
            ctx.update_progress(min(70, 10 + 30 * attempt))
            problems = validate_description_shape(
                description, self.chapters_per_ebook, self.pages_per_chapter
            )
            if not problems:
                return description
            logger.warning(
                f"Ebook {ebook.ebook_id}: description attempt {attempt}/"
                f"{self.description_attempts} rejected: {'; '.join(problems)}"
            )

        raise GenerationError(f"Invalid description structure: {'; '.join(problems)}")

    def _run(
        self,
        step: JobKind,
        ctx: JobContext,
        ebook: Ebook,
        body: Callable[[], StageResult],
    ) -> StageResult:
        self.on_event("stage.started", {"step": step.value, "ebook_id": ebook.ebook_id, "job_id": ctx.job_id})
        try:
            result = body()
        except Exception as primary:
            warning = self._record_failure(ebook.ebook_id, primary)
            self.on_event("stage.failed", {
                "step": step.value,
                "ebook_id": ebook.ebook_id,
                "job_id": ctx.job_id,
                "error": str(primary),
                "persistence_warning": warning,
            })
            raise StageExecutionError(step.value, ebook.ebook_id, primary, warning) from primary

        self.on_event("stage.completed", {"step": step.value, "ebook_id": ebook.ebook_id, "job_id": ctx.job_id})
        return result

    def _record_failure(self, ebook_id: str, primary: BaseException) -> Optional[str]:
        """Best-effort ERROR write. Returns a warning when it could not be persisted."""
        try:
            self.store.mark_error(ebook_id, str(primary))
        except Exception as e:
            warning = f"could not mark ebook {ebook_id} as ERROR: {e}"
            logger.warning(warning)
            return warning
        return None
