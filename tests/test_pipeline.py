"""Tests for the stage handlers and the full description → content → pdf flow."""

import logging
import re
from typing import Optional

import pytest

from conftest import FakeClock, make_content, make_description
from src.ebook.errors import (
    EbookNotFoundError,
    GenerationError,
    PreconditionError,
    RendererUnavailableError,
    StageExecutionError,
    StoreWriteError,
)
from src.ebook.schemas import CreateEbookRequest, Ebook, EbookDescription, EbookStatus, UpdateEbookRequest
from src.ebook.store import EbookStore
from src.executor.schemas import JobKind, JobPayload, JobState
from src.executor.worker import PipelineWorker
from src.orchestrator.pipeline import (
    EbookPipeline,
    JobContext,
    log_event,
    merge_key_points,
    validate_description_shape,
)


def _ctx(
    kind: JobKind,
    ebook: Ebook,
    progress: Optional[list] = None,
    approved: Optional[EbookDescription] = None,
    agency_id: Optional[str] = None,
) -> JobContext:
    payload = JobPayload(
        ebook_id=ebook.ebook_id,
        agency_id=agency_id if agency_id is not None else ebook.agency_id,
        title=ebook.title,
        step=kind,
        approved_description=approved,
    )
    report = (lambda job_id, value: progress.append(value)) if progress is not None else None
    return JobContext("job-1", payload, report_progress=report)


def _created(store: EbookStore) -> Ebook:
    return store.create("agency-1", "Local SEO", target_audience="Dentists", industry="Health")


def _approved(store: EbookStore) -> Ebook:
    ebook = _created(store)
    store.save_description(ebook.ebook_id, make_description())
    return store.approve_description(ebook.ebook_id, make_description())


def _with_content(store: EbookStore) -> Ebook:
    ebook = _approved(store)
    store.set_status(ebook.ebook_id, EbookStatus.GENERATING)
    return store.save_content(ebook.ebook_id, make_content(chapters=10))


def _non_decreasing(values: list) -> bool:
    return all(a <= b for a, b in zip(values, values[1:]))


class TestJobContext:
    def test_progress_never_goes_backwards(self) -> None:
        reported: list = []
        ctx = JobContext(
            "job-1",
            JobPayload(ebook_id="e", step=JobKind.PDF),
            report_progress=lambda job_id, value: reported.append(value),
        )
        ctx.update_progress(30)
        ctx.update_progress(10)
        ctx.update_progress(130)
        assert reported == [30, 100]
        assert ctx.progress == 100


class TestLogEvent:
    def test_levels_and_fields(self, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="src.orchestrator.pipeline"):
            log_event("job.completed", {"job_id": "job-1", "error": None})
            log_event("job.failed", {"job_id": "job-2", "error": "boom"})

        completed, failed = caplog.records
        assert completed.levelno == logging.INFO
        assert completed.getMessage() == "job.completed job_id=job-1"
        assert failed.levelno == logging.WARNING
        assert failed.getMessage() == "job.failed job_id=job-2 error=boom"


class TestValidateDescriptionShape:
    def test_valid(self) -> None:
        assert validate_description_shape(make_description()) == []

    def test_wrong_chapter_count(self) -> None:
        problems = validate_description_shape(make_description(chapters=9))
        assert any("exactly 10 chapters" in p for p in problems)

    def test_wrong_pages(self) -> None:
        problems = validate_description_shape(make_description(pages=4, total=50))
        assert any("exactly 5 pages" in p for p in problems)

    def test_wrong_total(self) -> None:
        problems = validate_description_shape(make_description(total=48))
        assert problems == ["total_pages must be 50, got 48"]

    def test_bad_numbering(self) -> None:
        description = make_description()
        description.chapters[0].number = 2
        problems = validate_description_shape(description)
        assert any("numbered" in p for p in problems)


class TestMergeKeyPoints:
    def test_union_without_duplicates(self, generator) -> None:
        chapters = [
            generator.generate_chapter("T", make_description(), outline, 3)
            for outline in make_description(chapters=3).chapters
        ]
        chapters[2].key_points.append("  shared   INSIGHT ")
        assert merge_key_points(chapters) == ["Point 1", "Shared insight", "Point 2", "Point 3"]


class TestDescriptionStage:
    def test_generates_and_persists(self, pipeline: EbookPipeline, store, generator) -> None:
        ebook = _created(store)
        progress: list = []

        result = pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook, progress))

        assert result.success
        assert result.step == "description"
        assert result.payload_ref == "description"
        stored = store.require(ebook.ebook_id)
        assert stored.status == EbookStatus.DESCRIPTION_GENERATED
        assert len(stored.description.chapters) == 10
        assert stored.description.total_pages == 50
        assert _non_decreasing(progress)
        assert progress[-1] == 100

    def test_invalid_shape_is_reprompted(self, pipeline, store, generator) -> None:
        generator.descriptions = [make_description(chapters=8)]
        ebook = _created(store)

        pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook))

        assert generator.calls == ["description", "description"]
        assert generator.description_problems[0] is None
        assert any("exactly 10 chapters" in p for p in generator.description_problems[1])
        assert store.require(ebook.ebook_id).status == EbookStatus.DESCRIPTION_GENERATED

    def test_gives_up_after_configured_attempts(self, pipeline, store, generator) -> None:
        generator.descriptions = [make_description(chapters=8), make_description(chapters=12)]
        ebook = _created(store)

        with pytest.raises(StageExecutionError) as exc_info:
            pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook))

        assert isinstance(exc_info.value.primary, GenerationError)
        stored = store.require(ebook.ebook_id)
        assert stored.status == EbookStatus.ERROR
        assert "Invalid description structure" in stored.error
        assert stored.description is None

    def test_rerun_overwrites_and_clears_approval(self, pipeline, store) -> None:
        ebook = _approved(store)
        pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook))
        stored = store.require(ebook.ebook_id)
        assert stored.status == EbookStatus.DESCRIPTION_GENERATED
        assert not stored.is_description_approved

    def test_rejected_once_content_generation_started(self, pipeline, store, generator) -> None:
        ebook = _approved(store)
        store.set_status(ebook.ebook_id, EbookStatus.GENERATING)

        with pytest.raises(PreconditionError):
            pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook))

        assert generator.calls == []
        assert store.require(ebook.ebook_id).status == EbookStatus.GENERATING

    def test_rejected_from_error_once_content_exists(self, pipeline, store, renderer, generator) -> None:
        ebook = _with_content(store)
        renderer.unavailable = True
        with pytest.raises(StageExecutionError):
            pipeline.run_pdf(_ctx(JobKind.PDF, ebook))
        assert store.require(ebook.ebook_id).status == EbookStatus.ERROR

        with pytest.raises(PreconditionError, match="content already exists"):
            pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook))

        stored = store.require(ebook.ebook_id)
        assert generator.calls == []
        assert stored.status == EbookStatus.ERROR
        assert stored.is_description_approved
        assert len(stored.content.chapters) == 10

    def test_restarts_from_error(self, pipeline, store) -> None:
        ebook = _created(store)
        store.mark_error(ebook.ebook_id, "earlier failure")
        pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook))
        stored = store.require(ebook.ebook_id)
        assert stored.status == EbookStatus.DESCRIPTION_GENERATED
        assert stored.error is None


class TestContentStage:
    def test_requires_description(self, pipeline, store, generator) -> None:
        ebook = _created(store)
        with pytest.raises(PreconditionError, match="not been generated"):
            pipeline.run_content(_ctx(JobKind.CONTENT, ebook))
        assert store.require(ebook.ebook_id).status == EbookStatus.CREATED
        assert generator.calls == []

    def test_requires_approval(self, pipeline, store, generator) -> None:
        ebook = _created(store)
        store.save_description(ebook.ebook_id, make_description())
        with pytest.raises(PreconditionError, match="approved"):
            pipeline.run_content(_ctx(JobKind.CONTENT, ebook, approved=make_description()))
        assert store.require(ebook.ebook_id).status == EbookStatus.DESCRIPTION_GENERATED
        assert generator.calls == []

    def test_generates_chapters_sequentially(self, pipeline, store, generator, bucket) -> None:
        ebook = _approved(store)
        progress: list = []

        result = pipeline.run_content(_ctx(JobKind.CONTENT, ebook, progress))

        assert result.payload_ref == "content"
        assert generator.calls == (
            ["introduction"] + [f"chapter-{i}" for i in range(1, 11)] + ["conclusion"]
        )
        assert bucket.acquired == 10
        stored = store.require(ebook.ebook_id)
        assert stored.status == EbookStatus.CONTENT_READY
        assert [c.chapter_number for c in stored.content.chapters] == list(range(1, 11))
        assert stored.content.metadata.total_chapters == 10
        assert stored.content.metadata.total_pages == 50
        assert progress[0] == 5
        assert progress[-1] == 100
        assert _non_decreasing(progress)

    def test_conclusion_gets_every_distinct_key_point(self, pipeline, store, generator) -> None:
        ebook = _approved(store)
        pipeline.run_content(_ctx(JobKind.CONTENT, ebook))
        points = generator.conclusion_key_points
        assert len(points) == 11
        assert points.count("Shared insight") == 1
        assert "Point 10" in points

    def test_uses_approved_description_from_payload(self, pipeline, store, generator) -> None:
        ebook = _approved(store)
        edited = make_description(chapters=3)

        pipeline.run_content(_ctx(JobKind.CONTENT, ebook, approved=edited))

        stored = store.require(ebook.ebook_id)
        assert len(stored.content.chapters) == 3
        assert stored.content.metadata.total_pages == 15

    def test_chapter_failure_leaves_no_partial_content(self, pipeline, store, generator) -> None:
        generator.fail_chapters = {4}
        ebook = _approved(store)

        with pytest.raises(StageExecutionError) as exc_info:
            pipeline.run_content(_ctx(JobKind.CONTENT, ebook))

        assert exc_info.value.retryable is True
        assert generator.calls[-1] == "chapter-4"
        stored = store.require(ebook.ebook_id)
        assert stored.status == EbookStatus.ERROR
        assert stored.content is None
        assert "chapter 4 failed" in stored.error

    def test_redelivery_while_generating(self, pipeline, store) -> None:
        ebook = _approved(store)
        store.set_status(ebook.ebook_id, EbookStatus.GENERATING)
        pipeline.run_content(_ctx(JobKind.CONTENT, ebook))
        assert store.require(ebook.ebook_id).status == EbookStatus.CONTENT_READY


class TestPdfStage:
    def test_requires_content(self, pipeline, store, renderer) -> None:
        ebook = _approved(store)
        with pytest.raises(PreconditionError, match="content"):
            pipeline.run_pdf(_ctx(JobKind.PDF, ebook))
        assert store.require(ebook.ebook_id).status == EbookStatus.DESCRIPTION_APPROVED
        assert renderer.rendered == []

    def test_renders_and_completes(self, pipeline, store, artifacts) -> None:
        ebook = _with_content(store)
        progress: list = []

        result = pipeline.run_pdf(_ctx(JobKind.PDF, ebook, progress))

        stored = store.require(ebook.ebook_id)
        assert stored.status == EbookStatus.COMPLETED
        assert stored.pdf_url == result.payload_ref
        assert re.fullmatch(
            rf"/generated/local-seo-{ebook.ebook_id}-[0-9a-f]{{32}}\.pdf", stored.pdf_url
        )
        assert list(artifacts.files.values()) == [b"%PDF-1.4 fake"]
        assert progress[-1] == 100

    def test_rerender_gets_a_new_file_name(self, pipeline, store) -> None:
        ebook = _with_content(store)
        first = pipeline.run_pdf(_ctx(JobKind.PDF, ebook)).payload_ref
        second = pipeline.run_pdf(_ctx(JobKind.PDF, ebook)).payload_ref
        assert first != second
        assert store.require(ebook.ebook_id).pdf_url == second

    def test_renderer_unavailable_marks_error(self, pipeline, store, renderer) -> None:
        renderer.unavailable = True
        ebook = _with_content(store)

        with pytest.raises(StageExecutionError) as exc_info:
            pipeline.run_pdf(_ctx(JobKind.PDF, ebook))

        assert isinstance(exc_info.value.primary, RendererUnavailableError)
        assert exc_info.value.retryable is True
        assert exc_info.value.persistence_warning is None
        stored = store.require(ebook.ebook_id)
        assert stored.status == EbookStatus.ERROR
        assert stored.pdf_url is None


class TestFailureRecording:
    def test_error_write_failure_is_reported_not_raised(self, pipeline, store, generator, monkeypatch) -> None:
        generator.fail_description = True
        ebook = _created(store)

        def broken_mark_error(ebook_id, message):
            raise StoreWriteError("database is locked")

        monkeypatch.setattr(store, "mark_error", broken_mark_error)

        with pytest.raises(StageExecutionError) as exc_info:
            pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook))

        error = exc_info.value
        assert isinstance(error.primary, GenerationError)
        assert "database is locked" in error.persistence_warning
        assert store.require(ebook.ebook_id).status == EbookStatus.CREATED

    def test_events(self, pipeline, store, generator, events) -> None:
        ebook = _created(store)
        pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook))
        generator.fail_description = True
        with pytest.raises(StageExecutionError):
            pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook))

        names = [name for name, _ in events]
        assert names == ["stage.started", "stage.completed", "stage.started", "stage.failed"]
        assert events[-1][1]["error"] == "model unavailable"


class TestDispatch:
    def test_handle_returns_stage_result(self, pipeline, store) -> None:
        ebook = _created(store)
        result = pipeline.handle(_ctx(JobKind.DESCRIPTION, ebook))
        assert result["success"] is True
        assert result["step"] == "description"
        assert result["ebook_id"] == ebook.ebook_id

    def test_unknown_kind(self, pipeline, store) -> None:
        ctx = _ctx(JobKind.DESCRIPTION, _created(store))
        ctx.payload = ctx.payload.model_copy(update={"step": "translate"})
        with pytest.raises(ValueError, match="Unknown job kind"):
            pipeline.handle(ctx)

    def test_missing_ebook(self, pipeline) -> None:
        payload = JobPayload(ebook_id="ebook-gone", step=JobKind.DESCRIPTION)
        with pytest.raises(EbookNotFoundError):
            pipeline.handle(JobContext("job-1", payload))

    def test_job_from_another_agency(self, pipeline, store, generator) -> None:
        ebook = _created(store)
        with pytest.raises(PreconditionError, match="agency"):
            pipeline.run_description(_ctx(JobKind.DESCRIPTION, ebook, agency_id="agency-2"))
        assert generator.calls == []


class TestDescriptionLockedByContent:
    @pytest.fixture
    def failed_pdf(self, store) -> Ebook:
        ebook = _with_content(store)
        return store.mark_error(ebook.ebook_id, "PDF rendering is not available")

    def test_description_request_refused(self, service, queue, failed_pdf) -> None:
        with pytest.raises(PreconditionError, match="content already exists"):
            service.request_description("agency-1", failed_pdf.ebook_id)
        assert queue.counts()["waiting"] == 0

    def test_description_edit_refused(self, service, store, failed_pdf) -> None:
        edited = make_description()
        edited.description = "Rewritten after the content was generated."
        with pytest.raises(PreconditionError, match="content already exists"):
            service.update_ebook(
                "agency-1", failed_pdf.ebook_id, UpdateEbookRequest(description=edited)
            )
        stored = store.require(failed_pdf.ebook_id)
        assert stored.description.description != edited.description
        assert stored.is_description_approved

    def test_pdf_can_still_be_retried(self, service, failed_pdf) -> None:
        response = service.request_pdf("agency-1", failed_pdf.ebook_id)
        assert response.step == JobKind.PDF


class TestEndToEnd:
    @pytest.fixture
    def worker(self, queue, pipeline) -> PipelineWorker:
        return PipelineWorker(queue, pipeline.handle, worker_id="w-test", on_event=lambda e, f: None)

    def test_full_flow(self, service, store, worker) -> None:
        ebook = service.create_ebook(
            "agency-1", CreateEbookRequest(title="Local SEO", target_audience="Dentists")
        )

        description_job = service.request_description("agency-1", ebook.ebook_id)
        assert worker.run_once() == 1
        status = service.job_status("agency-1", description_job.job_id)
        assert status.state == JobState.COMPLETED
        assert status.progress == 100
        assert status.return_value["success"] is True

        described = store.require(ebook.ebook_id)
        assert described.status == EbookStatus.DESCRIPTION_GENERATED

        content_job = service.request_content("agency-1", ebook.ebook_id, described.description)
        assert store.require(ebook.ebook_id).status == EbookStatus.DESCRIPTION_APPROVED
        assert worker.run_once() == 1
        assert service.job_status("agency-1", content_job.job_id).state == JobState.COMPLETED
        assert store.require(ebook.ebook_id).status == EbookStatus.CONTENT_READY

        pdf_job = service.request_pdf("agency-1", ebook.ebook_id)
        assert worker.run_once() == 1
        pdf_status = service.job_status("agency-1", pdf_job.job_id)
        assert pdf_status.state == JobState.COMPLETED

        final = store.require(ebook.ebook_id)
        assert final.status == EbookStatus.COMPLETED
        assert pdf_status.return_value["payload_ref"] == final.pdf_url
        assert final.metadata["last_job_id"] == pdf_job.job_id
        assert worker.run_once() == 0

    def test_transient_failure_is_retried(self, service, store, worker, renderer, clock: FakeClock) -> None:
        ebook = _with_content(store)
        renderer.unavailable = True
        job = service.request_pdf("agency-1", ebook.ebook_id)

        worker.run_once()
        status = service.job_status("agency-1", job.job_id)
        assert status.state == JobState.DELAYED
        assert "not available" in status.failed_reason
        assert store.require(ebook.ebook_id).status == EbookStatus.ERROR

        renderer.unavailable = False
        clock.advance(5000)
        worker.run_once()
        status = service.job_status("agency-1", job.job_id)
        assert status.state == JobState.COMPLETED
        assert status.attempts_made == 2
        assert store.require(ebook.ebook_id).status == EbookStatus.COMPLETED

    def test_exhausted_retries_land_in_failed(self, service, store, worker, renderer, clock) -> None:
        ebook = _with_content(store)
        renderer.unavailable = True
        job = service.request_pdf("agency-1", ebook.ebook_id)

        for delay in (0, 5000, 10000):
            clock.advance(delay)
            assert worker.run_once() == 1

        status = service.job_status("agency-1", job.job_id)
        assert status.state == JobState.FAILED
        assert status.attempts_made == 3
        assert store.require(ebook.ebook_id).status == EbookStatus.ERROR

    def test_precondition_failure_is_not_retried(self, queue, store, worker) -> None:
        ebook = _created(store)
        job_id = queue.enqueue(JobKind.PDF, ebook.ebook_id, agency_id="agency-1")

        worker.run_once()

        status = queue.status(job_id)
        assert status.state == JobState.FAILED
        assert status.attempts_made == 1
        assert "Precondition failed" in status.failed_reason
        assert store.require(ebook.ebook_id).status == EbookStatus.CREATED
