"""Explicit wiring of the pipeline's collaborators.

Both entry points (worker and API) build one Runtime from a PipelineConfig.
Tests pass their own generator, renderer and artifact store.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from src.config import PipelineConfig
from src.ebook.generator import ContentGenerator, LLMContentGenerator
from src.ebook.renderer import ArtifactStore, DocumentRenderer, LocalArtifactStore, WeasyPrintRenderer
from src.ebook.store import EbookStore
from src.executor.db import Database
from src.executor.job_queue import JobQueue
from src.executor.rate_limit import TokenBucket
from src.executor.worker import EventCallback, PipelineWorker
from src.llm.factory import get_backend
from src.orchestrator.pipeline import EbookPipeline
from src.orchestrator.submission import SubmissionService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: PipelineConfig
    db: Database
    store: EbookStore
    queue: JobQueue
    pipeline: EbookPipeline
    service: SubmissionService

    def build_worker(self, on_event: Optional[EventCallback] = None) -> PipelineWorker:
        worker_cfg = self.config.worker
        return PipelineWorker(
            self.queue,
            self.pipeline.handle,
            concurrency=worker_cfg.concurrency,
            poll_interval_seconds=worker_cfg.poll_interval_seconds,
            shutdown_grace_seconds=worker_cfg.shutdown_grace_seconds,
            stalled_check_interval_seconds=worker_cfg.stalled_check_interval_seconds,
            on_event=on_event,
        )

    def close(self) -> None:
        self.db.close()


def build_runtime(
    config: PipelineConfig,
    *,
    generator: Optional[ContentGenerator] = None,
    renderer: Optional[DocumentRenderer] = None,
    artifacts: Optional[ArtifactStore] = None,
    init_db: bool = True,
) -> Runtime:
    storage = config.storage
    db = Database(url=storage.database_url, sqlite_path=storage.sqlite_path)
    if init_db:
        db.init_db()

    queue_cfg = config.queue
    queue = JobQueue(
        db,
        queue_cfg.queue_name,
        attempts=queue_cfg.attempts,
        backoff_ms=queue_cfg.backoff_ms,
        remove_on_complete=queue_cfg.remove_on_complete,
        remove_on_fail=queue_cfg.remove_on_fail,
        lock_duration_ms=queue_cfg.lock_duration_seconds * 1000,
    )
    store = EbookStore(db)

    gen_cfg = config.generation
    if generator is None:
        # Backend creation is lazy about the API key; the API process never calls it
        generator = LLMContentGenerator(
            get_backend(gen_cfg.model, api_key=config.anthropic_api_key),
            max_tokens=gen_cfg.max_tokens,
            temperature=gen_cfg.temperature,
        )

    pipeline = EbookPipeline(
        store,
        generator,
        renderer or WeasyPrintRenderer(),
        artifacts or LocalArtifactStore(storage.artifact_dir, storage.public_base_url),
        rate_limiter=TokenBucket(rate=gen_cfg.chapter_calls_per_second),
        chapters_per_ebook=gen_cfg.chapters_per_ebook,
        pages_per_chapter=gen_cfg.pages_per_chapter,
        description_attempts=gen_cfg.description_attempts,
    )

    logger.info(
        f"Runtime ready: {db.backend_name}, queue '{queue.queue_name}', model {gen_cfg.model}"
    )
    return Runtime(
        config=config,
        db=db,
        store=store,
        queue=queue,
        pipeline=pipeline,
        service=SubmissionService(store, queue),
    )
