"""Queue consumer for the ebook pipeline.

A PipelineWorker claims jobs from the JobQueue and runs them through a
handler (EbookPipeline.handle) on a bounded thread pool. It owns the
worker lifecycle: connectivity check and stalled-job recovery on start,
SIGINT/SIGTERM-driven graceful shutdown, and closing the database when
it stops.
"""

import logging
import os
import signal
import socket
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from src.executor.job_queue import JobQueue
from src.executor.schemas import JobRecord, JobState
from src.orchestrator.pipeline import EventCallback, JobContext, log_event

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobContext], dict]


class WorkerStartupError(RuntimeError):
    """Raised when the worker cannot reach its backing store."""


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class PipelineWorker:
    """Consumes queued stage jobs with bounded concurrency."""

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: int = 2,
        poll_interval_seconds: float = 1.0,
        shutdown_grace_seconds: float = 60.0,
        stalled_check_interval_seconds: float = 30.0,
        worker_id: Optional[str] = None,
        on_event: Optional[EventCallback] = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.stalled_check_interval_seconds = stalled_check_interval_seconds
        self.worker_id = worker_id or default_worker_id()
        self.on_event = on_event or log_event
        self._stop_event = threading.Event()
        self._stop_reason: Optional[str] = None
        self._started = False
        self._closed = False

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        """Verify connectivity and recover jobs left active by dead workers."""
        try:
            ok = self.queue.db.ping()
        except Exception as e:
            raise WorkerStartupError(
                f"Cannot reach the queue database ({self.queue.db.backend_name}): {e}"
            ) from e
        if not ok:
            raise WorkerStartupError(f"Queue database ping failed ({self.queue.db.backend_name})")

        self.queue.db.init_db()
        requeued, failed = self.queue.recover_stalled()
        self._started = True
        self.on_event("worker.started", {
            "worker_id": self.worker_id,
            "queue": self.queue.queue_name,
            "concurrency": self.concurrency,
            "recovered": requeued,
            "failed_stalled": failed,
        })

    def request_stop(self, reason: str = "requested") -> None:
        """Stop claiming new jobs. In-flight jobs run to completion."""
        if not self._stop_event.is_set():
            self._stop_reason = reason
            self._stop_event.set()
            logger.info(f"Worker {self.worker_id}: stop requested ({reason})")

    def process(self, job: JobRecord) -> JobState:
        """Run one claimed job and record its outcome on the queue."""
        ctx = JobContext.from_record(job, report_progress=self._report_progress)
        started = time.monotonic()
        try:
            result = self.handler(ctx)
        except Exception as e:
            state = self.queue.fail(job.job_id, e) or JobState.FAILED
            event = "job.retrying" if state == JobState.DELAYED else "job.failed"
            self.on_event(event, {
                "job_id": job.job_id,
                "kind": job.kind.value,
                "ebook_id": job.ebook_id,
                "attempt": job.attempts_made,
                "max_attempts": job.max_attempts,
                "error": str(e),
                "persistence_warning": getattr(e, "persistence_warning", None),
            })
            return state

        self.queue.complete(job.job_id, result)
        self.on_event("job.completed", {
            "job_id": job.job_id,
            "kind": job.kind.value,
            "ebook_id": job.ebook_id,
            "duration_ms": int((time.monotonic() - started) * 1000),
        })
        return JobState.COMPLETED

    def run_once(self) -> int:
        """Claim at most one job and run it in the calling thread."""
        if self.stopping:
            return 0
        jobs = self.queue.claim(self.worker_id, limit=1)
        for job in jobs:
            self.process(job)
        return len(jobs)

    def run_forever(self) -> None:
        """Poll, dispatch and run jobs until a stop is requested."""
        if not self._started:
            self.start()

        pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="ebook-job")
        in_flight: set[Future] = set()
        last_stalled_check = time.monotonic()

        with self._signal_handlers():
            while not self.stopping:
                in_flight = self._reap(in_flight)
                free_slots = self.concurrency - len(in_flight)

                if time.monotonic() - last_stalled_check >= self.stalled_check_interval_seconds:
                    last_stalled_check = time.monotonic()
                    try:
                        self.queue.recover_stalled()
                    except Exception as e:
                        logger.error(f"Stalled-job recovery failed: {e}")

                claimed: list[JobRecord] = []
                if free_slots > 0:
                    try:
                        claimed = self.queue.claim(self.worker_id, limit=free_slots)
                    except Exception as e:
                        logger.error(f"Worker {self.worker_id}: claim failed: {e}")

                for job in claimed:
                    if self.stopping:
                        self.queue.release(job.job_id)
                        continue
                    in_flight.add(pool.submit(self.process, job))

                if not claimed:
                    if in_flight and free_slots <= 0:
                        wait(in_flight, timeout=self.poll_interval_seconds, return_when=FIRST_COMPLETED)
                    else:
                        self._stop_event.wait(self.poll_interval_seconds)

            self._shutdown(pool, in_flight)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.queue.db.close()

    # --- Internals ---

    def _report_progress(self, job_id: str, progress: int) -> None:
        try:
            if not self.queue.update_progress(job_id, progress):
                logger.warning(f"Job {job_id}: progress {progress} not recorded (job no longer active)")
        except Exception as e:
            logger.warning(f"Job {job_id}: failed to record progress {progress}: {e}")

    def _reap(self, in_flight: set[Future]) -> set[Future]:
        still_running = set()
        for future in in_flight:
            if not future.done():
                still_running.add(future)
                continue
            error = future.exception()
            if error is not None:
                logger.error(f"Worker {self.worker_id}: job thread crashed: {error}")
        return still_running

    def _shutdown(self, pool: ThreadPoolExecutor, in_flight: set[Future]) -> None:
        self.on_event("worker.stopping", {
            "worker_id": self.worker_id,
            "reason": self._stop_reason,
            "in_flight": len(in_flight),
        })
        _, not_done = wait(in_flight, timeout=self.shutdown_grace_seconds)
        if not_done:
            logger.warning(
                f"Worker {self.worker_id}: {len(not_done)} job(s) still running after "
                f"{self.shutdown_grace_seconds}s grace; waiting for them before closing the database"
            )
        # Connections stay open until every job thread has returned
        pool.shutdown(wait=True, cancel_futures=True)
        self._reap(in_flight)
        self.close()
        self.on_event("worker.stopped", {"worker_id": self.worker_id, "overran": len(not_done)})

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _frame: Any) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in the main thread
            logger.debug("Not in main thread; signal handlers not installed")

        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
