"""Durable job queue for the ebook pipeline.

Handles:
- Enqueueing stage jobs with a priority per kind
- Atomic claiming (compare-and-set) so a job is active on one worker at a time
- Progress updates (for frontend polling), which also extend the job's lease
- Retry with exponential backoff, terminal failure, stalled-job recovery
- Bounded retention of completed and failed jobs

All state lives in the database apart from the in-process
FIFO tie-breaker. Delivery is at-least-once: a job whose worker dies is
handed to another worker once its lease expires.

Timestamps are epoch milliseconds.
"""

import logging
import threading
import time
from typing import Any, Callable, Optional

from src.ebook.errors import is_retryable
from src.executor.db import Database, _json_dumps, _json_loads
from src.executor.schemas import (
    JOB_PRIORITIES,
    JobKind,
    JobPayload,
    JobRecord,
    JobState,
    JobStatusResponse,
    new_job_id,
)

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "ebook-generation"
STALLED_REASON = "job stalled more than allowable limit"


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """Database-backed queue shared by API producers and worker consumers."""

    def __init__(
        self,
        db: Database,
        queue_name: str = DEFAULT_QUEUE_NAME,
        *,
        attempts: int = 3,
        backoff_ms: int = 5000,
        remove_on_complete: int = 10,
        remove_on_fail: int = 5,
        lock_duration_ms: int = 30 * 60 * 1000,
        clock: Callable[[], int] = _now_ms,
    ):
        self.db = db
        self.queue_name = queue_name
        self.attempts = max(1, attempts)
        self.backoff_ms = max(0, backoff_ms)
        self.remove_on_complete = max(0, remove_on_complete)
        self.remove_on_fail = max(0, remove_on_fail)
        self.lock_duration_ms = lock_duration_ms
        self.clock = clock
        self._seq_lock = threading.Lock()
        self._last_created_at = 0

    # --- Producer side ---

    def enqueue(
        self,
        kind: JobKind | str,
        ebook_id: str,
        payload: JobPayload | dict | None = None,
        *,
        agency_id: str = "",
    ) -> str:
        """Add a job. Returns the job id."""
        kind = JobKind(kind)
        if payload is None:
            payload = JobPayload(ebook_id=ebook_id, agency_id=agency_id, step=kind)
        elif isinstance(payload, dict):
            payload = JobPayload(**{"ebook_id": ebook_id, "agency_id": agency_id, "step": kind, **payload})
        if payload.step != kind or payload.ebook_id != ebook_id:
            raise ValueError(
                f"Payload mismatch: job is {kind.value} for {ebook_id}, "
                f"payload says {payload.step.value} for {payload.ebook_id}"
            )

        job_id = new_job_id()
        now = self.clock()
        created_at = self._next_created_at(now)

        self.db.execute(
            """INSERT INTO ebook_jobs
               (job_id, queue_name, kind, ebook_id, agency_id, payload, priority,
                state, progress, attempts_made, max_attempts, backoff_ms,
                available_at, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            (job_id, self.queue_name, kind.value, ebook_id, agency_id or payload.agency_id,
             _json_dumps(payload.model_dump(mode="json")), JOB_PRIORITIES[kind],
             JobState.WAITING.value, 0, 0, self.attempts, self.backoff_ms,
             now, created_at),
        )
        logger.info(f"Enqueued {kind.value} job {job_id} for ebook {ebook_id}")
        return job_id

    def _next_created_at(self, now: int) -> int:
        # Strictly increasing within a process so same-millisecond enqueues keep FIFO order
        with self._seq_lock:
            self._last_created_at = max(now, self._last_created_at + 1)
            return self._last_created_at

    def get(self, job_id: str) -> Optional[JobRecord]:
        row = self.db.execute(
            "SELECT * FROM ebook_jobs WHERE job_id = %s AND queue_name = %s",
            (job_id, self.queue_name),
            fetch="one",
        )
        if row is None:
            return None
        return _row_to_record(row)

    def status(self, job_id: str) -> Optional[JobStatusResponse]:
        """Polling view of a job, or None when unknown (or already cleaned)."""
        job = self.get(job_id)
        if job is None:
            return None
        return JobStatusResponse(
            id=job.job_id,
            state=job.state,
            progress=job.progress,
            data=job.payload.model_dump(mode="json", exclude_none=True),
            processed_on=job.processed_on,
            finished_on=job.finished_on,
            failed_reason=job.failed_reason,
            return_value=job.return_value,
            attempts_made=job.attempts_made,
            persistence_warning=job.persistence_warning,
        )

    def list_jobs(
        self,
        ebook_id: Optional[str] = None,
        state: Optional[JobState | str] = None,
        limit: int = 20,
    ) -> list[JobRecord]:
        """List recent jobs, newest first."""
        clauses = ["queue_name = %s"]
        params: list[Any] = [self.queue_name]
        if ebook_id:
            clauses.append("ebook_id = %s")
            params.append(ebook_id)
        if state:
            clauses.append("state = %s")
            params.append(JobState(state).value)
        params.append(limit)

        rows = self.db.execute(
            f"""SELECT * FROM ebook_jobs WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC LIMIT %s""",
            tuple(params),
            fetch="all",
        )
        return [_row_to_record(row) for row in rows]

    def counts(self) -> dict[str, int]:
        rows = self.db.execute(
            """SELECT state, COUNT(*) AS total FROM ebook_jobs
               WHERE queue_name = %s GROUP BY state""",
            (self.queue_name,),
            fetch="all",
        )
        counts = {state.value: 0 for state in JobState}
        for row in rows:
            counts[row["state"]] = int(row["total"])
        return counts

    # --- Consumer side ---

    def claim(self, worker_id: str, limit: int = 1) -> list[JobRecord]:
        """Move up to ``limit`` ready jobs to active, highest priority first."""
        if limit <= 0:
            return []

        now = self.clock()
        candidates = self.db.execute(
            """SELECT job_id FROM ebook_jobs
               WHERE queue_name = %s AND state IN (%s, %s) AND available_at <= %s
               ORDER BY priority ASC, created_at ASC
               LIMIT %s""",
            (self.queue_name, JobState.WAITING.value, JobState.DELAYED.value, now, limit * 4),
            fetch="all",
        )

        claimed: list[JobRecord] = []
        for candidate in candidates:
            if len(claimed) >= limit:
                break
            count = self.db.execute(
                """UPDATE ebook_jobs
                   SET state = %s, attempts_made = attempts_made + 1, progress = 0,
                       locked_by = %s, locked_until = %s, processed_on = %s
                   WHERE job_id = %s AND state IN (%s, %s)""",
                (JobState.ACTIVE.value, worker_id, now + self.lock_duration_ms, now,
                 candidate["job_id"], JobState.WAITING.value, JobState.DELAYED.value),
                fetch="rowcount",
            )
            if count != 1:
                continue  # Another worker won the race
            job = self.get(candidate["job_id"])
            if job is not None:
                claimed.append(job)
                logger.info(
                    f"Worker {worker_id} claimed {job.kind.value} job {job.job_id} "
                    f"(attempt {job.attempts_made}/{job.max_attempts})"
                )
        return claimed

    def update_progress(self, job_id: str, progress: int) -> bool:
        """Persist progress (0-100) and extend the lease. False if no longer active."""
        progress = max(0, min(100, int(progress)))
        count = self.db.execute(
            """UPDATE ebook_jobs SET progress = %s, locked_until = %s
               WHERE job_id = %s AND state = %s""",
            (progress, self.clock() + self.lock_duration_ms, job_id, JobState.ACTIVE.value),
            fetch="rowcount",
        )
        return bool(count)

    def complete(self, job_id: str, return_value: Optional[dict] = None) -> bool:
        now = self.clock()
        count = self.db.execute(
            """UPDATE ebook_jobs
               SET state = %s, progress = 100, return_value = %s, finished_on = %s,
                   failed_reason = NULL, locked_by = NULL, locked_until = NULL
               WHERE job_id = %s AND state = %s""",
            (JobState.COMPLETED.value, _json_dumps(return_value or {}), now,
             job_id, JobState.ACTIVE.value),
            fetch="rowcount",
        )
        if not count:
            logger.warning(f"complete() ignored for job {job_id}: not active")
            return False
        self.clean()
        return True

    def fail(self, job_id: str, error: BaseException | str) -> Optional[JobState]:
        """Record a failed attempt. Returns the resulting state.

        Retryable errors with attempts left are delayed by
        ``backoff_ms * 2**(attempts_made - 1)``; everything else is terminal.
        """
        job = self.get(job_id)
        if job is None:
            logger.warning(f"fail() ignored for job {job_id}: not found")
            return None
        if job.state != JobState.ACTIVE:
            logger.warning(f"fail() ignored for job {job_id}: state is {job.state.value}")
            return job.state

        reason = str(error)
        warning = getattr(error, "persistence_warning", None)
        retryable = is_retryable(error) if isinstance(error, BaseException) else True
        now = self.clock()

        if retryable and job.attempts_made < job.max_attempts:
            delay = job.backoff_ms * (2 ** max(0, job.attempts_made - 1))
            self.db.execute(
                """UPDATE ebook_jobs
                   SET state = %s, available_at = %s, failed_reason = %s,
                       persistence_warning = %s, locked_by = NULL, locked_until = NULL
                   WHERE job_id = %s AND state = %s""",
                (JobState.DELAYED.value, now + delay, reason, warning,
                 job_id, JobState.ACTIVE.value),
            )
            logger.info(
                f"Job {job_id} attempt {job.attempts_made}/{job.max_attempts} failed; "
                f"retrying in {delay}ms: {reason}"
            )
            return JobState.DELAYED

        self.db.execute(
            """UPDATE ebook_jobs
               SET state = %s, finished_on = %s, failed_reason = %s,
                   persistence_warning = %s, locked_by = NULL, locked_until = NULL
               WHERE job_id = %s AND state = %s""",
            (JobState.FAILED.value, now, reason, warning, job_id, JobState.ACTIVE.value),
        )
        logger.warning(
            f"Job {job_id} failed permanently after {job.attempts_made} attempt(s)"
            f"{'' if retryable else ' (not retryable)'}: {reason}"
        )
        self.clean()
        return JobState.FAILED

    def release(self, job_id: str) -> bool:
        """Return a claimed-but-unstarted job to waiting without using an attempt."""
        count = self.db.execute(
            """UPDATE ebook_jobs
               SET state = %s, attempts_made = attempts_made - 1, available_at = %s,
                   locked_by = NULL, locked_until = NULL
               WHERE job_id = %s AND state = %s""",
            (JobState.WAITING.value, self.clock(), job_id, JobState.ACTIVE.value),
            fetch="rowcount",
        )
        if count:
            logger.info(f"Released job {job_id} back to waiting")
        return bool(count)

    def recover_stalled(self) -> tuple[int, int]:
        """Requeue active jobs whose lease expired (their worker died).

        Returns (requeued_count, failed_count).
        """
        now = self.clock()
        stalled = self.db.execute(
            """SELECT job_id, attempts_made, max_attempts, locked_by FROM ebook_jobs
               WHERE queue_name = %s AND state = %s AND locked_until < %s""",
            (self.queue_name, JobState.ACTIVE.value, now),
            fetch="all",
        )
        if not stalled:
            return (0, 0)

        requeued = 0
        failed = 0
        for job in stalled:
            job_id = job["job_id"]
            if job["attempts_made"] >= job["max_attempts"]:
                count = self.db.execute(
                    """UPDATE ebook_jobs
                       SET state = %s, finished_on = %s, failed_reason = %s,
                           locked_by = NULL, locked_until = NULL
                       WHERE job_id = %s AND state = %s AND locked_until < %s""",
                    (JobState.FAILED.value, now, STALLED_REASON,
                     job_id, JobState.ACTIVE.value, now),
                    fetch="rowcount",
                )
                failed += count
            else:
                count = self.db.execute(
                    """UPDATE ebook_jobs
                       SET state = %s, available_at = %s, locked_by = NULL, locked_until = NULL
                       WHERE job_id = %s AND state = %s AND locked_until < %s""",
                    (JobState.WAITING.value, now, job_id, JobState.ACTIVE.value, now),
                    fetch="rowcount",
                )
                requeued += count
            if count:
                logger.warning(f"Recovered stalled job {job_id} (was locked by {job['locked_by']})")

        if failed:
            self.clean()
        logger.info(f"Stalled-job recovery: {requeued} requeued, {failed} failed")
        return (requeued, failed)

    def clean(self) -> int:
        """Trim terminal jobs to the retention limits. Returns rows removed."""
        removed = 0
        for state, keep in (
            (JobState.COMPLETED, self.remove_on_complete),
            (JobState.FAILED, self.remove_on_fail),
        ):
            removed += self.db.execute(
                """DELETE FROM ebook_jobs
                   WHERE queue_name = %s AND state = %s AND job_id NOT IN (
                       SELECT job_id FROM ebook_jobs
                       WHERE queue_name = %s AND state = %s
                       ORDER BY finished_on DESC, created_at DESC
                       LIMIT %s
                   )""",
                (self.queue_name, state.value, self.queue_name, state.value, keep),
                fetch="rowcount",
            ) or 0
        if removed:
            logger.debug(f"Cleaned {removed} terminal job(s) from {self.queue_name}")
        return removed


def _row_to_record(row: dict) -> JobRecord:
    return_value = row.get("return_value")
    return JobRecord(
        job_id=row["job_id"],
        queue_name=row["queue_name"],
        kind=JobKind(row["kind"]),
        ebook_id=row["ebook_id"],
        agency_id=row.get("agency_id") or "",
        payload=JobPayload(**_json_loads(row.get("payload"))),
        priority=row["priority"],
        state=JobState(row["state"]),
        progress=row["progress"],
        attempts_made=row["attempts_made"],
        max_attempts=row["max_attempts"],
        backoff_ms=row["backoff_ms"],
        available_at=row["available_at"],
        locked_by=row.get("locked_by"),
        locked_until=row.get("locked_until"),
        return_value=_json_loads(return_value) if return_value is not None else None,
        failed_reason=row.get("failed_reason"),
        persistence_warning=row.get("persistence_warning"),
        created_at=row["created_at"],
        processed_on=row.get("processed_on"),
        finished_on=row.get("finished_on"),
    )
