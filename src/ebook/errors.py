"""Exceptions raised by the ebook pipeline.

Every pipeline failure carries a ``retryable`` flag that the job queue
consults before scheduling another attempt. Precondition violations are
caller sequencing bugs and are never retried.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all ebook pipeline errors."""

    retryable: bool = True


class EbookNotFoundError(PipelineError, LookupError):
    """Raised when the ebook record does not exist in the store."""

    def __init__(self, ebook_id: str) -> None:
        self.ebook_id = ebook_id
        super().__init__(f"Ebook not found: {ebook_id}")


class PreconditionError(PipelineError):
    """Raised when a stage is requested before its upstream data exists."""

    retryable = False

    def __init__(self, ebook_id: str, reason: str) -> None:
        self.ebook_id = ebook_id
        self.reason = reason
        super().__init__(f"Precondition failed for ebook {ebook_id}: {reason}")


class GenerationError(PipelineError):
    """Raised when the content generator fails or returns malformed output."""


class RendererUnavailableError(PipelineError):
    """Raised when the document renderer cannot run in this environment."""


class StoreWriteError(PipelineError):
    """Raised when the record store rejects a write."""


class InvalidTransitionError(PipelineError, ValueError):
    """Raised when a status change is not allowed by the state machine."""

    retryable = False

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal status transition: {current} -> {target}")


class StageExecutionError(PipelineError):
    """A stage failure plus the outcome of recording it on the ebook.

    ``primary`` is the exception that aborted the stage. ``persistence_warning``
    is set when the ERROR status could not be written; the primary failure
    stays authoritative either way.
    """

    def __init__(
        self,
        step: str,
        ebook_id: str,
        primary: BaseException,
        persistence_warning: Optional[str] = None,
    ) -> None:
        self.step = step
        self.ebook_id = ebook_id
        self.primary = primary
        self.persistence_warning = persistence_warning
        super().__init__(f"{step} stage failed for ebook {ebook_id}: {primary}")

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return is_retryable(self.primary)


def is_retryable(error: BaseException) -> bool:
    """Whether the queue should schedule another attempt after ``error``."""
    if isinstance(error, PipelineError):
        return error.retryable
    return True


class JobNotFoundError(PipelineError, LookupError):
    """Raised when a queued job does not exist (or was already cleaned up)."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class AccessDeniedError(PipelineError, PermissionError):
    """Raised when an agency asks for a job that belongs to another agency."""

    retryable = False
