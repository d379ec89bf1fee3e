"""Queue-side schemas for job lifecycle, payloads and status polling.

These are distinct from the ebook schemas (which describe the entity).
Queue schemas describe a unit of work and what happened to it.
"""

import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.ebook.schemas import EbookDescription


class JobKind(str, Enum):
    """Pipeline stage a job runs."""
    DESCRIPTION = "description"
    CONTENT = "content"
    PDF = "pdf"


# Lower runs first
JOB_PRIORITIES: dict[JobKind, int] = {
    JobKind.DESCRIPTION: 1,
    JobKind.CONTENT: 2,
    JobKind.PDF: 3,
}


class JobState(str, Enum):
    """Job lifecycle states."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


def new_job_id() -> str:
    return f"job-{uuid.uuid4().hex}"


class JobPayload(BaseModel):
    """Data carried by a queued job."""

    ebook_id: str
    agency_id: str = ""
    title: str = ""
    target_audience: Optional[str] = None
    industry: Optional[str] = None
    step: JobKind
    approved_description: Optional[EbookDescription] = None


class JobRecord(BaseModel):
    """A job row as claimed by a worker."""

    job_id: str
    queue_name: str
    kind: JobKind
    ebook_id: str
    agency_id: str = ""
    payload: JobPayload
    priority: int = 1
    state: JobState = JobState.WAITING
    progress: int = 0
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_ms: int = 5000
    available_at: int = 0
    locked_by: Optional[str] = None
    locked_until: Optional[int] = None
    return_value: Optional[dict[str, Any]] = None
    failed_reason: Optional[str] = None
    persistence_warning: Optional[str] = None
    created_at: int = 0
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None


class JobStatusResponse(BaseModel):
    """Response for job status polling."""

    id: str
    state: JobState
    progress: int = 0
    data: dict[str, Any] = Field(default_factory=dict)
    processed_on: Optional[int] = Field(default=None, description="Epoch ms when the last attempt started")
    finished_on: Optional[int] = Field(default=None, description="Epoch ms when the job became terminal")
    failed_reason: Optional[str] = None
    return_value: Optional[dict[str, Any]] = None
    attempts_made: int = 0
    persistence_warning: Optional[str] = None


class EnqueueResponse(BaseModel):
    job_id: str
    ebook_id: str
    step: JobKind
    state: JobState = JobState.WAITING
