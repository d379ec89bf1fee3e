"""Producer side of the pipeline, used by the HTTP layer.

Every call is scoped to one agency: an ebook of another agency behaves as
if it did not exist, and a job of another agency is refused.

Stage requests check the entity up front so obvious sequencing mistakes
(e.g. asking for a PDF before content exists) fail at submission time
instead of in the worker. The worker re-checks anyway.
"""

import logging
from typing import Optional

from src.ebook.errors import (
    AccessDeniedError,
    EbookNotFoundError,
    JobNotFoundError,
    PreconditionError,
)
from src.ebook.schemas import (
    CreateEbookRequest,
    Ebook,
    EbookDescription,
    EbookStatus,
    EbookSummary,
    UpdateEbookRequest,
)
from src.ebook.state_machine import can_transition
from src.ebook.store import EbookStore
from src.executor.job_queue import JobQueue
from src.executor.schemas import (
    EnqueueResponse,
    JobKind,
    JobPayload,
    JobStatusResponse,
)

logger = logging.getLogger(__name__)

IN_PROGRESS_STATES = {EbookStatus.GENERATING, EbookStatus.GENERATING_PDF}


class SubmissionService:
    """Create ebooks, approve descriptions, enqueue stage jobs, poll jobs."""

    def __init__(self, store: EbookStore, queue: JobQueue):
        self.store = store
        self.queue = queue

    # --- Entity CRUD ---

    def create_ebook(
        self,
        agency_id: str,
        request: CreateEbookRequest,
        created_by: Optional[str] = None,
    ) -> Ebook:
        return self.store.create(
            agency_id,
            request.title,
            target_audience=request.target_audience,
            industry=request.industry,
            created_by=created_by,
        )

    def get_ebook(self, agency_id: str, ebook_id: str) -> Ebook:
        return self.store.require(ebook_id, agency_id)

    def list_ebooks(
        self,
        agency_id: str,
        status: Optional[EbookStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[EbookSummary], int]:
        return self.store.list_ebooks(agency_id, status=status, page=page, limit=limit)

    def update_ebook(self, agency_id: str, ebook_id: str, request: UpdateEbookRequest) -> Ebook:
        """Apply human edits between stages.

        An edited description counts as a new, unapproved description.
        """
        ebook = self.store.require(ebook_id, agency_id)
        if ebook.status in IN_PROGRESS_STATES:
            raise PreconditionError(ebook_id, f"cannot edit while status is {ebook.status.value}")

        if request.description is not None:
            if ebook.content is not None:
                raise PreconditionError(ebook_id, "content already exists for the current description")
            if not can_transition(ebook.status, EbookStatus.DESCRIPTION_GENERATED):
                raise PreconditionError(
                    ebook_id,
                    f"description can no longer be edited (status {ebook.status.value})",
                )
            ebook = self.store.save_description(ebook_id, request.description)

        if request.content is not None:
            if ebook.content is None:
                raise PreconditionError(ebook_id, "content has not been generated")
            ebook = self.store.edit(ebook_id, agency_id, content=request.content)

        return ebook

    def delete_ebook(self, agency_id: str, ebook_id: str) -> None:
        if not self.store.delete(ebook_id, agency_id):
            raise EbookNotFoundError(ebook_id)

    # --- Stage requests ---

    def request_description(self, agency_id: str, ebook_id: str) -> EnqueueResponse:
        ebook = self.store.require(ebook_id, agency_id)
        if ebook.content is not None:
            raise PreconditionError(ebook_id, "content already exists for the current description")
        if not can_transition(ebook.status, EbookStatus.DESCRIPTION_GENERATED):
            raise PreconditionError(
                ebook_id,
                f"cannot regenerate the description while status is {ebook.status.value}",
            )
        return self._enqueue(ebook, JobKind.DESCRIPTION)

    def request_content(
        self,
        agency_id: str,
        ebook_id: str,
        approved_description: EbookDescription,
    ) -> EnqueueResponse:
        """Record the approved (possibly edited) description, then enqueue content."""
        ebook = self.store.require(ebook_id, agency_id)
        if ebook.description is None:
            raise PreconditionError(ebook_id, "description has not been generated")
        if not approved_description.chapters:
            raise PreconditionError(ebook_id, "approved description has no chapters")
        if not can_transition(ebook.status, EbookStatus.DESCRIPTION_APPROVED):
            raise PreconditionError(
                ebook_id,
                f"cannot approve the description while status is {ebook.status.value}",
            )

        ebook = self.store.approve_description(ebook_id, approved_description)
        logger.info(f"Description approved for ebook {ebook_id}")
        return self._enqueue(ebook, JobKind.CONTENT, approved_description=approved_description)

    def request_pdf(self, agency_id: str, ebook_id: str) -> EnqueueResponse:
        ebook = self.store.require(ebook_id, agency_id)
        if ebook.description is None or ebook.content is None:
            raise PreconditionError(ebook_id, "content must be generated before the PDF")
        if not can_transition(ebook.status, EbookStatus.GENERATING_PDF):
            raise PreconditionError(
                ebook_id,
                f"cannot render the PDF while status is {ebook.status.value}",
            )
        return self._enqueue(ebook, JobKind.PDF)

    # --- Polling ---

    def job_status(self, agency_id: str, job_id: str) -> JobStatusResponse:
        job = self.queue.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.agency_id and job.agency_id != agency_id:
            raise AccessDeniedError(f"Job {job_id} belongs to another agency")

        status = self.queue.status(job_id)
        if status is None:  # cleaned between the two reads
            raise JobNotFoundError(job_id)
        return status

    # --- Internals ---

    def _enqueue(
        self,
        ebook: Ebook,
        kind: JobKind,
        approved_description: Optional[EbookDescription] = None,
    ) -> EnqueueResponse:
        payload = JobPayload(
            ebook_id=ebook.ebook_id,
            agency_id=ebook.agency_id,
            title=ebook.title,
            target_audience=ebook.target_audience,
            industry=ebook.industry,
            step=kind,
            approved_description=approved_description,
        )
        job_id = self.queue.enqueue(kind, ebook.ebook_id, payload, agency_id=ebook.agency_id)
        self.store.update_metadata(ebook.ebook_id, last_job_id=job_id, last_job_step=kind.value)
        return EnqueueResponse(job_id=job_id, ebook_id=ebook.ebook_id, step=kind)
