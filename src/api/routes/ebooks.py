"""Ebook API routes: entity CRUD, stage requests and job polling.

Endpoints:
    POST   /v1/ebooks                      Create an ebook
    GET    /v1/ebooks                      List (status, page, limit)
    GET    /v1/ebooks/{ebook_id}           Full record
    PUT    /v1/ebooks/{ebook_id}           Edit description/content between stages
    DELETE /v1/ebooks/{ebook_id}           Administrative delete
    POST   /v1/ebooks/{ebook_id}/description   Enqueue description generation
    POST   /v1/ebooks/{ebook_id}/content       Approve description + enqueue content
    POST   /v1/ebooks/{ebook_id}/pdf           Enqueue PDF rendering
    GET    /v1/jobs/{job_id}               Poll a job

Every endpoint is scoped to the agency in the X-Agency-Id header.
"""

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from src.ebook.errors import (
    AccessDeniedError,
    EbookNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
    PipelineError,
    PreconditionError,
)
from src.ebook.schemas import (
    ApproveDescriptionRequest,
    CreateEbookRequest,
    Ebook,
    EbookStatus,
    UpdateEbookRequest,
)
from src.executor.schemas import EnqueueResponse, JobStatusResponse
from src.orchestrator.submission import SubmissionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ebooks"])


def get_service(request: Request) -> SubmissionService:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return runtime.service


def get_agency_id(x_agency_id: Optional[str] = Header(default=None)) -> str:
    if not x_agency_id or not x_agency_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Agency-Id header")
    return x_agency_id.strip()


def _http_error(e: PipelineError) -> HTTPException:
    if isinstance(e, (EbookNotFoundError, JobNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, AccessDeniedError):
        return HTTPException(status_code=403, detail="Not authorized for this job")
    if isinstance(e, (PreconditionError, InvalidTransitionError)):
        return HTTPException(status_code=409, detail=str(e))
    logger.error(f"Unexpected pipeline error: {e}")
    return HTTPException(status_code=503, detail=str(e))


# --- Entity endpoints ---


@router.post("/ebooks", status_code=status.HTTP_201_CREATED, response_model=Ebook)
def create_ebook(
    request: CreateEbookRequest,
    agency_id: str = Depends(get_agency_id),
    service: SubmissionService = Depends(get_service),
):
    """Create an ebook in status CREATED."""
    return service.create_ebook(agency_id, request)


@router.get("/ebooks")
def list_ebooks(
    status_filter: Optional[EbookStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    agency_id: str = Depends(get_agency_id),
    service: SubmissionService = Depends(get_service),
):
    """List the agency's ebooks, newest first."""
    items, total = service.list_ebooks(agency_id, status=status_filter, page=page, limit=limit)
    return {
        "ebooks": [item.model_dump(mode="json") for item in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@router.get("/ebooks/{ebook_id}", response_model=Ebook)
def get_ebook(
    ebook_id: str,
    agency_id: str = Depends(get_agency_id),
    service: SubmissionService = Depends(get_service),
):
    try:
        return service.get_ebook(agency_id, ebook_id)
    except PipelineError as e:
        raise _http_error(e)


@router.put("/ebooks/{ebook_id}", response_model=Ebook)
def update_ebook(
    ebook_id: str,
    request: UpdateEbookRequest,
    agency_id: str = Depends(get_agency_id),
    service: SubmissionService = Depends(get_service),
):
    """Edit the description or content. An edited description needs re-approval."""
    try:
        return service.update_ebook(agency_id, ebook_id, request)
    except PipelineError as e:
        raise _http_error(e)


@router.delete("/ebooks/{ebook_id}")
def delete_ebook(
    ebook_id: str,
    agency_id: str = Depends(get_agency_id),
    service: SubmissionService = Depends(get_service),
):
    try:
        service.delete_ebook(agency_id, ebook_id)
    except PipelineError as e:
        raise _http_error(e)
    return {"deleted": True, "ebook_id": ebook_id}


# --- Stage requests ---


@router.post("/ebooks/{ebook_id}/description", status_code=202, response_model=EnqueueResponse)
def request_description(
    ebook_id: str,
    agency_id: str = Depends(get_agency_id),
    service: SubmissionService = Depends(get_service),
):
    """Queue description generation. Poll GET /v1/jobs/{job_id} for progress."""
    try:
        return service.request_description(agency_id, ebook_id)
    except PipelineError as e:
        raise _http_error(e)


@router.post("/ebooks/{ebook_id}/content", status_code=202, response_model=EnqueueResponse)
def request_content(
    ebook_id: str,
    request: ApproveDescriptionRequest,
    agency_id: str = Depends(get_agency_id),
    service: SubmissionService = Depends(get_service),
):
    """Approve the (possibly edited) description and queue content generation."""
    try:
        return service.request_content(agency_id, ebook_id, request.approved_description)
    except PipelineError as e:
        raise _http_error(e)


@router.post("/ebooks/{ebook_id}/pdf", status_code=202, response_model=EnqueueResponse)
def request_pdf(
    ebook_id: str,
    agency_id: str = Depends(get_agency_id),
    service: SubmissionService = Depends(get_service),
):
    try:
        return service.request_pdf(agency_id, ebook_id)
    except PipelineError as e:
        raise _http_error(e)


# --- Job polling ---


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job_status(
    job_id: str,
    agency_id: str = Depends(get_agency_id),
    service: SubmissionService = Depends(get_service),
):
    try:
        return service.job_status(agency_id, job_id)
    except PipelineError as e:
        raise _http_error(e)
