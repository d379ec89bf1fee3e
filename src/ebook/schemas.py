"""Schemas for the ebook entity and its generated artifacts.

The description and content documents are produced by the generator and
stored as JSON on the ebook record. Field names are snake_case; the
generator maps whatever the model returns onto these shapes.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EbookStatus(str, Enum):
    """Ebook lifecycle states."""
    CREATED = "CREATED"
    DESCRIPTION_GENERATED = "DESCRIPTION_GENERATED"
    DESCRIPTION_APPROVED = "DESCRIPTION_APPROVED"
    GENERATING = "GENERATING"
    CONTENT_READY = "CONTENT_READY"
    GENERATING_PDF = "GENERATING_PDF"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class ChapterOutline(BaseModel):
    """A chapter stub inside the generated description."""

    number: int = Field(ge=1)
    title: str
    description: str = ""
    pages: int = Field(ge=1)


class EbookDescription(BaseModel):
    """Output of the description stage; reviewed and approved by a human."""

    description: str = Field(description="Overview of the ebook in 2-3 paragraphs")
    target_audience: str
    objectives: list[str] = Field(default_factory=list)
    benefits: list[str] = Field(default_factory=list)
    chapters: list[ChapterOutline]
    total_pages: int
    estimated_read_time: str = ""
    difficulty: Difficulty = Difficulty.BEGINNER

    @field_validator("description", "target_audience")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


class GeneratedChapter(BaseModel):
    """One chapter written during the content stage."""

    chapter_number: int = Field(ge=1)
    title: str
    content: str = Field(description="Chapter body in Markdown")
    word_count: int = 0
    key_points: list[str] = Field(default_factory=list)

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("chapter content is empty")
        return value


class ContentMetadata(BaseModel):
    total_chapters: int
    total_pages: int
    generated_at: str = Field(default_factory=now_iso)


class EbookContent(BaseModel):
    """Output of the content stage."""

    introduction: str
    chapters: list[GeneratedChapter]
    conclusion: str
    metadata: ContentMetadata


class Ebook(BaseModel):
    """Full ebook record as persisted in the store."""

    ebook_id: str = Field(default_factory=lambda: f"ebook-{uuid.uuid4().hex[:12]}")
    agency_id: str
    title: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    description: Optional[EbookDescription] = None
    description_approved_at: Optional[str] = None
    content: Optional[EbookContent] = None
    pdf_url: Optional[str] = None
    status: EbookStatus = EbookStatus.CREATED
    error: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    @property
    def target_audience(self) -> Optional[str]:
        return self.metadata.get("target_audience")

    @property
    def industry(self) -> Optional[str]:
        return self.metadata.get("industry")

    @property
    def is_description_approved(self) -> bool:
        return self.description is not None and self.description_approved_at is not None


class EbookSummary(BaseModel):
    """List view of an ebook (without the large generated documents)."""

    ebook_id: str
    title: str
    status: EbookStatus
    pdf_url: Optional[str] = None
    created_at: str
    updated_at: str


class CreateEbookRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    target_audience: Optional[str] = None
    industry: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title is required")
        return value


class UpdateEbookRequest(BaseModel):
    """Edits allowed between stages. The title is immutable."""

    description: Optional[EbookDescription] = None
    content: Optional[EbookContent] = None


class ApproveDescriptionRequest(BaseModel):
    approved_description: EbookDescription


class StageResult(BaseModel):
    """Small summary returned by every stage handler."""

    success: bool = True
    step: str
    ebook_id: str
    payload_ref: Optional[str] = Field(
        default=None,
        description="Where the produced artifact lives (field name or URL)",
    )
    message: str = ""
