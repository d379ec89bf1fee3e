"""Durable record store for ebook entities.

The store is the single source of truth for an ebook's status and its
generated documents. Stage handlers re-read the record before acting and
write only the fields their stage owns; every write bumps ``updated_at``.
"""

import logging
from typing import Any, Optional

from src.ebook.errors import EbookNotFoundError, StoreWriteError
from src.ebook.schemas import (
    Ebook,
    EbookContent,
    EbookDescription,
    EbookStatus,
    EbookSummary,
    now_iso,
)
from src.ebook.state_machine import ensure_transition
from src.executor.db import Database, _json_dumps, _json_loads

logger = logging.getLogger(__name__)

_NO_CHANGE = object()


class EbookStore:
    """CRUD and status transitions for ebook records."""

    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        agency_id: str,
        title: str,
        *,
        target_audience: Optional[str] = None,
        industry: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Ebook:
        """Insert a new ebook in status CREATED."""
        ebook = Ebook(
            agency_id=agency_id,
            title=title.strip(),
            metadata={
                "target_audience": target_audience or None,
                "industry": industry or None,
                "created_by": created_by,
            },
        )
        self.db.execute(
            """INSERT INTO ebooks
               (ebook_id, agency_id, title, metadata, description,
                description_approved_at, content, pdf_url, status, error,
                created_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            (ebook.ebook_id, agency_id, ebook.title, _json_dumps(ebook.metadata),
             None, None, None, None, ebook.status.value, None,
             ebook.created_at, ebook.updated_at),
        )
        logger.info(f"Created ebook {ebook.ebook_id} for agency {agency_id}: '{ebook.title}'")
        return ebook

    def get(self, ebook_id: str, agency_id: Optional[str] = None) -> Optional[Ebook]:
        """Get an ebook by ID, optionally scoped to one agency."""
        if agency_id is None:
            row = self.db.execute(
                "SELECT * FROM ebooks WHERE ebook_id = %s",
                (ebook_id,),
                fetch="one",
            )
        else:
            row = self.db.execute(
                "SELECT * FROM ebooks WHERE ebook_id = %s AND agency_id = %s",
                (ebook_id, agency_id),
                fetch="one",
            )
        if row is None:
            return None
        return _row_to_ebook(row)

    def require(self, ebook_id: str, agency_id: Optional[str] = None) -> Ebook:
        ebook = self.get(ebook_id, agency_id)
        if ebook is None:
            raise EbookNotFoundError(ebook_id)
        return ebook

    def list_ebooks(
        self,
        agency_id: str,
        status: Optional[EbookStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[EbookSummary], int]:
        """List an agency's ebooks, newest first. Returns (page_items, total)."""
        page = max(1, page)
        limit = max(1, limit)
        offset = (page - 1) * limit

        if status:
            rows = self.db.execute(
                """SELECT ebook_id, title, status, pdf_url, created_at, updated_at
                   FROM ebooks WHERE agency_id = %s AND status = %s
                   ORDER BY created_at DESC LIMIT %s OFFSET %s""",
                (agency_id, EbookStatus(status).value, limit, offset),
                fetch="all",
            )
            total_row = self.db.execute(
                "SELECT COUNT(*) AS total FROM ebooks WHERE agency_id = %s AND status = %s",
                (agency_id, EbookStatus(status).value),
                fetch="one",
            )
        else:
            rows = self.db.execute(
                """SELECT ebook_id, title, status, pdf_url, created_at, updated_at
                   FROM ebooks WHERE agency_id = %s
                   ORDER BY created_at DESC LIMIT %s OFFSET %s""",
                (agency_id, limit, offset),
                fetch="all",
            )
            total_row = self.db.execute(
                "SELECT COUNT(*) AS total FROM ebooks WHERE agency_id = %s",
                (agency_id,),
                fetch="one",
            )

        items = [EbookSummary(**row) for row in rows]
        return items, int(total_row["total"]) if total_row else 0

    def delete(self, ebook_id: str, agency_id: str) -> bool:
        """Delete an ebook. Returns True if it existed."""
        count = self.db.execute(
            "DELETE FROM ebooks WHERE ebook_id = %s AND agency_id = %s",
            (ebook_id, agency_id),
            fetch="rowcount",
        )
        if count:
            logger.info(f"Deleted ebook {ebook_id}")
        return bool(count)

    # --- Stage-owned writes ---

    def set_status(self, ebook_id: str, status: EbookStatus) -> Ebook:
        """Advance status after checking the transition is allowed."""
        return self._update(ebook_id, status=status, error=None)

    def save_description(self, ebook_id: str, description: EbookDescription) -> Ebook:
        """Persist a freshly generated description. Clears any prior approval."""
        return self._update(
            ebook_id,
            status=EbookStatus.DESCRIPTION_GENERATED,
            description=description,
            description_approved_at=None,
            error=None,
        )

    def approve_description(self, ebook_id: str, description: EbookDescription) -> Ebook:
        """Record the human-approved (possibly edited) description."""
        return self._update(
            ebook_id,
            status=EbookStatus.DESCRIPTION_APPROVED,
            description=description,
            description_approved_at=now_iso(),
            error=None,
        )

    def save_content(self, ebook_id: str, content: EbookContent) -> Ebook:
        return self._update(
            ebook_id,
            status=EbookStatus.CONTENT_READY,
            content=content,
            error=None,
        )

    def save_pdf(self, ebook_id: str, pdf_url: str) -> Ebook:
        return self._update(
            ebook_id,
            status=EbookStatus.COMPLETED,
            pdf_url=pdf_url,
            error=None,
        )

    def mark_error(self, ebook_id: str, message: str) -> Ebook:
        """Move an ebook to ERROR, or refresh the message if it is already there."""
        ebook = self.require(ebook_id)
        if ebook.status == EbookStatus.ERROR:
            return self._write(ebook, error=message)
        return self._update(ebook_id, status=EbookStatus.ERROR, error=message, current=ebook)

    def edit(
        self,
        ebook_id: str,
        agency_id: str,
        *,
        description: Optional[EbookDescription] = None,
        content: Optional[EbookContent] = None,
    ) -> Ebook:
        """Apply UI edits between stages without touching status."""
        ebook = self.require(ebook_id, agency_id)
        return self._write(
            ebook,
            description=description if description is not None else _NO_CHANGE,
            content=content if content is not None else _NO_CHANGE,
        )

    def update_metadata(self, ebook_id: str, **entries: Any) -> Ebook:
        """Merge bookkeeping entries (e.g. last job id) into metadata."""
        ebook = self.require(ebook_id)
        metadata = dict(ebook.metadata)
        metadata.update(entries)
        return self._write(ebook, metadata=metadata)

    # --- Internals ---

    def _update(
        self,
        ebook_id: str,
        *,
        status: EbookStatus,
        current: Optional[Ebook] = None,
        **fields: Any,
    ) -> Ebook:
        ebook = current or self.require(ebook_id)
        ensure_transition(ebook.status, status)
        return self._write(ebook, status=status, **fields)

    def _write(
        self,
        ebook: Ebook,
        *,
        status: Any = _NO_CHANGE,
        description: Any = _NO_CHANGE,
        description_approved_at: Any = _NO_CHANGE,
        content: Any = _NO_CHANGE,
        pdf_url: Any = _NO_CHANGE,
        error: Any = _NO_CHANGE,
        metadata: Any = _NO_CHANGE,
    ) -> Ebook:
        assignments: list[str] = []
        params: list[Any] = []

        def _set(column: str, value: Any) -> None:
            assignments.append(f"{column} = %s")
            params.append(value)

        updated = ebook.model_copy()
        if status is not _NO_CHANGE:
            _set("status", EbookStatus(status).value)
            updated.status = EbookStatus(status)
        if description is not _NO_CHANGE:
            _set("description", _model_json(description))
            updated.description = description
        if description_approved_at is not _NO_CHANGE:
            _set("description_approved_at", description_approved_at)
            updated.description_approved_at = description_approved_at
        if content is not _NO_CHANGE:
            _set("content", _model_json(content))
            updated.content = content
        if pdf_url is not _NO_CHANGE:
            _set("pdf_url", pdf_url)
            updated.pdf_url = pdf_url
        if error is not _NO_CHANGE:
            _set("error", error)
            updated.error = error
        if metadata is not _NO_CHANGE:
            _set("metadata", _json_dumps(metadata))
            updated.metadata = metadata

        updated.updated_at = now_iso()
        _set("updated_at", updated.updated_at)
        params.append(ebook.ebook_id)

        try:
            count = self.db.execute(
                f"UPDATE ebooks SET {', '.join(assignments)} WHERE ebook_id = %s",
                tuple(params),
                fetch="rowcount",
            )
        except Exception as e:
            raise StoreWriteError(f"Failed to update ebook {ebook.ebook_id}: {e}") from e
        if not count:
            raise EbookNotFoundError(ebook.ebook_id)

        if status is not _NO_CHANGE and ebook.status != updated.status:
            logger.info(f"Ebook {ebook.ebook_id} status {ebook.status.value} → {updated.status.value}")
        return updated


def _model_json(model: Any) -> Optional[str]:
    if model is None:
        return None
    return _json_dumps(model.model_dump(mode="json"))


def _row_to_ebook(row: dict) -> Ebook:
    description = row.get("description")
    content = row.get("content")
    return Ebook(
        ebook_id=row["ebook_id"],
        agency_id=row["agency_id"],
        title=row["title"],
        metadata=_json_loads(row.get("metadata")) or {},
        description=EbookDescription(**_json_loads(description)) if description else None,
        description_approved_at=row.get("description_approved_at"),
        content=EbookContent(**_json_loads(content)) if content else None,
        pdf_url=row.get("pdf_url"),
        status=EbookStatus(row["status"]),
        error=row.get("error"),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )
