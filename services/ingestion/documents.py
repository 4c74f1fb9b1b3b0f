# services/ingestion/documents.py
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from services.errors import ConflictError, NotFoundError
from services.extraction.doc_types import DocumentType
from services.ingestion.storage import LocalStorage

logger = logging.getLogger(__name__)

DOCUMENT_FILE = "document.json"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    DocumentStatus.PENDING: {DocumentStatus.PROCESSING},
    DocumentStatus.PROCESSING: {DocumentStatus.COMPLETED, DocumentStatus.FAILED},
    DocumentStatus.COMPLETED: set(),
    DocumentStatus.FAILED: set(),
}


@dataclass
class Document:
    id: str
    document_type: DocumentType
    status: DocumentStatus = DocumentStatus.PENDING
    original_filename: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: int = 0
    input_uri: Optional[str] = None
    extracted_fields: Optional[Dict[str, Any]] = None
    corrected_fields: Optional[Dict[str, Any]] = None
    correction_notes: Optional[str] = None
    corrected_at: Optional[str] = None
    confidence: Optional[float] = None
    ocr_confidence: Optional[float] = None
    extraction_confidence: Optional[float] = None
    validation_errors: List[str] = field(default_factory=list)
    raw_text: Optional[str] = None
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def effective_fields(self) -> Optional[Dict[str, Any]]:
        """Human corrections win over machine extraction."""
        if self.corrected_fields:
            return self.corrected_fields
        return self.extracted_fields

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["document_type"] = self.document_type.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Document":
        data = dict(d)
        data["document_type"] = DocumentType.parse(data["document_type"])
        data["status"] = DocumentStatus(data["status"])
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


class DocumentRepository:
    """
    Document state persisted as JSON beside the uploaded bytes.

    Owns the status graph pending -> processing -> {completed, failed}.
    Writes go through a temp-file replace, so a concurrent reader sees either
    the old or the new state, never a partial one.
    """

    def __init__(self, storage: LocalStorage) -> None:
        self.storage = storage
        self._lock = threading.Lock()

    def create(self, document: Document) -> Document:
        with self._lock:
            if self.storage.get_json_if_exists(document_id=document.id, name=DOCUMENT_FILE) is not None:
                raise ConflictError(f"Document {document.id} already exists")
            self._write(document)
        return document

    def new_id(self) -> str:
        return str(uuid4())

    def get(self, document_id: str) -> Document:
        raw = self.storage.get_json_if_exists(document_id=document_id, name=DOCUMENT_FILE)
        if raw is None:
            raise NotFoundError(f"Document {document_id} not found")
        return Document.from_dict(raw)

    def transition(self, document_id: str, status: DocumentStatus, **changes: Any) -> Document:
        with self._lock:
            current = self.get(document_id)
            if status not in _ALLOWED_TRANSITIONS[current.status]:
                raise ConflictError(
                    f"Document {document_id} cannot move from {current.status.value} to {status.value}"
                )
            if status == DocumentStatus.COMPLETED and changes.get("extracted_fields") is None:
                raise ValueError("a completed document must carry extracted_fields")
            if status != DocumentStatus.COMPLETED:
                changes["extracted_fields"] = None
            updated = replace(current, status=status, updated_at=utc_now(), **changes)
            self._write(updated)
        logger.info("document %s: %s -> %s", document_id, current.status.value, status.value)
        return updated

    def save_corrections(self, document_id: str, corrected_fields: Dict[str, Any], notes: Optional[str]) -> Document:
        with self._lock:
            current = self.get(document_id)
            if current.status != DocumentStatus.COMPLETED:
                raise ConflictError(
                    f"Document {document_id} is {current.status.value}; corrections need a completed document"
                )
            now = utc_now()
            updated = replace(
                current,
                corrected_fields=dict(corrected_fields),
                correction_notes=notes,
                corrected_at=now,
                updated_at=now,
            )
            self._write(updated)
        return updated

    def _write(self, document: Document) -> None:
        self.storage.put_json_atomic(document_id=document.id, obj=document.to_dict(), name=DOCUMENT_FILE)
