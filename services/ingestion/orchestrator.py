# services/ingestion/orchestrator.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

from services.errors import (
    ConflictError,
    ProcessingFailedError,
    ProcessingTimeoutError,
    ValidationError,
)
from services.extraction.doc_types import DocumentType
from services.ingestion.documents import Document, DocumentRepository, DocumentStatus
from services.ingestion.storage import LocalStorage

logger = logging.getLogger(__name__)

EXTRACT_TASK_NAME = "docverify.extract_document"

DEFAULT_ALLOWED_MIME_TYPES: Tuple[str, ...] = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "application/pdf",
)
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024

DEFAULT_POLL_INTERVAL_S = 2.0
DEFAULT_POLL_MAX_ATTEMPTS = 30


class TaskDispatcher(Protocol):
    """The subset of `celery.Celery` the orchestrator needs."""

    def send_task(self, name: str, args: Any = None, kwargs: Any = None) -> Any: ...


@dataclass(frozen=True)
class UploadLimits:
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    allowed_mime_types: Tuple[str, ...] = DEFAULT_ALLOWED_MIME_TYPES


class DocumentOrchestrator:
    """
    API-side half of ingestion: validates uploads, hands extraction to the
    workers and answers status reads. It never waits on extraction itself;
    `wait_for_completion` is the bounded, caller-driven poll loop.
    """

    def __init__(
        self,
        *,
        repository: DocumentRepository,
        storage: LocalStorage,
        dispatcher: TaskDispatcher,
        limits: UploadLimits = UploadLimits(),
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.dispatcher = dispatcher
        self.limits = limits

    def _validate_upload(self, blob: bytes, content_type: Optional[str]) -> str:
        ctype = (content_type or "").split(";")[0].strip().lower()
        if ctype not in self.limits.allowed_mime_types:
            allowed = ", ".join(self.limits.allowed_mime_types)
            raise ValidationError(f"Invalid file type '{ctype or 'unknown'}'. Allowed: {allowed}")
        if not blob:
            raise ValidationError("Uploaded file is empty")
        if len(blob) > self.limits.max_upload_bytes:
            raise ValidationError(
                f"File too large ({len(blob)} bytes); the limit is {self.limits.max_upload_bytes} bytes"
            )
        return ctype

    def upload(
        self,
        *,
        blob: bytes,
        filename: Optional[str],
        content_type: Optional[str],
        document_type: Any,
    ) -> Document:
        dt = DocumentType.parse(document_type)
        ctype = self._validate_upload(blob, content_type)

        document_id = self.repository.new_id()
        stored = self.storage.put_bytes(document_id=document_id, blob=blob, content_type=ctype)
        doc = self.repository.create(
            Document(
                id=document_id,
                document_type=dt,
                original_filename=filename,
                content_type=ctype,
                size_bytes=len(blob),
                input_uri=stored.uri,
            )
        )
        logger.info("document %s uploaded (%s, %d bytes)", document_id, dt.value, len(blob))

        try:
            self.dispatcher.send_task(EXTRACT_TASK_NAME, args=[document_id])
        except Exception as e:
            # Broker down: the document must still end in an inspectable state.
            logger.exception("could not queue extraction for document %s", document_id)
            self.repository.transition(document_id, DocumentStatus.PROCESSING)
            return self.repository.transition(
                document_id,
                DocumentStatus.FAILED,
                error_message=f"Extraction could not be queued: {e}"[:500],
            )
        return doc

    def poll_status(self, document_id: str) -> Document:
        return self.repository.get(document_id)

    def require_completed(self, document_id: str) -> Document:
        doc = self.repository.get(document_id)
        if doc.status != DocumentStatus.COMPLETED:
            raise ConflictError(f"Document {document_id} is {doc.status.value}, not completed")
        return doc

    def get_data(self, document_id: str) -> Dict[str, Any]:
        doc = self.require_completed(document_id)
        return {
            "id": doc.id,
            "documentType": doc.document_type.value,
            "extractedFields": doc.extracted_fields,
            "correctedFields": doc.corrected_fields,
            "fields": doc.effective_fields,
            "confidence": doc.confidence,
            "validationErrors": doc.validation_errors,
            "ocrText": doc.raw_text,
            "isCorrected": doc.corrected_fields is not None,
        }

    def submit_correction(
        self, document_id: str, corrected_fields: Dict[str, Any], notes: Optional[str] = None
    ) -> Document:
        if not isinstance(corrected_fields, dict) or not corrected_fields:
            raise ValidationError("correctedFields must be a non-empty object")
        doc = self.repository.save_corrections(document_id, corrected_fields, notes)
        logger.info("document %s corrected (%d fields)", document_id, len(corrected_fields))
        return doc

    def load_bytes(self, document_id: str) -> bytes:
        doc = self.repository.get(document_id)
        return self.storage.get_bytes(uri=doc.input_uri or "")

    async def wait_for_completion(
        self,
        document_id: str,
        *,
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> Document:
        """
        Polls once, then re-polls up to `max_attempts` times `interval_s` apart.

        Cancelling the awaiting task (or wrapping it in asyncio.wait_for) stops
        the wait only; extraction keeps running in the worker.
        """
        attempts = 0
        while True:
            doc = self.poll_status(document_id)
            if doc.status == DocumentStatus.COMPLETED:
                return doc
            if doc.status == DocumentStatus.FAILED:
                raise ProcessingFailedError(doc.error_message or "Document processing failed")
            if attempts >= max_attempts:
                raise ProcessingTimeoutError(
                    f"Document {document_id} still {doc.status.value} after {attempts + 1} polls"
                )
            attempts += 1
            await sleep(interval_s)
