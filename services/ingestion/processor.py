# services/ingestion/processor.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from services.errors import DocVerifyError
from services.extraction.gateway_client import ExtractionOutput, Extractor
from services.extraction.normalize import normalize_fields
from services.ingestion.documents import Document, DocumentRepository, DocumentStatus
from services.ingestion.storage import LocalStorage
from services.validation.schema_validation import validate_with_schema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfidenceWeights:
    ocr: float = 0.3
    extraction: float = 0.5
    validation: float = 0.2
    invalid_validation_score: float = 0.5


def overall_confidence(output: ExtractionOutput, is_valid: bool, weights: ConfidenceWeights = ConfidenceWeights()) -> float:
    validation_score = 1.0 if is_valid else weights.invalid_validation_score
    weighted = (
        weights.ocr * output.ocr_confidence
        + weights.extraction * output.extraction_confidence
        + weights.validation * validation_score
    )
    return round(weighted, 2)


class DocumentProcessor:
    """
    Worker-side half of ingestion: runs one extraction to a terminal state.

    Every failure ends up on the document (status=failed, error_message);
    nothing is raised back to the task runner except programming errors in
    the state machine itself.
    """

    def __init__(
        self,
        *,
        repository: DocumentRepository,
        storage: LocalStorage,
        extractor: Extractor,
        weights: ConfidenceWeights = ConfidenceWeights(),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.extractor = extractor
        self.weights = weights
        self.clock = clock

    def process(self, document_id: str) -> Document:
        doc = self.repository.get(document_id)
        if doc.status.is_terminal:
            logger.info("document %s already %s; skipping", document_id, doc.status.value)
            return doc
        if doc.status == DocumentStatus.PENDING:
            doc = self.repository.transition(document_id, DocumentStatus.PROCESSING)

        started = self.clock()
        try:
            blob = self.storage.get_bytes(uri=doc.input_uri or "")
            output = self.extractor.extract(
                blob=blob,
                document_type=doc.document_type,
                content_type=doc.content_type or "application/octet-stream",
            )
        except DocVerifyError as e:
            return self._fail(doc, e.message, started)
        except OSError as e:
            return self._fail(doc, f"Uploaded file could not be read: {e}", started)
        except Exception as e:
            logger.exception("extractor crashed on document %s", document_id)
            return self._fail(doc, f"Extraction failed: {e}", started)

        try:
            fields = normalize_fields(output.fields, doc.document_type)
            if not fields:
                return self._fail(doc, "No fields could be extracted from the document", started)
            is_valid, errors = validate_with_schema(fields, doc.document_type)
            confidence = overall_confidence(output, is_valid, self.weights)
        except Exception as e:
            logger.exception("normalization crashed on document %s", document_id)
            return self._fail(doc, f"Normalization failed: {e}", started)

        done = self.repository.transition(
            document_id,
            DocumentStatus.COMPLETED,
            extracted_fields=fields,
            confidence=confidence,
            ocr_confidence=round(output.ocr_confidence, 4),
            extraction_confidence=round(output.extraction_confidence, 4),
            validation_errors=errors,
            raw_text=output.raw_text,
            processing_time_ms=self._elapsed_ms(started),
        )
        logger.info(
            "document %s completed: %d fields, confidence=%.2f, valid=%s",
            document_id,
            len(fields),
            confidence,
            is_valid,
        )
        return done

    def _fail(self, doc: Document, reason: str, started: float) -> Document:
        logger.warning("document %s failed: %s", doc.id, reason)
        return self.repository.transition(
            doc.id,
            DocumentStatus.FAILED,
            error_message=reason[:500],
            processing_time_ms=self._elapsed_ms(started),
        )

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self.clock() - started) * 1000))
