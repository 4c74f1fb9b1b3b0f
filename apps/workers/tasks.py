from __future__ import annotations

import logging

from apps.workers.celery_app import celery_app
from apps.workers.pipeline_loader import get_processor
from services.errors import NotFoundError
from services.ingestion.orchestrator import EXTRACT_TASK_NAME

logger = logging.getLogger(__name__)


@celery_app.task(name=EXTRACT_TASK_NAME)
def extract_document(document_id: str) -> dict:
    """
    Runs extraction for one uploaded document. The processor records every
    failure on the document itself, so the task never retries; a new upload
    is the only way to re-run extraction.
    """
    try:
        doc = get_processor().process(document_id)
    except NotFoundError:
        logger.error("extract task for unknown document %s", document_id)
        return {"ok": False, "error": "not_found", "document_id": document_id}
    return {"ok": doc.status.value == "completed", "document_id": doc.id, "status": doc.status.value}
