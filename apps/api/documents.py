from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, File, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field
from starlette.concurrency import run_in_threadpool

from services.ingestion.documents import Document
from services.ingestion.orchestrator import DEFAULT_POLL_MAX_ATTEMPTS, DocumentOrchestrator
from services.matching.documents import DocumentMatcher


class CorrectionBody(BaseModel):
    corrected_fields: Dict[str, Any] = Field(validation_alias=AliasChoices("correctedFields", "corrected_fields"))
    notes: Optional[str] = None


class PanAadhaarBody(BaseModel):
    pan_id: str = Field(validation_alias=AliasChoices("panId", "pan_id"))
    aadhaar_id: str = Field(validation_alias=AliasChoices("aadhaarId", "aadhaar_id"))


class DocumentPairBody(BaseModel):
    document1: str = Field(validation_alias=AliasChoices("document1", "documentId1"))
    document2: str = Field(validation_alias=AliasChoices("document2", "documentId2"))


def document_status(doc: Document) -> Dict[str, Any]:
    return {
        "id": doc.id,
        "documentType": doc.document_type.value,
        "status": doc.status.value,
        "originalFilename": doc.original_filename,
        "confidence": doc.confidence,
        "errorMessage": doc.error_message,
        "processingTimeMs": doc.processing_time_ms,
        "createdAt": doc.created_at,
        "updatedAt": doc.updated_at,
    }


def create_documents_router(*, orchestrator: DocumentOrchestrator, matcher: DocumentMatcher) -> APIRouter:
    router = APIRouter(prefix="/document-processing")

    @router.post("/{document_type}/upload")
    async def upload_document(document_type: str, document: UploadFile = File(...)):
        blob = await document.read()
        doc = await run_in_threadpool(
            orchestrator.upload,
            blob=blob,
            filename=document.filename,
            content_type=document.content_type,
            document_type=document_type,
        )
        return JSONResponse(status_code=202, content={"id": doc.id, "status": doc.status.value})

    @router.get("/{document_id}")
    async def get_status(
        document_id: str,
        wait: bool = Query(False),
        max_attempts: int = Query(DEFAULT_POLL_MAX_ATTEMPTS, ge=0, le=DEFAULT_POLL_MAX_ATTEMPTS),
    ):
        if wait:
            doc = await orchestrator.wait_for_completion(document_id, max_attempts=max_attempts)
        else:
            doc = orchestrator.poll_status(document_id)
        return document_status(doc)

    @router.get("/{document_id}/data")
    def get_data(document_id: str):
        return orchestrator.get_data(document_id)

    @router.post("/{document_id}/corrections")
    def submit_corrections(document_id: str, body: CorrectionBody):
        doc = orchestrator.submit_correction(document_id, body.corrected_fields, body.notes)
        return {"id": doc.id, "corrected": True, "correctedAt": doc.corrected_at}

    @router.post("/match/pan-aadhaar")
    def match_pan_aadhaar(body: PanAadhaarBody):
        return matcher.match_pan_aadhaar(body.pan_id, body.aadhaar_id).to_dict()

    @router.post("/match/documents")
    def match_documents(body: DocumentPairBody):
        return matcher.match_documents(body.document1, body.document2).to_dict()

    @router.post("/match/signatures")
    def match_signatures(body: DocumentPairBody):
        return matcher.match_signatures(body.document1, body.document2).to_dict()

    return router
