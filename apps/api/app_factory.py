# apps/api/app_factory.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

from apps.api.documents import create_documents_router
from apps.api.verifications import create_verifications_router
from apps.api.verifier import create_verifier_router
from services.errors import DocVerifyError
from services.ingestion.orchestrator import DocumentOrchestrator
from services.matching.documents import DocumentMatcher
from services.verification.engine import VerificationEngine
from services.verification.review_queue import ReviewQueue
from services.verification.store import VerificationStore

logger = logging.getLogger(__name__)


def create_app(
    *,
    orchestrator: DocumentOrchestrator,
    matcher: DocumentMatcher,
    engine: VerificationEngine,
    store: VerificationStore,
    review_queue: ReviewQueue,
) -> FastAPI:
    app = FastAPI(title="Document Verification API")

    @app.exception_handler(DocVerifyError)
    async def docverify_error_handler(request: Request, exc: DocVerifyError):
        if exc.status_code >= 500:
            logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})

    @app.get("/")
    async def root():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    app.include_router(create_documents_router(orchestrator=orchestrator, matcher=matcher))
    app.include_router(create_verifications_router(engine=engine, store=store))
    app.include_router(create_verifier_router(review_queue=review_queue))
    return app
