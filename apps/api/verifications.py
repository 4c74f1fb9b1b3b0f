from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from services.verification.engine import VerificationEngine
from services.verification.models import (
    Certificate,
    Verification,
    VerificationResult,
    VerificationStatus,
    VerificationType,
)
from services.verification.store import VerificationStore


class CertificateBody(BaseModel):
    certificate_type: str = Field(validation_alias=AliasChoices("certificateType", "certificate_type"))
    issuer_type: str = Field(validation_alias=AliasChoices("issuerType", "issuer_type"))
    certificate_data: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("certificateData", "certificate_data")
    )


class VerificationBody(BaseModel):
    certificate_id: str = Field(validation_alias=AliasChoices("certificateId", "certificate_id"))
    verification_type: str = Field(validation_alias=AliasChoices("verificationType", "verification_type"))
    requested_by: Optional[str] = Field(default=None, validation_alias=AliasChoices("requestedBy", "requested_by"))


class RetryBody(BaseModel):
    requested_by: Optional[str] = Field(default=None, validation_alias=AliasChoices("requestedBy", "requested_by"))


def create_verifications_router(*, engine: VerificationEngine, store: VerificationStore) -> APIRouter:
    router = APIRouter()

    async def _respond(verification: Verification, wait: bool) -> JSONResponse:
        if wait:
            verification = await engine.join(verification.id)
            return JSONResponse(status_code=200, content=verification.to_dict())
        return JSONResponse(status_code=202, content=verification.to_dict())

    @router.post("/certificates")
    def create_certificate(body: CertificateBody):
        cert = store.add_certificate(
            Certificate(
                certificate_type=body.certificate_type,
                issuer_type=body.issuer_type,
                certificate_data=body.certificate_data,
            )
        )
        return JSONResponse(status_code=201, content=cert.to_dict())

    @router.get("/certificates/{certificate_id}")
    def get_certificate(certificate_id: str):
        cert = store.get_certificate(certificate_id)
        return {
            **cert.to_dict(),
            "verifications": [v.to_dict() for v in store.verifications_for(certificate_id)],
        }

    @router.post("/verifications")
    async def start_verification(body: VerificationBody, wait: bool = Query(False)):
        verification = await engine.start(
            body.certificate_id,
            body.verification_type,
            requested_by=body.requested_by,
        )
        return await _respond(verification, wait)

    @router.get("/verifications")
    def list_verifications(
        certificate_id: Optional[str] = Query(None, alias="certificateId"),
        status: Optional[VerificationStatus] = Query(None),
        result: Optional[VerificationResult] = Query(None),
        verification_type: Optional[VerificationType] = Query(None, alias="verificationType"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
    ):
        items, total = engine.list(
            certificate_id=certificate_id,
            status=status,
            result=result,
            verification_type=verification_type,
            page=page,
            limit=limit,
        )
        return {
            "verifications": [v.to_dict() for v in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
            },
        }

    @router.get("/verifications/{verification_id}")
    def get_verification(verification_id: str):
        return engine.get(verification_id).to_dict()

    @router.get("/verifications/{verification_id}/steps")
    def get_verification_steps(verification_id: str):
        return engine.get(verification_id).to_dict()["steps"]

    @router.post("/verifications/{verification_id}/retry")
    async def retry_verification(verification_id: str, body: Optional[RetryBody] = None, wait: bool = Query(False)):
        verification = await engine.retry(verification_id, requested_by=body.requested_by if body else None)
        return await _respond(verification, wait)

    return router
