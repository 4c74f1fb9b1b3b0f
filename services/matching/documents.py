# services/matching/documents.py
from __future__ import annotations

import logging

from services.errors import ValidationError
from services.extraction.doc_types import DocumentType
from services.ingestion.orchestrator import DocumentOrchestrator
from services.matching.fields import MatchResult, match_fields, profile_for
from services.matching.signatures import SignatureMatchResult, compare
from services.policy import MatchPolicy, SignaturePolicy

logger = logging.getLogger(__name__)


class DocumentMatcher:
    """Looks up stored documents and feeds them to the pure matchers."""

    def __init__(
        self,
        *,
        orchestrator: DocumentOrchestrator,
        match_policy: MatchPolicy = MatchPolicy(),
        signature_policy: SignaturePolicy = SignaturePolicy(),
    ) -> None:
        self.orchestrator = orchestrator
        self.match_policy = match_policy
        self.signature_policy = signature_policy

    def match_pan_aadhaar(self, pan_id: str, aadhaar_id: str) -> MatchResult:
        pan = self.orchestrator.require_completed(pan_id)
        aadhaar = self.orchestrator.require_completed(aadhaar_id)
        if pan.document_type != DocumentType.PAN:
            raise ValidationError(f"Document {pan_id} is {pan.document_type.value}, not pan")
        if aadhaar.document_type != DocumentType.AADHAAR:
            raise ValidationError(f"Document {aadhaar_id} is {aadhaar.document_type.value}, not aadhaar")

        result = match_fields(
            pan.effective_fields or {},
            aadhaar.effective_fields or {},
            profile_for(DocumentType.PAN, DocumentType.AADHAAR, self.match_policy),
            self.match_policy,
        )
        logger.info("pan %s vs aadhaar %s: %s (%.2f)", pan_id, aadhaar_id, result.match_status, result.match_confidence)
        return result

    def match_documents(self, first_id: str, second_id: str) -> MatchResult:
        """Any supported pair; two scans of the same card type also compare their identity numbers."""
        first = self.orchestrator.require_completed(first_id)
        second = self.orchestrator.require_completed(second_id)
        profile = profile_for(first.document_type, second.document_type, self.match_policy)
        result = match_fields(
            first.effective_fields or {},
            second.effective_fields or {},
            profile,
            self.match_policy,
        )
        logger.info(
            "%s %s vs %s: %s (%.2f)", profile.name, first_id, second_id, result.match_status, result.match_confidence
        )
        return result

    def match_signatures(self, first_id: str, second_id: str) -> SignatureMatchResult:
        image1 = self.orchestrator.load_bytes(first_id)
        image2 = self.orchestrator.load_bytes(second_id)
        return compare(image1, image2, self.signature_policy)
