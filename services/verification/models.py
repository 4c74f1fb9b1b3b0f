# services/verification/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from services.errors import ValidationError
from services.ingestion.documents import utc_now


def new_id() -> str:
    return str(uuid4())


class VerificationType(str, Enum):
    DIGITAL = "DIGITAL"
    PORTAL = "PORTAL"
    FORENSIC = "FORENSIC"
    COMBINED = "COMBINED"

    @classmethod
    def parse(cls, v: Any) -> "VerificationType":
        if isinstance(v, cls):
            return v
        try:
            return cls(str(v).strip().upper())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(f"Unknown verification type '{v}'. Allowed: {allowed}") from None


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_active(self) -> bool:
        return self in (VerificationStatus.PENDING, VerificationStatus.IN_PROGRESS)


class VerificationResult(str, Enum):
    VERIFIED = "VERIFIED"
    UNVERIFIED = "UNVERIFIED"
    PENDING = "PENDING"
    REQUIRES_MANUAL_REVIEW = "REQUIRES_MANUAL_REVIEW"


class StepType(str, Enum):
    SIGNATURE_QR_CHECK = "SIGNATURE_QR_CHECK"
    REGISTRY_LOOKUP = "REGISTRY_LOOKUP"
    RISK_ANALYSIS = "RISK_ANALYSIS"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class CertificateStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    UNVERIFIED = "UNVERIFIED"
    UNDER_REVIEW = "UNDER_REVIEW"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class ReviewPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def rank(self) -> int:
        """0 is served first."""
        return _PRIORITY_ORDER.index(self)


_PRIORITY_ORDER = (ReviewPriority.URGENT, ReviewPriority.HIGH, ReviewPriority.MEDIUM, ReviewPriority.LOW)


class ReviewDecision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    NEEDS_MORE_INFO = "NEEDS_MORE_INFO"

    @classmethod
    def parse(cls, v: Any) -> "ReviewDecision":
        if isinstance(v, cls):
            return v
        try:
            return cls(str(v).strip().upper())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(f"Unknown review decision '{v}'. Allowed: {allowed}") from None


STEP_PLANS: Dict[VerificationType, Tuple[StepType, ...]] = {
    VerificationType.DIGITAL: (StepType.SIGNATURE_QR_CHECK,),
    VerificationType.PORTAL: (StepType.REGISTRY_LOOKUP,),
    VerificationType.FORENSIC: (StepType.RISK_ANALYSIS,),
    VerificationType.COMBINED: (StepType.SIGNATURE_QR_CHECK, StepType.REGISTRY_LOOKUP, StepType.RISK_ANALYSIS),
}


# certificate_data keys that carry a QR payload or digital signature
DIGITAL_PAYLOAD_KEYS = ("qr_code_data", "qrCodeData", "qr_code", "qrCode", "digital_signature", "digitalSignature")


@dataclass
class Certificate:
    certificate_type: str
    issuer_type: str
    certificate_data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    status: CertificateStatus = CertificateStatus.PENDING
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def digital_payload(self) -> Optional[str]:
        for key in DIGITAL_PAYLOAD_KEYS:
            v = self.certificate_data.get(key)
            if v:
                return str(v)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "certificateType": self.certificate_type,
            "issuerType": self.issuer_type,
            "certificateData": self.certificate_data,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def _duration_ms(started_at: Optional[str], completed_at: Optional[str]) -> Optional[int]:
    if not started_at or not completed_at:
        return None
    delta = datetime.fromisoformat(completed_at) - datetime.fromisoformat(started_at)
    return int(delta.total_seconds() * 1000)


@dataclass
class VerificationStep:
    step_type: StepType
    step_order: int
    status: StepStatus = StepStatus.PENDING
    result: Optional[str] = None
    confidence: Optional[float] = None
    evidence: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[int]:
        return _duration_ms(self.started_at, self.completed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepType": self.step_type.value,
            "stepOrder": self.step_order,
            "status": self.status.value,
            "result": self.result,
            "confidence": self.confidence,
            "evidence": self.evidence,
            "errorMessage": self.error_message,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "durationMs": self.duration_ms,
        }


@dataclass
class Verification:
    certificate_id: str
    verification_type: VerificationType
    id: str = field(default_factory=new_id)
    status: VerificationStatus = VerificationStatus.PENDING
    result: VerificationResult = VerificationResult.PENDING
    confidence_score: float = 0.0
    steps: List[VerificationStep] = field(default_factory=list)
    evidence: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    retry_of: Optional[str] = None
    requested_by: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def step(self, step_type: StepType) -> VerificationStep:
        for s in self.steps:
            if s.step_type == step_type:
                return s
        raise KeyError(step_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "certificateId": self.certificate_id,
            "verificationType": self.verification_type.value,
            "status": self.status.value,
            "result": self.result.value,
            "confidenceScore": self.confidence_score,
            "steps": [s.to_dict() for s in sorted(self.steps, key=lambda s: s.step_order)],
            "evidence": self.evidence,
            "errorMessage": self.error_message,
            "retryOf": self.retry_of,
            "requestedBy": self.requested_by,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class ManualReview:
    verification_id: str
    certificate_id: str
    priority: ReviewPriority
    reason: str = ""
    id: str = field(default_factory=new_id)
    status: ReviewStatus = ReviewStatus.PENDING
    assigned_to: Optional[str] = None
    decision: Optional[ReviewDecision] = None
    comments: Optional[str] = None
    confidence_score: Optional[float] = None
    assigned_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    # tiebreak for reviews created within the same clock tick
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "verificationId": self.verification_id,
            "certificateId": self.certificate_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "reason": self.reason,
            "assignedTo": self.assigned_to,
            "decision": self.decision.value if self.decision else None,
            "comments": self.comments,
            "confidenceScore": self.confidence_score,
            "assignedAt": self.assigned_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "createdAt": self.created_at,
        }
