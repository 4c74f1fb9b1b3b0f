# services/verification/store.py
from __future__ import annotations

import copy
import itertools
import threading
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from services.errors import ConflictError, NotFoundError
from services.ingestion.documents import utc_now
from services.verification.models import (
    Certificate,
    CertificateStatus,
    ManualReview,
    ReviewStatus,
    Verification,
    VerificationResult,
)

T = TypeVar("T")

_CERTIFICATE_STATUS = {
    VerificationResult.PENDING: CertificateStatus.PENDING,
    VerificationResult.VERIFIED: CertificateStatus.VERIFIED,
    VerificationResult.UNVERIFIED: CertificateStatus.UNVERIFIED,
    VerificationResult.REQUIRES_MANUAL_REVIEW: CertificateStatus.UNDER_REVIEW,
}


def certificate_status_for(result: VerificationResult) -> CertificateStatus:
    return _CERTIFICATE_STATUS[result]


class VerificationStore:
    """
    In-process state for certificates, verifications and manual reviews.

    Objects are copied on the way in and out, so callers work on snapshots
    and every change goes through one of the methods below. Each method holds
    the lock for its whole check-then-write, which is what makes
    `create_verification_if_idle` and `assign_review` atomic.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._certificates: Dict[str, Certificate] = {}
        self._verifications: Dict[str, Verification] = {}
        # certificate id -> verification ids, oldest first
        self._history: Dict[str, List[str]] = {}
        self._reviews: Dict[str, ManualReview] = {}
        self._seq = itertools.count(1)

    # --- certificates -------------------------------------------------------------------

    def add_certificate(self, certificate: Certificate) -> Certificate:
        with self._lock:
            if certificate.id in self._certificates:
                raise ConflictError(f"Certificate {certificate.id} already exists")
            self._certificates[certificate.id] = copy.deepcopy(certificate)
        return certificate

    def get_certificate(self, certificate_id: str) -> Certificate:
        with self._lock:
            cert = self._certificates.get(certificate_id)
            if cert is None:
                raise NotFoundError(f"Certificate {certificate_id} not found")
            return copy.deepcopy(cert)

    def project_certificate(self, verification: Verification) -> Optional[Certificate]:
        """Mirror `verification.result` onto its certificate, if it is the certificate's latest attempt."""
        with self._lock:
            cert = self._project(verification)
            return copy.deepcopy(cert) if cert is not None else None

    def _project(self, verification: Verification) -> Optional[Certificate]:
        history = self._history.get(verification.certificate_id) or []
        if not history or history[-1] != verification.id:
            return None
        cert = self._certificates[verification.certificate_id]
        cert.status = certificate_status_for(verification.result)
        cert.updated_at = utc_now()
        return cert

    # --- verifications ------------------------------------------------------------------

    def create_verification_if_idle(self, verification: Verification) -> Verification:
        with self._lock:
            if verification.certificate_id not in self._certificates:
                raise NotFoundError(f"Certificate {verification.certificate_id} not found")
            for vid in self._history.get(verification.certificate_id, []):
                other = self._verifications[vid]
                if other.status.is_active:
                    raise ConflictError(
                        f"Certificate {verification.certificate_id} already has verification {vid} "
                        f"{other.status.value}"
                    )
            self._verifications[verification.id] = copy.deepcopy(verification)
            self._history.setdefault(verification.certificate_id, []).append(verification.id)
        return verification

    def get_verification(self, verification_id: str) -> Verification:
        with self._lock:
            v = self._verifications.get(verification_id)
            if v is None:
                raise NotFoundError(f"Verification {verification_id} not found")
            return copy.deepcopy(v)

    def save_verification(self, verification: Verification) -> Verification:
        with self._lock:
            if verification.id not in self._verifications:
                raise NotFoundError(f"Verification {verification.id} not found")
            verification.updated_at = utc_now()
            self._verifications[verification.id] = copy.deepcopy(verification)
        return verification

    def update_verification(self, verification_id: str, mutate: Callable[[Verification], T]) -> Verification:
        """Apply `mutate` to a copy and commit it only if `mutate` does not raise."""
        with self._lock:
            current = self._verifications.get(verification_id)
            if current is None:
                raise NotFoundError(f"Verification {verification_id} not found")
            draft = copy.deepcopy(current)
            mutate(draft)
            draft.updated_at = utc_now()
            self._verifications[verification_id] = draft
            return copy.deepcopy(draft)

    def verifications_for(self, certificate_id: str) -> List[Verification]:
        with self._lock:
            return [copy.deepcopy(self._verifications[vid]) for vid in self._history.get(certificate_id, [])]

    def verifications(self) -> List[Verification]:
        """Every verification, oldest first."""
        with self._lock:
            return [copy.deepcopy(v) for v in self._verifications.values()]

    # --- manual reviews -----------------------------------------------------------------

    def _active_review_for(self, verification_id: str) -> Optional[ManualReview]:
        for r in self._reviews.values():
            if r.verification_id == verification_id and r.status != ReviewStatus.COMPLETED:
                return r
        return None

    def create_review_if_absent(self, review: ManualReview) -> ManualReview:
        """Returns the already-active review for the verification instead of adding a second one."""
        with self._lock:
            existing = self._active_review_for(review.verification_id)
            if existing is not None:
                return copy.deepcopy(existing)
            review.seq = next(self._seq)
            self._reviews[review.id] = copy.deepcopy(review)
            return copy.deepcopy(review)

    def get_review(self, review_id: str) -> ManualReview:
        with self._lock:
            r = self._reviews.get(review_id)
            if r is None:
                raise NotFoundError(f"Review {review_id} not found")
            return copy.deepcopy(r)

    def reviews(self) -> List[ManualReview]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._reviews.values()]

    def assign_review(self, review_id: str, verifier_id: str) -> ManualReview:
        """Compare-and-set on `assigned_to`: only an unassigned PENDING review can be taken."""
        with self._lock:
            r = self._reviews.get(review_id)
            if r is None:
                raise NotFoundError(f"Review {review_id} not found")
            if r.assigned_to is not None or r.status != ReviewStatus.PENDING:
                raise ConflictError(f"Review {review_id} is already {r.status.value} (assigned to {r.assigned_to})")
            r.assigned_to = verifier_id
            r.status = ReviewStatus.ASSIGNED
            r.assigned_at = utc_now()
            return copy.deepcopy(r)

    def update_review(self, review_id: str, mutate: Callable[[ManualReview], T]) -> ManualReview:
        with self._lock:
            current = self._reviews.get(review_id)
            if current is None:
                raise NotFoundError(f"Review {review_id} not found")
            draft = copy.deepcopy(current)
            mutate(draft)
            self._reviews[review_id] = draft
            return copy.deepcopy(draft)

    def commit_decision(
        self,
        review_id: str,
        decide: Callable[[ManualReview], T],
        apply: Callable[[Verification, ManualReview], T],
        *,
        reopen: bool = False,
    ) -> Tuple[ManualReview, Optional[ManualReview]]:
        """
        Close a review and write its outcome back in one step: the review,
        its verification, the certificate status and (with `reopen`) a fresh
        PENDING review for the same verification are committed together or
        not at all. Returns (decided review, reopened review or None).
        """
        with self._lock:
            current = self._reviews.get(review_id)
            if current is None:
                raise NotFoundError(f"Review {review_id} not found")
            review = copy.deepcopy(current)
            decide(review)
            if review.status != ReviewStatus.COMPLETED:
                raise ValueError("a decided review must end COMPLETED")

            stored = self._verifications.get(review.verification_id)
            if stored is None:
                raise NotFoundError(f"Verification {review.verification_id} not found")
            verification = copy.deepcopy(stored)
            apply(verification, review)
            verification.updated_at = utc_now()

            reopened = None
            if reopen:
                reopened = ManualReview(
                    verification_id=current.verification_id,
                    certificate_id=current.certificate_id,
                    priority=current.priority,
                    reason=current.reason,
                    seq=next(self._seq),
                )

            self._reviews[review_id] = review
            self._verifications[verification.id] = verification
            if reopened is not None:
                self._reviews[reopened.id] = reopened
            self._project(verification)
            return copy.deepcopy(review), copy.deepcopy(reopened)
