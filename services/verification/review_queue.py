# services/verification/review_queue.py
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from services.errors import ConflictError, ValidationError
from services.ingestion.documents import utc_now
from services.policy import VerificationPolicy
from services.verification.models import (
    ManualReview,
    ReviewDecision,
    ReviewPriority,
    ReviewStatus,
    StepStatus,
    Verification,
    VerificationResult,
    VerificationStatus,
)
from services.verification.store import VerificationStore

logger = logging.getLogger(__name__)

_DECISION_RESULT = {
    ReviewDecision.APPROVED: VerificationResult.VERIFIED,
    ReviewDecision.REJECTED: VerificationResult.UNVERIFIED,
    ReviewDecision.NEEDS_MORE_INFO: VerificationResult.REQUIRES_MANUAL_REVIEW,
}


def priority_for(verification: Verification, policy: VerificationPolicy) -> ReviewPriority:
    """
    URGENT  nothing completed, or the pipeline itself failed
    HIGH    a mandatory step failed
    MEDIUM  confidence below the middle of the review band
    LOW     everything else
    """
    completed = [s for s in verification.steps if s.status == StepStatus.COMPLETED]
    if verification.status == VerificationStatus.FAILED or not completed:
        return ReviewPriority.URGENT
    mandatory = policy.mandatory_for(verification.verification_type.value)
    if any(s.status == StepStatus.FAILED and s.step_type.value in mandatory for s in verification.steps):
        return ReviewPriority.HIGH
    if verification.confidence_score < policy.review_midpoint:
        return ReviewPriority.MEDIUM
    return ReviewPriority.LOW


def _sort_key(r: ManualReview):
    return (r.priority.rank, r.created_at, r.seq)


class ReviewQueue:
    def __init__(self, *, store: VerificationStore, policy: VerificationPolicy = VerificationPolicy()) -> None:
        self.store = store
        self.policy = policy

    def escalate(self, verification: Verification, reason: str) -> ManualReview:
        review = self.store.create_review_if_absent(
            ManualReview(
                verification_id=verification.id,
                certificate_id=verification.certificate_id,
                priority=priority_for(verification, self.policy),
                reason=reason,
            )
        )
        logger.info(
            "verification %s escalated: review %s (%s) %s",
            verification.id,
            review.id,
            review.priority.value,
            reason,
        )
        return review

    def get(self, review_id: str) -> ManualReview:
        return self.store.get_review(review_id)

    def list(
        self,
        *,
        status: Optional[ReviewStatus] = None,
        priority: Optional[ReviewPriority] = None,
        assigned_to: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[ManualReview], int]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        items = [
            r
            for r in self.store.reviews()
            if (status is None or r.status == status)
            and (priority is None or r.priority == priority)
            and (assigned_to is None or r.assigned_to == assigned_to)
        ]
        items.sort(key=_sort_key)
        start = (page - 1) * limit
        return items[start : start + limit], len(items)

    def assign(self, review_id: str, verifier_id: str) -> ManualReview:
        if not verifier_id:
            raise ValidationError("verifier id is required")
        review = self.store.assign_review(review_id, verifier_id)
        logger.info("review %s assigned to %s", review_id, verifier_id)
        return review

    def next_review(self, verifier_id: str) -> Optional[ManualReview]:
        """Assign the head of the pending queue to `verifier_id`; None when the queue is empty."""
        pending, _ = self.list(status=ReviewStatus.PENDING, limit=10**6)
        for candidate in pending:
            try:
                return self.assign(candidate.id, verifier_id)
            except ConflictError:
                # someone else took it between the read and the CAS
                continue
        return None

    def start_review(self, review_id: str, verifier_id: str) -> ManualReview:
        def mutate(r: ManualReview) -> None:
            if r.status != ReviewStatus.ASSIGNED:
                raise ConflictError(f"Review {review_id} is {r.status.value}, not ASSIGNED")
            if r.assigned_to != verifier_id:
                raise ConflictError(f"Review {review_id} is assigned to someone else")
            r.status = ReviewStatus.IN_PROGRESS
            r.started_at = utc_now()

        return self.store.update_review(review_id, mutate)

    def submit_decision(
        self,
        review_id: str,
        verifier_id: str,
        decision: ReviewDecision,
        comments: Optional[str] = None,
        confidence_override: Optional[float] = None,
    ) -> ManualReview:
        decision = ReviewDecision.parse(decision)
        if confidence_override is not None and not (0.0 <= confidence_override <= 1.0):
            raise ValidationError("confidence override must be within [0, 1]")

        def mutate(r: ManualReview) -> None:
            if r.status not in (ReviewStatus.ASSIGNED, ReviewStatus.IN_PROGRESS):
                raise ConflictError(f"Review {review_id} is {r.status.value}; only assigned reviews take decisions")
            if r.assigned_to != verifier_id:
                raise ConflictError(f"Review {review_id} is assigned to someone else")
            now = utc_now()
            r.status = ReviewStatus.COMPLETED
            r.decision = decision
            r.comments = comments
            r.confidence_score = confidence_override
            r.started_at = r.started_at or now
            r.completed_at = now

        review, reopened = self.store.commit_decision(
            review_id,
            mutate,
            _apply_decision,
            reopen=decision == ReviewDecision.NEEDS_MORE_INFO,
        )
        logger.info("review %s decided %s by %s", review_id, decision.value, verifier_id)
        if reopened is not None:
            logger.info("review %s needs more info; reopened as %s", review_id, reopened.id)
        return review


def _apply_decision(verification: Verification, review: ManualReview) -> None:
    verification.result = _DECISION_RESULT[review.decision]
    if review.confidence_score is not None:
        verification.confidence_score = review.confidence_score
    verification.evidence.setdefault("manual_reviews", []).append(
        {
            "review_id": review.id,
            "decision": review.decision.value,
            "verifier_id": review.assigned_to,
            "comments": review.comments,
            "decided_at": review.completed_at,
        }
    )
