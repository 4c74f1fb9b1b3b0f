from __future__ import annotations

import threading

import pytest

from services.errors import ConflictError, ValidationError
from services.policy import VerificationPolicy
from services.verification.models import (
    Certificate,
    CertificateStatus,
    ReviewDecision,
    ReviewPriority,
    ReviewStatus,
    StepStatus,
    StepType,
    Verification,
    VerificationResult,
    VerificationStatus,
    VerificationStep,
    VerificationType,
)
from services.verification.review_queue import ReviewQueue, priority_for
from services.verification.store import VerificationStore


def _verification(store, confidence=0.7, status=VerificationStatus.COMPLETED, steps=None):
    cert = store.add_certificate(Certificate("CLASS_10", "CBSE", {}))
    v = Verification(
        certificate_id=cert.id,
        verification_type=VerificationType.FORENSIC,
        status=status,
        result=VerificationResult.REQUIRES_MANUAL_REVIEW,
        confidence_score=confidence,
        steps=steps
        if steps is not None
        else [VerificationStep(StepType.RISK_ANALYSIS, 1, status=StepStatus.COMPLETED, confidence=confidence)],
    )
    store.create_verification_if_idle(v)
    store.project_certificate(v)
    return v


def _queue():
    store = VerificationStore()
    return ReviewQueue(store=store), store


def test_priority_rule():
    store = VerificationStore()
    policy = VerificationPolicy()
    assert priority_for(_verification(store, 0.75), policy) == ReviewPriority.LOW
    assert priority_for(_verification(store, 0.65), policy) == ReviewPriority.MEDIUM
    failed_mandatory = _verification(
        store,
        0.9,
        steps=[VerificationStep(StepType.RISK_ANALYSIS, 1, status=StepStatus.FAILED)],
    )
    # no completed step at all
    assert priority_for(failed_mandatory, policy) == ReviewPriority.URGENT
    partly_failed = _verification(
        store,
        0.9,
        steps=[
            VerificationStep(StepType.RISK_ANALYSIS, 1, status=StepStatus.FAILED),
            VerificationStep(StepType.REGISTRY_LOOKUP, 2, status=StepStatus.COMPLETED, confidence=0.9),
        ],
    )
    assert priority_for(partly_failed, policy) == ReviewPriority.HIGH
    assert priority_for(_verification(store, 0.0, status=VerificationStatus.FAILED), policy) == ReviewPriority.URGENT


def test_escalate_is_idempotent_per_verification():
    queue, store = _queue()
    v = _verification(store)
    first = queue.escalate(v, "low confidence")
    second = queue.escalate(v, "low confidence again")
    assert first.id == second.id
    assert queue.list()[1] == 1


def test_list_orders_by_priority_then_age():
    queue, store = _queue()
    low_old = queue.escalate(_verification(store, 0.75), "a")
    medium = queue.escalate(_verification(store, 0.65), "b")
    urgent = queue.escalate(_verification(store, 0.0, status=VerificationStatus.FAILED), "c")
    low_new = queue.escalate(_verification(store, 0.78), "d")

    items, total = queue.list()
    assert [r.id for r in items] == [urgent.id, medium.id, low_old.id, low_new.id]
    assert total == 4

    page2, total = queue.list(page=2, limit=3)
    assert [r.id for r in page2] == [low_new.id]
    assert total == 4

    only_low, _ = queue.list(priority=ReviewPriority.LOW)
    assert [r.id for r in only_low] == [low_old.id, low_new.id]

    with pytest.raises(ValidationError):
        queue.list(page=0)


def test_concurrent_assign_has_exactly_one_winner():
    queue, store = _queue()
    review = queue.escalate(_verification(store), "x")

    barrier = threading.Barrier(2)
    outcomes = {}

    def attempt(verifier):
        barrier.wait()
        try:
            queue.assign(review.id, verifier)
            outcomes[verifier] = "ok"
        except ConflictError:
            outcomes[verifier] = "conflict"

    threads = [threading.Thread(target=attempt, args=(name,)) for name in ("verifier-a", "verifier-b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes.values()) == ["conflict", "ok"]
    winner = next(name for name, o in outcomes.items() if o == "ok")
    stored = queue.get(review.id)
    assert stored.assigned_to == winner
    assert stored.status == ReviewStatus.ASSIGNED


def test_approve_writes_back_verified():
    queue, store = _queue()
    v = _verification(store)
    review = queue.escalate(v, "x")
    queue.assign(review.id, "verifier-a")
    queue.start_review(review.id, "verifier-a")

    done = queue.submit_decision(review.id, "verifier-a", ReviewDecision.APPROVED, "looks fine", confidence_override=0.92)

    assert done.status == ReviewStatus.COMPLETED
    assert done.decision == ReviewDecision.APPROVED
    assert done.confidence_score == 0.92
    after = store.get_verification(v.id)
    assert after.result == VerificationResult.VERIFIED
    assert after.confidence_score == 0.92
    assert after.evidence["manual_reviews"][0]["verifier_id"] == "verifier-a"
    assert store.get_certificate(v.certificate_id).status == CertificateStatus.VERIFIED


def test_reject_writes_back_unverified():
    queue, store = _queue()
    v = _verification(store)
    review = queue.escalate(v, "x")
    queue.assign(review.id, "verifier-a")
    queue.submit_decision(review.id, "verifier-a", ReviewDecision.REJECTED, "forged seal")
    assert store.get_verification(v.id).result == VerificationResult.UNVERIFIED
    assert store.get_certificate(v.certificate_id).status == CertificateStatus.UNVERIFIED


def test_needs_more_info_reopens_the_review():
    queue, store = _queue()
    v = _verification(store)
    review = queue.escalate(v, "x")
    queue.assign(review.id, "verifier-a")

    done = queue.submit_decision(review.id, "verifier-a", "NEEDS_MORE_INFO", "ask for original")

    assert done.status == ReviewStatus.COMPLETED
    assert store.get_verification(v.id).result == VerificationResult.REQUIRES_MANUAL_REVIEW
    pending, total = queue.list(status=ReviewStatus.PENDING)
    assert total == 1
    assert pending[0].verification_id == v.id
    assert pending[0].id != review.id
    # still only one active review for the verification
    assert queue.escalate(v, "again").id == pending[0].id


def test_decisions_need_the_assignee_and_an_open_review():
    queue, store = _queue()
    review = queue.escalate(_verification(store), "x")

    with pytest.raises(ConflictError):
        queue.submit_decision(review.id, "verifier-a", ReviewDecision.APPROVED)

    queue.assign(review.id, "verifier-a")
    with pytest.raises(ConflictError):
        queue.start_review(review.id, "verifier-b")
    with pytest.raises(ConflictError):
        queue.submit_decision(review.id, "verifier-b", ReviewDecision.APPROVED)
    with pytest.raises(ValidationError):
        queue.submit_decision(review.id, "verifier-a", ReviewDecision.APPROVED, confidence_override=1.5)

    queue.submit_decision(review.id, "verifier-a", ReviewDecision.APPROVED)
    with pytest.raises(ConflictError):
        queue.submit_decision(review.id, "verifier-a", ReviewDecision.REJECTED)


def test_next_review_takes_the_head_of_the_queue():
    queue, store = _queue()
    queue.escalate(_verification(store, 0.75), "low")
    urgent = queue.escalate(_verification(store, 0.0, status=VerificationStatus.FAILED), "urgent")

    got = queue.next_review("verifier-a")
    assert got.id == urgent.id
    assert got.assigned_to == "verifier-a"

    queue.next_review("verifier-b")
    assert queue.next_review("verifier-c") is None


def test_unknown_decision_is_a_validation_error():
    queue, store = _queue()
    review = queue.escalate(_verification(store), "x")
    queue.assign(review.id, "verifier-a")

    with pytest.raises(ValidationError):
        queue.submit_decision(review.id, "verifier-a", "MAYBE")
    assert queue.get(review.id).status == ReviewStatus.ASSIGNED

    done = queue.submit_decision(review.id, "verifier-a", "approved")
    assert done.decision == ReviewDecision.APPROVED


def test_failed_write_back_leaves_review_and_verification_untouched():
    queue, store = _queue()
    v = _verification(store)
    review = queue.escalate(v, "x")
    queue.assign(review.id, "verifier-a")

    def decide(r):
        r.status = ReviewStatus.COMPLETED
        r.decision = ReviewDecision.APPROVED

    def broken_apply(verification, r):
        verification.result = VerificationResult.VERIFIED
        raise RuntimeError("write-back failed")

    with pytest.raises(RuntimeError):
        store.commit_decision(review.id, decide, broken_apply, reopen=True)

    assert queue.get(review.id).status == ReviewStatus.ASSIGNED
    assert queue.get(review.id).decision is None
    assert store.get_verification(v.id).result == VerificationResult.REQUIRES_MANUAL_REVIEW
    assert store.get_certificate(v.certificate_id).status == CertificateStatus.UNDER_REVIEW
    assert queue.list()[1] == 1

    # the review is still open, so the verifier can decide again
    queue.submit_decision(review.id, "verifier-a", ReviewDecision.APPROVED)
    assert store.get_verification(v.id).result == VerificationResult.VERIFIED
