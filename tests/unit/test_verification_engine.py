from __future__ import annotations

import asyncio
import threading
import time

import pytest

from services.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from services.policy import VerificationPolicy
from services.verification.collectors import StepOutcome
from services.verification.engine import VerificationEngine, aggregate
from services.verification.models import (
    Certificate,
    CertificateStatus,
    ReviewPriority,
    StepStatus,
    StepType,
    VerificationResult,
    VerificationStatus,
    VerificationStep,
    VerificationType,
)
from services.verification.review_queue import ReviewQueue
from services.verification.store import VerificationStore


class FakeCollector:
    def __init__(self, confidence=0.9, result="PASSED", error=None, record=None, delay_s=0.0, barrier=None, gate=None):
        self.confidence = confidence
        self.result = result
        self.error = error
        self.record = record
        self.delay_s = delay_s
        self.barrier = barrier
        self.gate = gate
        self.calls = 0

    def collect(self, certificate):
        self.calls += 1
        if self.barrier is not None:
            self.barrier.wait()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return StepOutcome(result=self.result, confidence=self.confidence, evidence={"checked": certificate.id}, record=self.record)


CERT_DATA = {
    "roll_number": "1234567",
    "student_name": "Asha Rao",
    "date_of_birth": "01/01/2005",
    "qr_code_data": "QR:1234567",
}


def _engine(collectors, step_timeout_s=5.0, policy=VerificationPolicy()):
    store = VerificationStore()
    queue = ReviewQueue(store=store, policy=policy)
    engine = VerificationEngine(
        store=store,
        collectors=collectors,
        review_queue=queue,
        policy=policy,
        step_timeout_s=step_timeout_s,
    )
    return engine, store, queue


def _certificate(store, data=None):
    return store.add_certificate(Certificate("CLASS_12", "CBSE", dict(CERT_DATA if data is None else data)))


def _run(engine, certificate_id, vtype):
    async def go():
        v = await engine.start(certificate_id, vtype)
        return await engine.join(v.id)

    return asyncio.run(go())


def _step(step_type, status, confidence=None):
    return VerificationStep(step_type=step_type, step_order=1, status=status, confidence=confidence)


def test_failed_mandatory_step_overrides_high_average():
    steps = [
        _step(StepType.SIGNATURE_QR_CHECK, StepStatus.COMPLETED, 0.95),
        _step(StepType.REGISTRY_LOOKUP, StepStatus.FAILED),
        _step(StepType.RISK_ANALYSIS, StepStatus.COMPLETED, 0.95),
    ]
    score, result = aggregate(steps, VerificationType.COMBINED, VerificationPolicy())
    assert score == 0.95
    assert result == VerificationResult.REQUIRES_MANUAL_REVIEW


def test_aggregate_bands_and_exclusions():
    policy = VerificationPolicy()
    done = lambda c: _step(StepType.RISK_ANALYSIS, StepStatus.COMPLETED, c)  # noqa: E731
    assert aggregate([done(0.8)], VerificationType.FORENSIC, policy) == (0.8, VerificationResult.VERIFIED)
    assert aggregate([done(0.6)], VerificationType.FORENSIC, policy) == (0.6, VerificationResult.REQUIRES_MANUAL_REVIEW)
    assert aggregate([done(0.59)], VerificationType.FORENSIC, policy) == (0.59, VerificationResult.UNVERIFIED)
    assert aggregate([], VerificationType.FORENSIC, policy) == (0.0, VerificationResult.REQUIRES_MANUAL_REVIEW)
    skipped = [_step(StepType.SIGNATURE_QR_CHECK, StepStatus.SKIPPED), done(0.9)]
    assert aggregate(skipped, VerificationType.COMBINED, policy) == (0.9, VerificationResult.VERIFIED)


def test_combined_verification_with_failed_registry_is_escalated():
    engine, store, queue = _engine(
        {
            StepType.SIGNATURE_QR_CHECK: FakeCollector(0.95),
            StepType.REGISTRY_LOOKUP: FakeCollector(error=ExternalServiceError("registry unreachable")),
            StepType.RISK_ANALYSIS: FakeCollector(0.95),
        }
    )
    cert = _certificate(store)

    v = _run(engine, cert.id, "COMBINED")

    assert v.status == VerificationStatus.COMPLETED
    assert v.result == VerificationResult.REQUIRES_MANUAL_REVIEW
    assert v.confidence_score == 0.95
    assert [s.step_type for s in v.steps] == [
        StepType.SIGNATURE_QR_CHECK,
        StepType.REGISTRY_LOOKUP,
        StepType.RISK_ANALYSIS,
    ]
    registry = v.step(StepType.REGISTRY_LOOKUP)
    assert registry.status == StepStatus.FAILED
    assert registry.error_message == "registry unreachable"
    assert v.step(StepType.RISK_ANALYSIS).status == StepStatus.COMPLETED

    reviews, total = queue.list()
    assert total == 1
    assert reviews[0].verification_id == v.id
    assert reviews[0].priority == ReviewPriority.HIGH
    assert "REGISTRY_LOOKUP" in reviews[0].reason
    assert store.get_certificate(cert.id).status == CertificateStatus.UNDER_REVIEW


def test_failed_optional_step_is_excluded_from_the_average():
    engine, store, queue = _engine(
        {
            StepType.SIGNATURE_QR_CHECK: FakeCollector(error=RuntimeError("validator crashed")),
            StepType.REGISTRY_LOOKUP: FakeCollector(0.9),
            StepType.RISK_ANALYSIS: FakeCollector(0.7),
        }
    )
    cert = _certificate(store)

    v = _run(engine, cert.id, VerificationType.COMBINED)

    assert v.confidence_score == 0.8
    assert v.result == VerificationResult.VERIFIED
    assert v.evidence["metadata"]["total_checks"] == 3
    assert v.evidence["metadata"]["passed_checks"] == 1
    assert len(v.evidence["key_findings"]) == 3
    assert queue.list()[1] == 0
    assert store.get_certificate(cert.id).status == CertificateStatus.VERIFIED


def test_steps_run_concurrently():
    barrier = threading.Barrier(3, timeout=2)
    engine, store, _ = _engine({st: FakeCollector(0.9, barrier=barrier) for st in StepType})
    cert = _certificate(store)

    v = _run(engine, cert.id, "COMBINED")

    assert all(s.status == StepStatus.COMPLETED for s in v.steps)
    assert v.result == VerificationResult.VERIFIED


def test_no_completed_step_fails_the_verification_and_escalates_urgently():
    engine, store, queue = _engine({StepType.REGISTRY_LOOKUP: FakeCollector(error=ExternalServiceError("down"))})
    cert = _certificate(store)

    v = _run(engine, cert.id, "PORTAL")

    assert v.status == VerificationStatus.FAILED
    assert v.result == VerificationResult.REQUIRES_MANUAL_REVIEW
    assert v.confidence_score == 0.0
    assert v.error_message
    reviews, _ = queue.list()
    assert reviews[0].priority == ReviewPriority.URGENT


def test_collector_timeout_is_a_step_failure():
    engine, store, _ = _engine({StepType.RISK_ANALYSIS: FakeCollector(0.9, delay_s=0.5)}, step_timeout_s=0.05)
    cert = _certificate(store)

    v = _run(engine, cert.id, "FORENSIC")

    step = v.step(StepType.RISK_ANALYSIS)
    assert step.status == StepStatus.FAILED
    assert "timed out" in step.error_message
    assert v.status == VerificationStatus.FAILED


def test_digital_step_without_qr_payload():
    data = {k: v for k, v in CERT_DATA.items() if k != "qr_code_data"}
    collectors = {st: FakeCollector(0.9) for st in StepType}

    engine, store, _ = _engine(collectors)
    cert = _certificate(store, data)
    combined = _run(engine, cert.id, "COMBINED")
    assert combined.step(StepType.SIGNATURE_QR_CHECK).status == StepStatus.SKIPPED
    assert combined.result == VerificationResult.VERIFIED
    assert combined.evidence["metadata"]["skipped_checks"] == 1

    engine, store, _ = _engine(collectors)
    cert = _certificate(store, data)
    digital = _run(engine, cert.id, "DIGITAL")
    assert digital.step(StepType.SIGNATURE_QR_CHECK).status == StepStatus.FAILED
    assert digital.result == VerificationResult.REQUIRES_MANUAL_REVIEW


def test_registry_record_is_scored_with_the_matcher():
    record = {"rollNumber": "1234567", "studentName": "ASHA RAO", "dob": "2005-01-01"}
    engine, store, _ = _engine({StepType.REGISTRY_LOOKUP: FakeCollector(confidence=None, result="FOUND", record=record)})
    cert = _certificate(store)

    v = _run(engine, cert.id, "PORTAL")

    step = v.step(StepType.REGISTRY_LOOKUP)
    assert step.confidence == 1.0
    assert step.evidence["record_match"]["matchStatus"] == "matched"
    assert v.result == VerificationResult.VERIFIED


def test_second_start_while_in_progress_conflicts():
    gate = threading.Event()
    engine, store, _ = _engine({StepType.RISK_ANALYSIS: FakeCollector(0.9, gate=gate)})
    cert = _certificate(store)

    async def go():
        first = await engine.start(cert.id, "FORENSIC")
        with pytest.raises(ConflictError):
            await engine.start(cert.id, "FORENSIC")
        gate.set()
        done = await engine.join(first.id)
        again = await engine.start(cert.id, "FORENSIC")
        await engine.join(again.id)
        return done

    done = asyncio.run(go())
    assert done.result == VerificationResult.VERIFIED
    assert len(store.verifications_for(cert.id)) == 2


def test_retry_only_after_unverified_or_failed():
    collector = FakeCollector(0.3, result="SUSPICIOUS")
    engine, store, _ = _engine({StepType.RISK_ANALYSIS: collector})
    cert = _certificate(store)

    async def go():
        first = await engine.start(cert.id, "FORENSIC")
        first = await engine.join(first.id)
        assert first.result == VerificationResult.UNVERIFIED

        collector.confidence = 0.9
        second = await engine.retry(first.id)
        second = await engine.join(second.id)

        with pytest.raises(ConflictError):
            await engine.retry(second.id)
        return first, second

    first, second = asyncio.run(go())
    assert second.retry_of == first.id
    assert second.result == VerificationResult.VERIFIED
    assert store.get_certificate(cert.id).status == CertificateStatus.VERIFIED
    assert collector.calls == 2


def test_start_validates_request():
    engine, store, _ = _engine({})
    cert = _certificate(store)

    async def go(cid, vtype):
        return await engine.start(cid, vtype)

    with pytest.raises(NotFoundError):
        asyncio.run(go("missing", "PORTAL"))
    with pytest.raises(ValidationError):
        asyncio.run(go(cert.id, "TELEPATHIC"))


def test_list_is_newest_first_and_filterable():
    engine, store, _ = _engine({StepType.RISK_ANALYSIS: FakeCollector(0.3)})
    first = _certificate(store)
    second = _certificate(store)
    a = _run(engine, first.id, VerificationType.FORENSIC)
    b = _run(engine, second.id, VerificationType.FORENSIC)

    items, total = engine.list()
    assert [v.id for v in items] == [b.id, a.id]
    assert total == 2

    items, total = engine.list(certificate_id=first.id, result=VerificationResult.UNVERIFIED)
    assert [v.id for v in items] == [a.id]
    assert engine.list(verification_type=VerificationType.PORTAL) == ([], 0)

    with pytest.raises(ValidationError):
        engine.list(limit=0)
