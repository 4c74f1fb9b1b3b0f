# services/verification/engine.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from services.errors import ConflictError, DocVerifyError, ProcessingFailedError, ValidationError
from services.ingestion.documents import utc_now
from services.matching.fields import match_fields, registry_profile
from services.policy import MatchPolicy, VerificationPolicy
from services.verification.collectors import EvidenceCollector, StepOutcome
from services.verification.models import (
    STEP_PLANS,
    Certificate,
    Verification,
    VerificationResult,
    VerificationStatus,
    VerificationStep,
    VerificationType,
    StepStatus,
    StepType,
)
from services.verification.review_queue import ReviewQueue
from services.verification.store import VerificationStore

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT_S = 30.0


def aggregate(
    steps: List[VerificationStep], verification_type: VerificationType, policy: VerificationPolicy
) -> Tuple[float, VerificationResult]:
    """
    Mean confidence over COMPLETED steps only, then the verdict.

    A failed mandatory step forces REQUIRES_MANUAL_REVIEW whatever the
    average says. No completed step at all gives 0.0 / REQUIRES_MANUAL_REVIEW.
    """
    completed = [s for s in steps if s.status == StepStatus.COMPLETED]
    if not completed:
        return 0.0, VerificationResult.REQUIRES_MANUAL_REVIEW

    score = round(sum(float(s.confidence or 0.0) for s in completed) / len(completed), 4)

    mandatory = policy.mandatory_for(verification_type.value)
    if any(s.status == StepStatus.FAILED and s.step_type.value in mandatory for s in steps):
        return score, VerificationResult.REQUIRES_MANUAL_REVIEW
    if score >= policy.verified_threshold:
        return score, VerificationResult.VERIFIED
    if score >= policy.review_threshold:
        return score, VerificationResult.REQUIRES_MANUAL_REVIEW
    return score, VerificationResult.UNVERIFIED


def _finding(step: VerificationStep) -> Optional[str]:
    if step.status == StepStatus.SKIPPED:
        return None
    label = {
        StepType.SIGNATURE_QR_CHECK: "QR code / digital signature check",
        StepType.REGISTRY_LOOKUP: "Issuing registry lookup",
        StepType.RISK_ANALYSIS: "Forensic risk analysis",
    }[step.step_type]
    if step.status == StepStatus.FAILED:
        return f"{label} could not be completed: {step.error_message}"
    return f"{label}: {step.result} (confidence {round((step.confidence or 0.0) * 100)}%)"


def build_evidence(steps: List[VerificationStep], passed_at: float) -> Dict[str, Any]:
    completed = [s for s in steps if s.status == StepStatus.COMPLETED]
    passed = [s for s in completed if (s.confidence or 0.0) >= passed_at]
    skipped = [s for s in steps if s.status == StepStatus.SKIPPED]
    checks = len(steps) - len(skipped)
    return {
        "steps": {s.step_type.value: s.evidence for s in steps if s.evidence},
        "metadata": {
            "collected_at": utc_now(),
            "total_checks": checks,
            "passed_checks": len(passed),
            "failed_checks": checks - len(passed),
            "skipped_checks": len(skipped),
        },
        "key_findings": [f for f in (_finding(s) for s in steps) if f],
    }


def _registry_view(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Certificate data and registry records use a few spellings for the same fields."""
    aliases = {
        "roll_number": ("roll_number", "rollNumber", "registration_number", "certificate_number"),
        "name": ("name", "student_name", "studentName", "candidate_name", "holder_name"),
        "date_of_birth": ("date_of_birth", "dateOfBirth", "dob"),
    }
    out: Dict[str, Any] = {}
    for canonical, keys in aliases.items():
        for k in keys:
            if data.get(k):
                out[canonical] = data[k]
                break
    return out


class VerificationEngine:
    """
    Drives a certificate verification PENDING -> IN_PROGRESS -> {COMPLETED, FAILED}.

    Steps run concurrently as asyncio tasks; each collector call runs in a
    worker thread under its own timeout, and a failing step never cancels
    its siblings. Whatever happens inside a run ends up recorded on the
    verification; `start` and `retry` only raise for problems with the
    request itself (unknown certificate, an attempt already running).
    """

    def __init__(
        self,
        *,
        store: VerificationStore,
        collectors: Mapping[StepType, EvidenceCollector],
        review_queue: ReviewQueue,
        policy: VerificationPolicy = VerificationPolicy(),
        match_policy: MatchPolicy = MatchPolicy(),
        step_timeout_s: float = DEFAULT_STEP_TIMEOUT_S,
    ) -> None:
        self.store = store
        self.collectors = dict(collectors)
        self.review_queue = review_queue
        self.policy = policy
        self.match_policy = match_policy
        self.step_timeout_s = step_timeout_s
        self._tasks: Dict[str, asyncio.Task] = {}

    # --- public API ---------------------------------------------------------------------

    async def start(
        self,
        certificate_id: str,
        verification_type: Any,
        *,
        requested_by: Optional[str] = None,
        retry_of: Optional[str] = None,
    ) -> Verification:
        vtype = VerificationType.parse(verification_type)
        certificate = self.store.get_certificate(certificate_id)
        verification = Verification(
            certificate_id=certificate.id,
            verification_type=vtype,
            steps=[VerificationStep(step_type=st, step_order=i + 1) for i, st in enumerate(STEP_PLANS[vtype])],
            requested_by=requested_by,
            retry_of=retry_of,
        )
        self.store.create_verification_if_idle(verification)
        self.store.project_certificate(verification)
        logger.info(
            "verification %s started for certificate %s (%s)", verification.id, certificate.id, vtype.value
        )

        task = asyncio.get_running_loop().create_task(self._run(verification.id))
        self._tasks[verification.id] = task
        task.add_done_callback(lambda _t, vid=verification.id: self._tasks.pop(vid, None))
        return verification

    async def join(self, verification_id: str) -> Verification:
        task = self._tasks.get(verification_id)
        if task is not None:
            await asyncio.shield(task)
        return self.store.get_verification(verification_id)

    def get(self, verification_id: str) -> Verification:
        return self.store.get_verification(verification_id)

    def list(
        self,
        *,
        certificate_id: Optional[str] = None,
        status: Optional[VerificationStatus] = None,
        result: Optional[VerificationResult] = None,
        verification_type: Optional[VerificationType] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Verification], int]:
        """Newest first; returns (page of items, total matching)."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        source = self.store.verifications_for(certificate_id) if certificate_id else self.store.verifications()
        items = [
            v
            for v in reversed(source)
            if (status is None or v.status == status)
            and (result is None or v.result == result)
            and (verification_type is None or v.verification_type == verification_type)
        ]
        items.sort(key=lambda v: v.created_at, reverse=True)
        start = (page - 1) * limit
        return items[start : start + limit], len(items)

    async def retry(self, verification_id: str, *, requested_by: Optional[str] = None) -> Verification:
        previous = self.store.get_verification(verification_id)
        retryable = previous.status == VerificationStatus.FAILED or (
            previous.status == VerificationStatus.COMPLETED and previous.result == VerificationResult.UNVERIFIED
        )
        if not retryable:
            raise ConflictError(
                f"Verification {verification_id} is {previous.status.value}/{previous.result.value}; "
                "only failed or unverified attempts can be retried"
            )
        return await self.start(
            previous.certificate_id,
            previous.verification_type,
            requested_by=requested_by,
            retry_of=previous.id,
        )

    # --- pipeline -----------------------------------------------------------------------

    async def _run(self, verification_id: str) -> None:
        verification = self.store.get_verification(verification_id)
        try:
            certificate = self.store.get_certificate(verification.certificate_id)
            verification.status = VerificationStatus.IN_PROGRESS
            verification.started_at = utc_now()
            self.store.save_verification(verification)

            results = await asyncio.gather(
                *(self._run_step(verification, certificate, step) for step in verification.steps),
                return_exceptions=True,
            )
            for step, res in zip(verification.steps, results):
                if isinstance(res, BaseException):
                    # _run_step records its own failures; this is a bug in it
                    logger.error("step %s of %s escaped: %r", step.step_type.value, verification_id, res)
                    self._fail_step(step, f"Internal error: {res}")

            self._finish(verification)
        except asyncio.CancelledError:
            self._crash(verification, "Verification was cancelled")
            raise
        except Exception as e:
            logger.exception("verification %s crashed", verification_id)
            self._crash(verification, f"Verification pipeline failed: {e}")

    async def _run_step(self, verification: Verification, certificate: Certificate, step: VerificationStep) -> None:
        step.status = StepStatus.IN_PROGRESS
        step.started_at = utc_now()
        self.store.save_verification(verification)

        if step.step_type == StepType.SIGNATURE_QR_CHECK and certificate.digital_payload() is None:
            if verification.verification_type == VerificationType.COMBINED:
                step.status = StepStatus.SKIPPED
                step.result = "NOT_APPLICABLE"
                step.completed_at = utc_now()
            else:
                self._fail_step(step, "Certificate carries no QR code or digital signature")
            self.store.save_verification(verification)
            return

        collector = self.collectors.get(step.step_type)
        if collector is None:
            self._fail_step(step, f"No evidence collector configured for {step.step_type.value}")
            self.store.save_verification(verification)
            return

        try:
            outcome = await asyncio.wait_for(
                asyncio.to_thread(collector.collect, certificate),
                timeout=self.step_timeout_s,
            )
            confidence, extra = self._score(certificate, outcome)
        except asyncio.TimeoutError:
            self._fail_step(step, f"{step.step_type.value} timed out after {self.step_timeout_s:g}s")
        except DocVerifyError as e:
            self._fail_step(step, e.message)
        except Exception as e:
            logger.exception("collector %s crashed for verification %s", step.step_type.value, verification.id)
            self._fail_step(step, f"{step.step_type.value} failed: {e}")
        else:
            step.status = StepStatus.COMPLETED
            step.result = outcome.result
            step.confidence = confidence
            step.evidence = {**outcome.evidence, **extra}
            step.completed_at = utc_now()
        self.store.save_verification(verification)
        logger.info(
            "verification %s step %s: %s",
            verification.id,
            step.step_type.value,
            step.status.value if step.status != StepStatus.COMPLETED else f"{step.result} ({step.confidence})",
        )

    def _score(self, certificate: Certificate, outcome: StepOutcome) -> Tuple[float, Dict[str, Any]]:
        extra: Dict[str, Any] = {}
        confidence = outcome.confidence
        if confidence is None and outcome.record is not None:
            mine = _registry_view(certificate.certificate_data)
            theirs = _registry_view(outcome.record)
            match = match_fields(mine, theirs, registry_profile(self.match_policy), self.match_policy)
            confidence = match.match_confidence
            extra["record_match"] = match.to_dict()
        if confidence is None:
            raise ProcessingFailedError("Collector returned neither a confidence nor a record to score")
        if not (0.0 <= confidence <= 1.0):
            raise ProcessingFailedError(f"Collector confidence {confidence} is outside [0, 1]")
        return float(confidence), extra

    @staticmethod
    def _fail_step(step: VerificationStep, message: str) -> None:
        step.status = StepStatus.FAILED
        step.error_message = message[:500]
        step.completed_at = utc_now()

    def _finish(self, verification: Verification) -> None:
        score, result = aggregate(verification.steps, verification.verification_type, self.policy)
        completed = any(s.status == StepStatus.COMPLETED for s in verification.steps)

        verification.confidence_score = score
        verification.result = result
        verification.status = VerificationStatus.COMPLETED if completed else VerificationStatus.FAILED
        if not completed:
            verification.error_message = "No verification step completed"
        verification.evidence = build_evidence(verification.steps, self.policy.verified_threshold)
        verification.completed_at = utc_now()
        self.store.save_verification(verification)
        self.store.project_certificate(verification)
        logger.info(
            "verification %s %s: %s (%.2f)",
            verification.id,
            verification.status.value,
            result.value,
            score,
        )

        if result == VerificationResult.REQUIRES_MANUAL_REVIEW:
            self.review_queue.escalate(verification, self._escalation_reason(verification))

    def _crash(self, verification: Verification, message: str) -> None:
        for step in verification.steps:
            if step.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
                self._fail_step(step, message)
        verification.status = VerificationStatus.FAILED
        verification.result = VerificationResult.REQUIRES_MANUAL_REVIEW
        verification.confidence_score = 0.0
        verification.error_message = message[:500]
        verification.completed_at = utc_now()
        self.store.save_verification(verification)
        self.store.project_certificate(verification)
        self.review_queue.escalate(verification, message)

    def _escalation_reason(self, verification: Verification) -> str:
        if verification.status == VerificationStatus.FAILED:
            return verification.error_message or "Verification failed"
        mandatory = self.policy.mandatory_for(verification.verification_type.value)
        failed = [
            s.step_type.value
            for s in verification.steps
            if s.status == StepStatus.FAILED and s.step_type.value in mandatory
        ]
        if failed:
            return f"Mandatory step failed: {', '.join(failed)}"
        return f"Confidence {round(verification.confidence_score * 100)}% is inside the manual review band"
