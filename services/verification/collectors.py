# services/verification/collectors.py
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol

from services.errors import ExternalServiceError, ProcessingFailedError
from services.verification.models import Certificate, StepType

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 20.0


@dataclass(frozen=True)
class StepOutcome:
    """
    What an evidence collector found.

    `confidence` may be left None when the collector only returns the
    issuer's `record`; the engine then scores the record against the
    certificate data itself. A negative finding (record not found, forged
    signature) is still an outcome, with a low confidence.
    """

    result: str
    confidence: Optional[float] = None
    evidence: Dict[str, Any] = field(default_factory=dict)
    record: Optional[Dict[str, Any]] = None


class EvidenceCollector(Protocol):
    def collect(self, certificate: Certificate) -> StepOutcome: ...


def outcome_from_payload(payload: Mapping[str, Any]) -> StepOutcome:
    result = payload.get("result")
    if not result:
        raise ExternalServiceError("Collector answer has no 'result'")

    confidence = payload.get("confidence")
    if confidence is not None:
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            raise ExternalServiceError(f"Collector confidence is not a number: {confidence!r}") from None

    evidence = payload.get("evidence") or {}
    record = payload.get("record")
    if not isinstance(evidence, dict) or (record is not None and not isinstance(record, dict)):
        raise ExternalServiceError("Collector evidence/record must be JSON objects")

    return StepOutcome(result=str(result), confidence=confidence, evidence=evidence, record=record)


class HttpEvidenceCollector:
    """
    Generic JSON-over-HTTP client for one verification step
    (QR/signature validator, issuing-registry portal, forensic scorer).

    POST {base_url} with the certificate; expects
    {"result": str, "confidence": float|null, "evidence": {...}, "record": {...}|null}.
    """

    def __init__(self, step_type: StepType, base_url: str, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self.step_type = step_type
        self.base_url = (base_url or "").strip()
        self.timeout_s = timeout_s

    def collect(self, certificate: Certificate) -> StepOutcome:
        if not self.base_url:
            raise ExternalServiceError(f"No endpoint configured for {self.step_type.value}")
        payload = {
            "stepType": self.step_type.value,
            "certificateId": certificate.id,
            "certificateType": certificate.certificate_type,
            "issuerType": certificate.issuer_type,
            "certificateData": certificate.certificate_data,
        }
        resp = self._post_json(self.base_url, payload)
        outcome = outcome_from_payload(resp)
        logger.debug("%s for certificate %s -> %s", self.step_type.value, certificate.id, outcome.result)
        return outcome

    def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        req = urllib.request.Request(
            url=url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as r:
                body = r.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")[:300]
            if 400 <= e.code < 500:
                raise ProcessingFailedError(f"{self.step_type.value} rejected the request ({e.code}): {detail}") from e
            raise ExternalServiceError(f"{self.step_type.value} failed ({e.code}): {detail}") from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise ExternalServiceError(f"{self.step_type.value} unreachable: {e}") from e

        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as e:
            raise ExternalServiceError(f"{self.step_type.value} HTTP 200 but body was not JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ExternalServiceError(f"{self.step_type.value} HTTP 200 but JSON was not an object")
        return parsed
