# services/extraction/gateway_client.py
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
from uuid import uuid4

from services.errors import ExternalServiceError, ProcessingFailedError
from services.extraction.doc_types import DocumentType

logger = logging.getLogger(__name__)

EXTRACT_PATH = "/extract"
DEFAULT_TIMEOUT_S = 60.0


@dataclass(frozen=True)
class ExtractionOutput:
    fields: Dict[str, Any]
    ocr_confidence: float
    extraction_confidence: float
    raw_text: Optional[str] = None


class Extractor(Protocol):
    def extract(self, *, blob: bytes, document_type: DocumentType, content_type: str) -> ExtractionOutput: ...


def _clamp01(x: Any) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, v))


def _encode_multipart(field_name: str, filename: str, blob: bytes, content_type: str):
    boundary = f"----docverify{uuid4().hex}"
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field_name}"; filename="{filename}"\r\n'
        f"Content-Type: {content_type}\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--\r\n".encode("utf-8")
    return head + blob + tail, f"multipart/form-data; boundary={boundary}"


class GatewayExtractor:
    """
    Client for the KYC IDP gateway (`POST /extract?doctype=...`).

    Contract:
      - Input: image bytes + expected document type
      - Output: ExtractionOutput with the gateway's per-field objects untouched
      - Raises ExternalServiceError when the gateway is unreachable or answers garbage
      - Raises ProcessingFailedError when the gateway answers but cannot read the document
    """

    def __init__(self, base_url: str, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self.base_url = (base_url or "").strip()
        self.timeout_s = timeout_s

    def extract(self, *, blob: bytes, document_type: DocumentType, content_type: str) -> ExtractionOutput:
        dt = DocumentType.parse(document_type)
        resp = self._post_file(f"{self._build_url(EXTRACT_PATH)}?doctype={dt.value}", blob, content_type)

        got_type = str(resp.get("document_type") or dt.value).lower()
        if got_type != dt.value:
            raise ProcessingFailedError(f"Expected a {dt.value} document but the extractor found '{got_type}'")

        extraction = resp.get("extraction")
        if not isinstance(extraction, dict) or not extraction:
            raise ProcessingFailedError("No fields could be extracted from the document")

        selection = resp.get("selection") or {}
        if "avg_conf" in selection:
            ocr_conf = _clamp01(selection.get("avg_conf"))
        else:
            confs = [
                0.5 * _clamp01(v.get("det_conf")) + 0.5 * _clamp01(v.get("ocr_conf"))
                for v in extraction.values()
                if isinstance(v, dict)
            ]
            ocr_conf = sum(confs) / len(confs) if confs else 0.0

        return ExtractionOutput(
            fields=extraction,
            ocr_confidence=ocr_conf,
            extraction_confidence=_clamp01(selection.get("coverage", 1.0)),
            raw_text=resp.get("raw_text"),
        )

    def _build_url(self, path: str) -> str:
        if not self.base_url:
            raise ExternalServiceError("Missing extractor gateway URL (DOCVERIFY_GATEWAY_URL)")
        return self.base_url.rstrip("/") + path

    def _post_file(self, url: str, blob: bytes, content_type: str) -> Dict[str, Any]:
        ext = (content_type or "application/octet-stream").split("/")[-1]
        body, ctype = _encode_multipart("file", f"upload.{ext}", blob, content_type or "application/octet-stream")
        req = urllib.request.Request(url=url, data=body, headers={"Content-Type": ctype}, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as r:
                raw = r.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")[:300]
            if 400 <= e.code < 500:
                raise ProcessingFailedError(f"Extractor rejected the document ({e.code}): {detail}") from e
            raise ExternalServiceError(f"Extractor failed ({e.code}): {detail}") from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise ExternalServiceError(f"Extractor unreachable: {e}") from e

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ExternalServiceError(f"Extractor HTTP 200 but body was not JSON: {e}") from e

        if not isinstance(parsed, dict):
            raise ExternalServiceError("Extractor HTTP 200 but JSON was not an object")

        logger.debug("extractor answered with keys %s", sorted(parsed.keys()))
        return parsed
