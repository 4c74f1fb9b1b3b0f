# services/matching/fields.py
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from services.errors import ValidationError
from services.extraction.doc_types import DocumentType
from services.extraction.normalize import convert_date
from services.policy import MatchPolicy

logger = logging.getLogger(__name__)

_NON_NAME_RE = re.compile(r"[^A-Z\s]")


class FieldKind(str, Enum):
    IDENTITY = "identity"
    NAME = "name"
    DATE = "date"


@dataclass(frozen=True)
class FieldRule:
    field: str
    kind: FieldKind
    weight: float
    threshold: float = 0.8


@dataclass(frozen=True)
class MatchProfile:
    name: str
    rules: Tuple[FieldRule, ...]

    def with_weights(self, weights: Optional[Mapping[str, float]]) -> "MatchProfile":
        if not weights:
            return self
        return MatchProfile(
            name=self.name,
            rules=tuple(
                FieldRule(r.field, r.kind, float(weights.get(r.field, r.weight)), r.threshold) for r in self.rules
            ),
        )


@dataclass(frozen=True)
class FieldMatch:
    field: str
    value1: Optional[str]
    value2: Optional[str]
    score: float
    matched: bool
    reason: str


@dataclass(frozen=True)
class MatchResult:
    field_matches: Tuple[FieldMatch, ...]
    match_status: str
    match_confidence: float
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fieldMatches": [asdict(m) for m in self.field_matches],
            "matchStatus": self.match_status,
            "matchConfidence": self.match_confidence,
            "summary": self.summary,
        }


PAN_AADHAAR_PROFILE = MatchProfile(
    name="pan_aadhaar",
    rules=(
        FieldRule("name", FieldKind.NAME, 0.4),
        FieldRule("father_name", FieldKind.NAME, 0.3),
        FieldRule("date_of_birth", FieldKind.DATE, 0.3),
    ),
)

AADHAAR_AADHAAR_PROFILE = MatchProfile(
    name="aadhaar_aadhaar",
    rules=(
        FieldRule("aadhaar_number", FieldKind.IDENTITY, 0.4),
        FieldRule("name", FieldKind.NAME, 0.3),
        FieldRule("date_of_birth", FieldKind.DATE, 0.3),
    ),
)

PAN_PAN_PROFILE = MatchProfile(
    name="pan_pan",
    rules=(
        FieldRule("pan_number", FieldKind.IDENTITY, 0.4),
        FieldRule("name", FieldKind.NAME, 0.3),
        FieldRule("date_of_birth", FieldKind.DATE, 0.3),
    ),
)

# Certificate data vs. the record an issuing registry returns for it.
REGISTRY_PROFILE = MatchProfile(
    name="registry",
    rules=(
        FieldRule("roll_number", FieldKind.IDENTITY, 0.4),
        FieldRule("name", FieldKind.NAME, 0.4),
        FieldRule("date_of_birth", FieldKind.DATE, 0.2),
    ),
)

DOCUMENT_PROFILES: Dict[Tuple[DocumentType, DocumentType], MatchProfile] = {
    (DocumentType.PAN, DocumentType.AADHAAR): PAN_AADHAAR_PROFILE,
    (DocumentType.AADHAAR, DocumentType.PAN): PAN_AADHAAR_PROFILE,
    (DocumentType.AADHAAR, DocumentType.AADHAAR): AADHAAR_AADHAAR_PROFILE,
    (DocumentType.PAN, DocumentType.PAN): PAN_PAN_PROFILE,
}


def profile_for(first: DocumentType, second: DocumentType, policy: Optional[MatchPolicy] = None) -> MatchProfile:
    try:
        profile = DOCUMENT_PROFILES[(DocumentType.parse(first), DocumentType.parse(second))]
    except KeyError:
        raise ValidationError(f"No match profile for {first} vs {second}") from None
    if policy is not None:
        profile = profile.with_weights(policy.profile_weights.get(profile.name))
    return profile


def registry_profile(policy: Optional[MatchPolicy] = None) -> MatchProfile:
    if policy is None:
        return REGISTRY_PROFILE
    return REGISTRY_PROFILE.with_weights(policy.profile_weights.get(REGISTRY_PROFILE.name))


# --- per-kind normalisation and scoring ------------------------------------------------


def _as_text(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def normalize_identity(v: str) -> str:
    return "".join(v.split()).upper()


def normalize_name(v: str) -> str:
    return " ".join(_NON_NAME_RE.sub("", v.upper()).split())


def normalize_date(v: str) -> str:
    return convert_date("".join(v.split()))


def name_similarity(a: str, b: str) -> float:
    """(len(longer) - levenshtein) / len(longer); 1.0 for two empty strings."""
    if not a and not b:
        return 1.0
    return float(Levenshtein.normalized_similarity(a, b))


def _score(rule: FieldRule, v1: str, v2: str) -> Tuple[float, str]:
    if rule.kind == FieldKind.IDENTITY:
        if normalize_identity(v1) == normalize_identity(v2):
            return 1.0, "Exact match"
        return 0.0, "Identifiers differ"

    if rule.kind == FieldKind.NAME:
        n1, n2 = normalize_name(v1), normalize_name(v2)
        if n1 == n2:
            return 1.0, "Exact match"
        sim = round(name_similarity(n1, n2), 4)
        label = "High" if sim >= rule.threshold else "Low"
        return sim, f"{label} similarity ({round(sim * 100)}%)"

    if rule.kind == FieldKind.DATE:
        if normalize_date(v1) == normalize_date(v2):
            return 1.0, "Dates match"
        return 0.0, "Dates do not match"

    raise ValueError(f"unhandled field kind: {rule.kind}")


def match_field(rule: FieldRule, value1: Any, value2: Any) -> FieldMatch:
    v1, v2 = _as_text(value1), _as_text(value2)
    if v1 is None or v2 is None:
        return FieldMatch(rule.field, v1, v2, 0.0, False, "One or both values are missing")
    score, reason = _score(rule, v1, v2)
    return FieldMatch(rule.field, v1, v2, score, score >= rule.threshold, reason)


def _summary(matches: List[FieldMatch], status: str, confidence: float) -> str:
    matched = sum(1 for m in matches if m.matched)
    lines = [
        f"Match Status: {status.upper()}",
        f"Overall Confidence: {round(confidence * 100)}%",
        f"Matched Fields: {matched}/{len(matches)}",
        "",
        "Field Details:",
    ]
    for m in matches:
        lines.append(f"{'+' if m.matched else '-'} {m.field}: {m.reason}")
    return "\n".join(lines)


def match_fields(
    fields1: Mapping[str, Any],
    fields2: Mapping[str, Any],
    profile: MatchProfile,
    policy: MatchPolicy = MatchPolicy(),
) -> MatchResult:
    """
    Deterministic field-by-field comparison of two normalized field sets.

    matchConfidence is the weight-normalized average of per-field scores,
    rounded to 2 dp; the status band comes from `policy`.
    """
    matches = [match_field(rule, fields1.get(rule.field), fields2.get(rule.field)) for rule in profile.rules]

    total_weight = sum(r.weight for r in profile.rules)
    if total_weight > 0:
        weighted = sum(m.score * r.weight for m, r in zip(matches, profile.rules)) / total_weight
    else:
        weighted = 0.0
    confidence = round(weighted, 2)
    status = policy.status_for(confidence)

    logger.debug("match %s: %s (%.2f)", profile.name, status, confidence)
    return MatchResult(
        field_matches=tuple(matches),
        match_status=status,
        match_confidence=confidence,
        summary=_summary(matches, status, confidence),
    )
