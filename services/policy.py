# services/policy.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

import yaml

# Find project root (2 levels up from services/policy.py)
PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_THRESHOLDS_PATH = PROJECT_ROOT / "config" / "thresholds.yaml"


def _status_band(score: float, upper: float, lower: float) -> str:
    if score >= upper:
        return "matched"
    if score >= lower:
        return "partial"
    return "not_matched"


def _default_mandatory_steps() -> Dict[str, FrozenSet[str]]:
    return {
        "DIGITAL": frozenset({"SIGNATURE_QR_CHECK"}),
        "PORTAL": frozenset({"REGISTRY_LOOKUP"}),
        "FORENSIC": frozenset({"RISK_ANALYSIS"}),
        "COMBINED": frozenset({"REGISTRY_LOOKUP", "RISK_ANALYSIS"}),
    }


@dataclass(frozen=True)
class VerificationPolicy:
    """
    Turns an aggregate confidence into a verdict.

      confidence >= verified_threshold                      -> VERIFIED
      review_threshold <= confidence < verified_threshold   -> REQUIRES_MANUAL_REVIEW
      confidence < review_threshold                         -> UNVERIFIED

    A failed mandatory step overrides the bands (see the engine).
    """

    verified_threshold: float = 0.8
    review_threshold: float = 0.6
    mandatory_steps: Mapping[str, FrozenSet[str]] = field(default_factory=_default_mandatory_steps)

    def mandatory_for(self, verification_type: str) -> FrozenSet[str]:
        return self.mandatory_steps.get(verification_type, frozenset())

    @property
    def review_midpoint(self) -> float:
        return (self.verified_threshold + self.review_threshold) / 2.0


@dataclass(frozen=True)
class MatchPolicy:
    matched_threshold: float = 0.85
    partial_threshold: float = 0.6
    # profile name -> {field: weight}; only overrides, rules keep their kind.
    profile_weights: Mapping[str, Mapping[str, float]] = field(default_factory=dict)

    def status_for(self, confidence: float) -> str:
        return _status_band(confidence, self.matched_threshold, self.partial_threshold)


@dataclass(frozen=True)
class SignaturePolicy:
    matched_threshold: float = 0.85
    partial_threshold: float = 0.6
    perceptual_hash_weight: float = 1.0
    structural_weight: float = 1.0
    histogram_weight: float = 1.0

    def status_for(self, confidence: float) -> str:
        return _status_band(confidence, self.matched_threshold, self.partial_threshold)


@dataclass(frozen=True)
class Policies:
    verification: VerificationPolicy = field(default_factory=VerificationPolicy)
    matching: MatchPolicy = field(default_factory=MatchPolicy)
    signature: SignaturePolicy = field(default_factory=SignaturePolicy)


def _floats(d: Mapping[str, Any], keys: Mapping[str, str]) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for yaml_key, attr in keys.items():
        if yaml_key in d and d[yaml_key] is not None:
            out[attr] = float(d[yaml_key])
    return out


def _check_band(name: str, upper: float, lower: float) -> None:
    if not (0.0 <= lower <= upper <= 1.0):
        raise ValueError(f"{name}: thresholds must satisfy 0 <= lower <= upper <= 1 (got {lower}, {upper})")


def policies_from_dict(cfg: Mapping[str, Any]) -> Policies:
    v_cfg = cfg.get("verification") or {}
    m_cfg = cfg.get("matching") or {}
    s_cfg = cfg.get("signature") or {}

    v_kwargs: Dict[str, Any] = _floats(v_cfg, {"verified": "verified_threshold", "review": "review_threshold"})
    mandatory = v_cfg.get("mandatory_steps")
    if mandatory:
        merged = _default_mandatory_steps()
        for vtype, steps in mandatory.items():
            merged[str(vtype).upper()] = frozenset(str(s).upper() for s in (steps or []))
        v_kwargs["mandatory_steps"] = merged
    verification = VerificationPolicy(**v_kwargs)
    _check_band("verification", verification.verified_threshold, verification.review_threshold)

    m_kwargs: Dict[str, Any] = _floats(m_cfg, {"matched": "matched_threshold", "partial": "partial_threshold"})
    profiles = m_cfg.get("profiles") or {}
    if profiles:
        m_kwargs["profile_weights"] = {
            str(name): {str(k): float(w) for k, w in (weights or {}).items()}
            for name, weights in profiles.items()
        }
    matching = MatchPolicy(**m_kwargs)
    _check_band("matching", matching.matched_threshold, matching.partial_threshold)

    s_kwargs: Dict[str, Any] = _floats(s_cfg, {"matched": "matched_threshold", "partial": "partial_threshold"})
    s_kwargs.update(
        _floats(
            s_cfg.get("weights") or {},
            {
                "perceptual_hash": "perceptual_hash_weight",
                "structural": "structural_weight",
                "histogram": "histogram_weight",
            },
        )
    )
    signature = SignaturePolicy(**s_kwargs)
    _check_band("signature", signature.matched_threshold, signature.partial_threshold)

    return Policies(verification=verification, matching=matching, signature=signature)


def load_policies(path: Optional[Path] = None) -> Policies:
    """Missing file -> built-in defaults. A malformed file is an error."""
    p = Path(path) if path else DEFAULT_THRESHOLDS_PATH
    if not p.exists():
        return Policies()
    with open(p, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    return policies_from_dict(cfg)
