# services/matching/signatures.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict

import cv2
import numpy as np

from services.matching.images import decode_bgr, to_canvas
from services.policy import SignaturePolicy

logger = logging.getLogger(__name__)

# (0.01 * 255)^2 and (0.03 * 255)^2
SSIM_C1 = 6.5025
SSIM_C2 = 58.5225

HASH_W = 9
HASH_H = 8


@dataclass(frozen=True)
class SignatureMetrics:
    perceptual_hash: float
    structural: float
    histogram: float


@dataclass(frozen=True)
class SignatureMatchResult:
    metrics: SignatureMetrics
    match_status: str
    match_confidence: float
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metrics": {
                "perceptualHash": self.metrics.perceptual_hash,
                "structural": self.metrics.structural,
                "histogram": self.metrics.histogram,
            },
            "matchStatus": self.match_status,
            "matchConfidence": self.match_confidence,
            "summary": self.summary,
        }


def dhash_bits(gray: np.ndarray) -> np.ndarray:
    """64-bit difference hash: is each pixel darker than its right neighbour on a 9x8 thumbnail."""
    small = cv2.resize(gray, (HASH_W, HASH_H), interpolation=cv2.INTER_AREA).astype(np.int16)
    return (small[:, :-1] < small[:, 1:]).flatten()


def perceptual_hash_similarity(a: np.ndarray, b: np.ndarray) -> float:
    ha, hb = dhash_bits(a), dhash_bits(b)
    hamming = int(np.count_nonzero(ha != hb))
    return 1.0 - hamming / ha.size


def structural_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Global SSIM over the whole canvas, mapped from [-1, 1] to [0, 1]."""
    x = a.astype(np.float64)
    y = b.astype(np.float64)
    mx, my = x.mean(), y.mean()
    vx, vy = x.var(), y.var()
    cov = ((x - mx) * (y - my)).mean()
    ssim = ((2 * mx * my + SSIM_C1) * (2 * cov + SSIM_C2)) / ((mx * mx + my * my + SSIM_C1) * (vx + vy + SSIM_C2))
    return float(np.clip((ssim + 1.0) / 2.0, 0.0, 1.0))


def histogram_intersection(a: np.ndarray, b: np.ndarray) -> float:
    ha = cv2.calcHist([a], [0], None, [256], [0, 256]).ravel()
    hb = cv2.calcHist([b], [0], None, [256], [0, 256]).ravel()
    ha /= max(ha.sum(), 1.0)
    hb /= max(hb.sum(), 1.0)
    return float(np.clip(np.minimum(ha, hb).sum(), 0.0, 1.0))


def _summary(status: str, confidence: float) -> str:
    head = f"Signature Match Status: {status.upper()}\nOverall Confidence: {round(confidence * 100)}%\n\n"
    if status == "matched":
        return head + "High similarity across the comparison metrics."
    if status == "partial":
        return head + "Some similarities and some differences. Manual review recommended."
    return head + "Low similarity across the comparison metrics."


def compare_arrays(img1_bgr: np.ndarray, img2_bgr: np.ndarray, policy: SignaturePolicy = SignaturePolicy()) -> SignatureMatchResult:
    a = to_canvas(img1_bgr)
    b = to_canvas(img2_bgr)

    phash = perceptual_hash_similarity(a, b)
    ssim = structural_similarity(a, b)
    hist = histogram_intersection(a, b)

    weights = (policy.perceptual_hash_weight, policy.structural_weight, policy.histogram_weight)
    total = sum(weights)
    if total <= 0:
        raise ValueError("signature metric weights must sum to a positive number")
    overall = (phash * weights[0] + ssim * weights[1] + hist * weights[2]) / total
    confidence = round(overall, 2)
    status = policy.status_for(confidence)

    logger.info("signature comparison: %s (%.2f)", status, confidence)
    return SignatureMatchResult(
        metrics=SignatureMetrics(
            perceptual_hash=round(phash, 2),
            structural=round(ssim, 2),
            histogram=round(hist, 2),
        ),
        match_status=status,
        match_confidence=confidence,
        summary=_summary(status, confidence),
    )


def compare(image1: bytes, image2: bytes, policy: SignaturePolicy = SignaturePolicy()) -> SignatureMatchResult:
    """
    Compare two signature (or document) images.

    Raises ExternalServiceError when either input cannot be decoded; an
    unreadable image is never scored as zero.
    """
    return compare_arrays(decode_bgr(image1), decode_bgr(image2), policy)
