# apps/common/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from services.ingestion.orchestrator import DEFAULT_MAX_UPLOAD_BYTES
from services.verification.engine import DEFAULT_STEP_TIMEOUT_S
from services.verification.models import StepType

_COLLECTOR_ENV = {
    StepType.SIGNATURE_QR_CHECK: "DOCVERIFY_SIGNATURE_QR_URL",
    StepType.REGISTRY_LOOKUP: "DOCVERIFY_REGISTRY_URL",
    StepType.RISK_ANALYSIS: "DOCVERIFY_FORENSIC_URL",
}

_COLLECTOR_KEYS = {
    StepType.SIGNATURE_QR_CHECK: "signature_qr",
    StepType.REGISTRY_LOOKUP: "registry",
    StepType.RISK_ANALYSIS: "forensic",
}


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _as_path(v: str) -> Path:
    return Path(v).expanduser().resolve()


@dataclass(frozen=True)
class AppSettings:
    storage_root: Path
    gateway_url: str
    thresholds_path: Path
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    gateway_timeout_s: float = 60.0
    step_timeout_s: float = DEFAULT_STEP_TIMEOUT_S
    collector_urls: Dict[StepType, str] = field(default_factory=dict)


def load_settings(config_path: Optional[str] = None) -> AppSettings:
    """
    Resolution order (highest -> lowest):
      1) Explicit function argument
      2) DOCVERIFY_CONFIG_PATH env var
      3) config/app.yaml
    Individual fields can be overridden via env vars:
      - DOCVERIFY_STORAGE_ROOT
      - DOCVERIFY_GATEWAY_URL
      - DOCVERIFY_THRESHOLDS_PATH
      - DOCVERIFY_MAX_UPLOAD_BYTES
      - DOCVERIFY_STEP_TIMEOUT_S
      - DOCVERIFY_SIGNATURE_QR_URL / DOCVERIFY_REGISTRY_URL / DOCVERIFY_FORENSIC_URL
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("DOCVERIFY_CONFIG_PATH") or "config/app.yaml")
    )
    cfg = _read_yaml(cfg_path)

    storage_root = _env("DOCVERIFY_STORAGE_ROOT") or cfg.get("storage_root")
    gateway_url = _env("DOCVERIFY_GATEWAY_URL") or cfg.get("gateway_url")
    thresholds_path = _env("DOCVERIFY_THRESHOLDS_PATH") or cfg.get("thresholds_path") or "config/thresholds.yaml"

    missing = []
    if not storage_root:
        missing.append("storage_root / DOCVERIFY_STORAGE_ROOT")
    if not gateway_url:
        missing.append("gateway_url / DOCVERIFY_GATEWAY_URL")

    if missing:
        raise ValueError(
            "Missing required configuration: " + ", ".join(missing) +
            f". Config file used: {cfg_path}"
        )

    try:
        max_upload_bytes = int(_env("DOCVERIFY_MAX_UPLOAD_BYTES") or cfg.get("max_upload_bytes") or DEFAULT_MAX_UPLOAD_BYTES)
        step_timeout_s = float(_env("DOCVERIFY_STEP_TIMEOUT_S") or cfg.get("step_timeout_s") or DEFAULT_STEP_TIMEOUT_S)
        gateway_timeout_s = float(cfg.get("gateway_timeout_s") or 60.0)
    except ValueError as e:
        raise ValueError(f"Invalid numeric configuration in {cfg_path} or environment: {e}") from e
    if max_upload_bytes <= 0 or step_timeout_s <= 0:
        raise ValueError("max_upload_bytes and step_timeout_s must be positive")

    collectors_cfg = cfg.get("collectors") or {}
    collector_urls: Dict[StepType, str] = {}
    for step_type, env_key in _COLLECTOR_ENV.items():
        url = _env(env_key) or collectors_cfg.get(_COLLECTOR_KEYS[step_type])
        if url:
            collector_urls[step_type] = str(url)

    return AppSettings(
        storage_root=_as_path(str(storage_root)),
        gateway_url=str(gateway_url),
        thresholds_path=_as_path(str(thresholds_path)),
        max_upload_bytes=max_upload_bytes,
        gateway_timeout_s=gateway_timeout_s,
        step_timeout_s=step_timeout_s,
        collector_urls=collector_urls,
    )
