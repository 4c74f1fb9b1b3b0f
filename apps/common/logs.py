# apps/common/logs.py
from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """One stream handler on the root logger; DOCVERIFY_LOG_LEVEL picks the level (default INFO)."""
    name = (level or os.getenv("DOCVERIFY_LOG_LEVEL") or "INFO").upper()
    numeric = logging.getLevelName(name)
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {name}")

    root = logging.getLogger()
    if not any(getattr(h, "_docverify", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._docverify = True
        root.addHandler(handler)
    root.setLevel(numeric)
