# services/extraction/doc_types.py
from __future__ import annotations

from enum import Enum

from services.errors import ValidationError


class DocumentType(str, Enum):
    """Closed set of identity documents the extraction pipeline understands."""

    AADHAAR = "aadhaar"
    PAN = "pan"

    @classmethod
    def parse(cls, value: object) -> "DocumentType":
        if isinstance(value, cls):
            return value
        dt = str(value or "").lower().strip()
        if dt == "aadhar":
            dt = "aadhaar"
        for member in cls:
            if member.value == dt:
                return member
        allowed = ", ".join(m.value for m in cls)
        raise ValidationError(f"Invalid document type '{value}'. Use one of: {allowed}.")
