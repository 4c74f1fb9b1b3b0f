# services/errors.py
from __future__ import annotations


class DocVerifyError(RuntimeError):
    """Base for every error the verification services raise on purpose."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ValidationError(DocVerifyError):
    """Bad upload or malformed request. Rejected synchronously."""

    code = "validation_error"
    status_code = 400


class NotFoundError(DocVerifyError):
    code = "not_found"
    status_code = 404


class ConflictError(DocVerifyError):
    """Duplicate active verification, lost assignment race, wrong state."""

    code = "conflict"
    status_code = 409


class ProcessingFailedError(DocVerifyError):
    """Extractor or collector reported a failure. Terminal for that document/step."""

    code = "processing_failed"
    status_code = 422


class ExternalServiceError(DocVerifyError):
    """Collaborator unreachable or returned something unusable."""

    code = "external_service_error"
    status_code = 502


class ProcessingTimeoutError(DocVerifyError):
    """Caller-side poll budget exhausted. The underlying work is not cancelled."""

    code = "processing_timeout"
    status_code = 504
