from __future__ import annotations

__all__ = [
    "ConflictError",
    "EligibilityError",
    "NotFoundError",
    "ReconError",
    "TransientError",
    "ValidationError",
]


class ReconError(Exception):
    """Base domain error. Carries a short title and description for the caller."""

    code: str = "error"
    title: str = "Operation failed"

    def __init__(self, description: str = "", *, code: str | None = None, title: str | None = None) -> None:
        super().__init__(description or self.title)
        self.description = description or self.title
        if code is not None:
            self.code = code
        if title is not None:
            self.title = title

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "title": self.title, "description": self.description}


class ValidationError(ReconError):
    """Malformed input or a violated precondition (do not retry)."""

    code = "validation_error"
    title = "Invalid input"


class EligibilityError(ValidationError):
    """An installation candidate failed an eligibility check."""

    code = "not_eligible"
    title = "Device not eligible"


class ConflictError(ReconError):
    """State changed between validation and write (e.g. device installed meanwhile)."""

    code = "conflict"
    title = "Conflicting change"


class NotFoundError(ReconError):
    """Referenced document does not exist."""

    code = "not_found"
    title = "Not found"


class TransientError(ReconError):
    """Timeouts, network failures, unexpected upstream statuses.
    Safe to retry on the next scheduling tick.
    """

    code = "transient_error"
    title = "Temporary failure"
