# errors.py
"""
Error taxonomy for the release pipeline.

Every error carries a short user-facing message and, where useful, structured
details so the surrounding application can render it without parsing text.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional


class PromptReleaseError(Exception):
    """Base exception for all release pipeline errors."""

    code = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class ValidationError(PromptReleaseError):
    """Raised for malformed or missing input, before any mutation."""

    code = "validation_error"


class NotFound(PromptReleaseError):
    """Raised when a referenced entity does not exist."""

    code = "not_found"


class Forbidden(PromptReleaseError):
    """Raised when the acting reviewer's role does not allow the operation."""

    code = "forbidden"


class Conflict(PromptReleaseError):
    """Raised when a request is incompatible with the current state."""

    code = "conflict"


class Expired(PromptReleaseError):
    """Raised when an approval request's window has passed."""

    code = "expired"

    def __init__(self, message: str, expires_at: Optional[datetime] = None, **details: Any):
        if expires_at is not None:
            details["expires_at"] = expires_at.isoformat()
        super().__init__(message, **details)
        self.expires_at = expires_at


class MergeConflictError(PromptReleaseError):
    """Raised when both branches modified the same content region."""

    code = "merge_conflict"

    def __init__(self, message: str, conflicts: Optional[List[str]] = None, **details: Any):
        super().__init__(message, conflicts=list(conflicts or []), **details)
        self.conflicts = list(conflicts or [])


class NoPriorDeployment(PromptReleaseError):
    """Raised when a rollback has no earlier deployment to restore."""

    code = "no_prior_deployment"


class DataIntegrityError(PromptReleaseError):
    """Raised when a stored invariant is found violated at read time. Always a bug."""

    code = "data_integrity_error"
