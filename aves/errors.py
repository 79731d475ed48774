"""
Error taxonomy shared by the store, workflow, learning and API layers.
Every error renders as {"error": message} at the HTTP boundary.
"""

from typing import Any, Optional


class AvesError(Exception):
    """Base class for expected, user-visible failures."""

    status_code: int = 500
    error_code: str = "ERR_INTERNAL"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(AvesError):
    """Malformed request body or parameters."""

    status_code = 400
    error_code = "ERR_VALIDATION"

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.details = details or []

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(AvesError):
    """Item or job absent, or no longer in the state the caller expected."""

    status_code = 404
    error_code = "ERR_NOT_FOUND"


class GenerationError(AvesError):
    """External vision model failure, empty result or unparseable output."""

    status_code = 502
    error_code = "ERR_GENERATION"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class PersistenceError(AvesError):
    """A transaction failed and was rolled back."""

    status_code = 500
    error_code = "ERR_PERSISTENCE"
