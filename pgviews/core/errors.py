"""
Error taxonomy for view compilation, versioning and execution.

Every error carries a stable ``code`` and HTTP ``status_code`` so callers can
tell "your query is invalid" apart from "the database didn't respond".
"""

from typing import Any, Dict, Optional


class ViewError(Exception):
    """Base class for all pgviews errors."""

    code = "VIEW_ERROR"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.field:
            payload["field"] = self.field
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ViewError):
    """Malformed request shape. Caller error, do not retry."""

    code = "VALIDATION_ERROR"
    status_code = 400


class CompilationError(ViewError):
    """Unresolvable reference, unsupported enum value or alias collision."""

    code = "COMPILATION_ERROR"
    status_code = 422


class ViewNotFoundError(ViewError):
    code = "NOT_FOUND"
    status_code = 404


class VersionConflictError(ViewError):
    """A concurrent save won the race for the next version label."""

    code = "VERSION_CONFLICT"
    status_code = 409
    retryable = True


class EstimationError(ViewError):
    """Plan estimation failed (timeout or backend error). Non-fatal to the view."""

    code = "ESTIMATION_FAILED"
    status_code = 502
    retryable = True


class ExecutionError(ViewError):
    code = "EXECUTION_FAILED"
    status_code = 502
    retryable = True


class ExecutionTimeoutError(ExecutionError):
    code = "EXECUTION_TIMEOUT"
    status_code = 504
