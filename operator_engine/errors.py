"""
Error taxonomy for the Operator Engine.

Validation, not-found, auth and rate-limit errors are raised and surface to
the caller as structured responses. Execution failures are NOT exceptions at
the boundary: the orchestrator reports them as ``ok: False`` results.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class EngineError(Exception):
    """Base exception for the Operator Engine."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(code=self.code, message=self.message, details=self.details)


class ValidationError(EngineError):
    """Rejected before any mutation: unknown action key, missing parameter."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(EngineError):
    """Referenced flag, action or suggestion does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class AuthenticationError(EngineError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class RateLimitError(EngineError):
    """Admission control rejected the request before evaluation began."""

    status_code = 429

    def __init__(
        self,
        retry_after: int,
        message: str = "Rate limit exceeded",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.retry_after = retry_after
        merged = {"retry_after_seconds": retry_after}
        merged.update(details or {})
        super().__init__("RATE_LIMIT_ERROR", message, merged)


class DuplicateRuleError(EngineError):
    """A rule or action key was registered twice."""

    def __init__(self, key: str):
        super().__init__("DUPLICATE_KEY", f"Key already registered: {key}", {"key": key})
