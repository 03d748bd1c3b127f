"""
Shared error handling for the resilient request gate.

Storage-layer errors (BackendUnavailable, BackendCorrupt) are absorbed by the
components that hit them and turned into degraded behaviour. Only policy
rejections (RateLimitError, AccountLockedError) and credential failures reach
the caller.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class GateException(Exception):
    """Base exception for the gate."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class BackendUnavailable(GateException):
    """Storage backend timed out, refused the connection or failed mid-protocol."""

    status_code = 503

    def __init__(self, backend: str, message: str = "Backend unavailable", details: Optional[Dict[str, Any]] = None):
        self.backend = backend
        super().__init__("BACKEND_UNAVAILABLE", f"{backend}: {message}", details)


class BackendCorrupt(GateException):
    """A stored value could not be decoded."""

    status_code = 500

    def __init__(self, key: str, message: str = "Malformed stored value", details: Optional[Dict[str, Any]] = None):
        self.key = key
        super().__init__("BACKEND_CORRUPT", message, {"key": key, **(details or {})})


class AuthenticationError(GateException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AccountLockedError(AuthenticationError):
    """Account is frozen after too many failed attempts.

    Rendered to clients exactly like AuthenticationError; the unlock time is
    kept for logs and decisions only.
    """

    def __init__(self, account_key: str, locked_until: float, retry_after: float):
        self.account_key = account_key
        self.locked_until = locked_until
        self.retry_after = retry_after
        super().__init__(details={"locked_until": locked_until, "retry_after": retry_after})

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        return AuthenticationError().to_response(request_id)


class ValidationError(GateException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class RateLimitError(GateException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, retry_after: float, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        self.retry_after = retry_after
        super().__init__("RATE_LIMIT_ERROR", message, {"retry_after": retry_after, **(details or {})})
