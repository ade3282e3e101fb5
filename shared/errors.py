"""
Shared error handling for the Access Core services.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessCoreException(Exception):
    """Base exception for Access Core services."""

    status_code: int = 400
    retryable: bool = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(AccessCoreException):
    """Caller identity could not be resolved."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationDeniedError(AccessCoreException):
    """The caller's role does not currently grant access.

    ``reason`` is one of the denial reasons produced by the validity
    evaluator (inactive, expired, ip_restricted, no_role).
    """

    status_code = 403

    def __init__(self, reason: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        merged = {"reason": reason}
        merged.update(details or {})
        super().__init__("AUTHORIZATION_DENIED", message or f"Access denied: {reason}", merged)


class PermissionDeniedError(AccessCoreException):
    """The role is valid but lacks the requested permission."""

    status_code = 403

    def __init__(self, permission: str, details: Optional[Dict[str, Any]] = None):
        self.permission = permission
        merged = {"permission": permission}
        merged.update(details or {})
        super().__init__("PERMISSION_DENIED", f"Missing permission: {permission}", merged)


class ValidationError(AccessCoreException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "VALIDATION_ERROR"):
        super().__init__(code, message, details)


class MalformedIPEntryError(ValidationError):
    """An allowed-IP entry is not a valid address or CIDR prefix."""

    def __init__(self, entry: str, message: Optional[str] = None):
        self.entry = entry
        super().__init__(
            message or f"Malformed IP entry: {entry!r}",
            {"entry": entry},
            code="MALFORMED_IP_ENTRY",
        )


class PermissionNotAllowedError(ValidationError):
    """A permission was granted that the role tier may not hold."""

    def __init__(self, role: str, errors: list):
        self.role = role
        self.errors = list(errors)
        super().__init__(
            f"Permissions not allowed for role '{role}'",
            {"role": role, "errors": self.errors},
            code="PERMISSION_NOT_ALLOWED",
        )


class RoleNotFoundError(AccessCoreException):
    """No role record exists for the user."""

    status_code = 404

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("ROLE_NOT_FOUND", f"No role for user {user_id}", {"user_id": user_id})


class QueueFullError(AccessCoreException):
    """The client's admission queue is at capacity."""

    status_code = 429
    retryable = True

    def __init__(self, client_id: str, capacity: int, retry_after: int = 1):
        self.client_id = client_id
        self.retry_after = retry_after
        super().__init__(
            "QUEUE_FULL",
            "Too many queued requests. Please try again later.",
            {"client_id": client_id, "capacity": capacity, "retry_after": retry_after},
        )


class QueueTimeoutError(AccessCoreException):
    """A queued request was not admitted before its deadline."""

    status_code = 503
    retryable = True

    def __init__(self, client_id: str, waited_seconds: float, retry_after: int = 1):
        self.client_id = client_id
        self.retry_after = retry_after
        super().__init__(
            "QUEUE_TIMEOUT",
            "Request timeout. Please try again.",
            {"client_id": client_id, "waited_seconds": round(waited_seconds, 3), "retry_after": retry_after},
        )


class DedupTimeoutError(AccessCoreException):
    """A deduplicated request did not resolve within the wait window."""

    status_code = 504
    retryable = True

    def __init__(self, key: str, waited_seconds: float, retry_after: int = 1):
        self.key = key
        self.retry_after = retry_after
        super().__init__(
            "DEDUP_TIMEOUT",
            "Upstream request did not complete in time. Please try again.",
            {"key": key, "waited_seconds": round(waited_seconds, 3), "retry_after": retry_after},
        )
