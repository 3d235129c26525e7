"""
chatrelay: Error taxonomy for callables and handlers.

Every error carries a callable status (the string the mobile clients switch
on) and the HTTP status the API answers with.
"""

import math
from typing import Optional


class RelayError(Exception):
    """Base class for errors surfaced to a caller."""

    status = "INTERNAL"
    http_status = 500

    def __init__(self, message: str = "", details: Optional[dict] = None):
        super().__init__(message or self.status.lower())
        self.message = message or self.status.lower()
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": {
                "status": self.status,
                "message": self.message,
                "details": self.details,
            }
        }


class InvalidArgument(RelayError):
    status = "INVALID_ARGUMENT"
    http_status = 400


class Unauthenticated(RelayError):
    status = "UNAUTHENTICATED"
    http_status = 401


class PermissionDenied(RelayError):
    status = "PERMISSION_DENIED"
    http_status = 403


class NotFound(RelayError):
    status = "NOT_FOUND"
    http_status = 404


class AlreadyExists(RelayError):
    status = "ALREADY_EXISTS"
    http_status = 409


class RateLimitExceeded(RelayError):
    """Caller exceeded the per-operation ceiling. Not a system fault."""

    status = "RESOURCE_EXHAUSTED"
    http_status = 429

    def __init__(self, operation: str, retry_after_seconds: int):
        super().__init__(
            f"Too many {operation} requests, retry after {retry_after_seconds}s",
            {"retryAfterSeconds": retry_after_seconds, "operation": operation},
        )
        self.operation = operation
        self.retry_after_seconds = retry_after_seconds


class ServiceUnavailable(RelayError):
    status = "UNAVAILABLE"
    http_status = 503

    def __init__(self, message: str = "", retry_after_seconds: int = 0):
        details = {"retryAfterSeconds": retry_after_seconds} if retry_after_seconds else {}
        super().__init__(message or "service unavailable", details)
        self.retry_after_seconds = retry_after_seconds


class CircuitOpenError(ServiceUnavailable):
    """Raised when a breaker refuses a call while OPEN."""

    def __init__(self, name: str, remaining_secs: float):
        retry_after = max(1, math.ceil(remaining_secs))
        super().__init__(
            f"{name} service unavailable, retry after {retry_after} seconds",
            retry_after,
        )
        self.name = name


class DeadlineExceeded(RelayError):
    status = "DEADLINE_EXCEEDED"
    http_status = 504


class InternalError(RelayError):
    status = "INTERNAL"
    http_status = 500
