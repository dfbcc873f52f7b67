"""
Typed failures raised by lease operations.

Each error carries a stable ``code`` and a ``details`` dict naming the
offending field or record so callers can render a precise message.
"""
from typing import Any, Dict, Optional


class LeaseError(Exception):
    code = "LEASE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(LeaseError):
    code = "FORM_400_VALIDATION_FAILED"


class AuthError(LeaseError):
    code = "AUTH_401_UNAUTHORIZED"


class ForbiddenError(LeaseError):
    code = "ACCESS_403_FORBIDDEN"


class NotFoundError(LeaseError):
    code = "NOT_FOUND_404"


class ConflictError(LeaseError):
    code = "CONFLICT_409"


class ServerError(LeaseError):
    code = "SERVER_ERROR"

    def __init__(self, message: str = "Internal Server Error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
