from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Every failure a core operation can report."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_NOT_ACTIVE = "token_not_active"
    SUBJECT_UNAVAILABLE = "subject_unavailable"
    INSUFFICIENT_ROLE = "insufficient_role"
    DUPLICATE_EMAIL = "duplicate_email"
    DUPLICATE_USERNAME = "duplicate_username"
    WEAK_PASSWORD = "weak_password"
    VALIDATION_FAILED = "validation_failed"
    INVALID_OR_EXPIRED_CODE = "invalid_or_expired_code"
    NOT_FOUND = "not_found"
    DELIVERY_FAILED = "delivery_failed"
    DEPENDENCY_FAILURE = "dependency_failure"
    INTERNAL = "internal"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code``, a stable envelope
    ``error_code`` and the :class:`ErrorKind` reported through ``AuthResult``.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: ErrorKind = ErrorKind.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    kind = ErrorKind.VALIDATION_FAILED


class ValidationFailed(ValidationError):
    """A registration or profile field is malformed."""


class WeakPassword(ValidationError):
    kind = ErrorKind.WEAK_PASSWORD

    def __init__(self, min_length: int) -> None:
        super().__init__(
            f"password must be at least {min_length} characters",
            detail={"field": "password", "min_length": min_length},
        )


class InvalidOrExpiredCode(ValidationError):
    """Unknown account, no code, expired code and wrong code look the same."""
    kind = ErrorKind.INVALID_OR_EXPIRED_CODE

    def __init__(self, message: str = "invalid or expired reset code") -> None:
        super().__init__(message)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind = ErrorKind.INVALID_CREDENTIALS


class InvalidCredentials(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("invalid credentials")


class InvalidToken(AuthenticationError):
    kind = ErrorKind.INVALID_TOKEN

    def __init__(self, message: str = "invalid token", *, reason: str = "malformed") -> None:
        super().__init__(message, detail={"reason": reason})


class TokenExpired(AuthenticationError):
    kind = ErrorKind.TOKEN_EXPIRED

    def __init__(self, expired_at: float) -> None:
        super().__init__("token expired", detail={"expired_at": expired_at})


class TokenNotActive(AuthenticationError):
    kind = ErrorKind.TOKEN_NOT_ACTIVE

    def __init__(self, not_before: float) -> None:
        super().__init__("token not yet valid", detail={"not_before": not_before})


class SubjectUnavailable(AuthenticationError):
    """Token subject no longer exists or has been deactivated."""
    kind = ErrorKind.SUBJECT_UNAVAILABLE

    def __init__(self) -> None:
        super().__init__("account unavailable")


class AuthorizationError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    kind = ErrorKind.INSUFFICIENT_ROLE


class AccountDeactivated(AuthorizationError):
    kind = ErrorKind.ACCOUNT_DEACTIVATED

    def __init__(self) -> None:
        super().__init__("account deactivated")


class InsufficientRole(AuthorizationError):
    def __init__(self, role: str, required: tuple[str, ...]) -> None:
        super().__init__(
            "insufficient role",
            detail={"role": role, "required": list(required)},
        )


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    kind = ErrorKind.NOT_FOUND


class LockedError(ServiceError):
    """Account is temporarily locked (423)."""
    status_code = 423
    error_code = "locked"
    kind = ErrorKind.ACCOUNT_LOCKED


class AccountLocked(LockedError):
    def __init__(self, remaining_seconds: int) -> None:
        super().__init__(
            "account temporarily locked",
            detail={"remaining_seconds": remaining_seconds},
        )
        self.remaining_seconds = remaining_seconds


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    kind = ErrorKind.DUPLICATE_EMAIL


class DuplicateEmail(ConflictError):
    def __init__(self) -> None:
        super().__init__("email already registered", detail={"field": "email"})


class DuplicateUsername(ConflictError):
    kind = ErrorKind.DUPLICATE_USERNAME

    def __init__(self) -> None:
        super().__init__("username already taken", detail={"field": "username"})


class DependencyError(ServiceError):
    """Store or notifier failed or timed out (503)."""
    status_code = 503
    error_code = "service_unavailable"
    kind = ErrorKind.DEPENDENCY_FAILURE


class DeliveryFailed(DependencyError):
    kind = ErrorKind.DELIVERY_FAILED

    def __init__(self) -> None:
        super().__init__("could not deliver reset code")


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    kind = ErrorKind.INTERNAL


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "ValidationFailed",
    "WeakPassword",
    "InvalidOrExpiredCode",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidToken",
    "TokenExpired",
    "TokenNotActive",
    "SubjectUnavailable",
    "AccountDeactivated",
    "AuthorizationError",
    "InsufficientRole",
    "NotFoundError",
    "LockedError",
    "AccountLocked",
    "ConflictError",
    "DuplicateEmail",
    "DuplicateUsername",
    "DependencyError",
    "DeliveryFailed",
    "InternalError",
]
