from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    RATE_LIMITED = "rate_limited"
    ACCOUNT_BLOCKED = "account_blocked"
    INACTIVE_OR_DELETED_ACCOUNT = "inactive_or_deleted_account"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION_ERROR = "validation_error"
    DEPENDENCY_FAILURE = "dependency_failure"


class ServiceError(Exception):
    """Base class for auth-core failures.

    Each subclass pins a stable ``kind``; translating a kind into a transport
    status (HTTP or otherwise) is the caller's job.
    """

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class ValidationError(ServiceError):
    """Input rejected before touching any state."""
    kind = ErrorKind.VALIDATION_ERROR


class InvalidCredentialsError(ServiceError):
    """Password or API key did not match."""
    kind = ErrorKind.INVALID_CREDENTIALS


class InvalidOrExpiredTokenError(ServiceError):
    """Token missing, expired, superseded or wrong; the cases are never distinguished."""
    kind = ErrorKind.INVALID_OR_EXPIRED_TOKEN

    def __init__(self, message: str = "invalid or expired token", *, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)


class RateLimitedError(ServiceError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "too many attempts",
        *,
        retry_after: int = 0,
        attempts_remaining: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = retry_after
        self.attempts_remaining = attempts_remaining


class AccountBlockedError(ServiceError):
    kind = ErrorKind.ACCOUNT_BLOCKED

    def __init__(
        self,
        message: str = "account temporarily blocked",
        *,
        blocked_until: Optional[datetime] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.blocked_until = blocked_until


class InactiveAccountError(ServiceError):
    """Account is disabled or anonymized."""
    kind = ErrorKind.INACTIVE_OR_DELETED_ACCOUNT


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    """Duplicate or blacklisted identity."""
    kind = ErrorKind.CONFLICT


class DependencyFailureError(ServiceError):
    """Cache or store unreachable."""
    kind = ErrorKind.DEPENDENCY_FAILURE


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "InvalidOrExpiredTokenError",
    "RateLimitedError",
    "AccountBlockedError",
    "InactiveAccountError",
    "NotFoundError",
    "ConflictError",
    "DependencyFailureError",
]
