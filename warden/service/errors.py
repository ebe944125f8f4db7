from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the API error envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AuthErrorCode(str, Enum):
    """Stable failure codes returned by the authentication core."""

    IP_BLOCKED = "IP_BLOCKED"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    INVALID_MFA = "INVALID_MFA"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    ADMIN_NOT_FOUND = "ADMIN_NOT_FOUND"
    REFRESH_FAILED = "REFRESH_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    REFRESH_TOKEN_EXPIRED = "REFRESH_TOKEN_EXPIRED"
    INVALID_REFRESH_TOKEN = "INVALID_REFRESH_TOKEN"


AUTH_ERROR_STATUS: Dict[AuthErrorCode, int] = {
    AuthErrorCode.IP_BLOCKED: 403,
    AuthErrorCode.RATE_LIMITED: 429,
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.ACCOUNT_LOCKED: 423,
    AuthErrorCode.ACCOUNT_INACTIVE: 403,
    AuthErrorCode.INVALID_MFA: 401,
    AuthErrorCode.SESSION_NOT_FOUND: 401,
    AuthErrorCode.SESSION_EXPIRED: 401,
    AuthErrorCode.ADMIN_NOT_FOUND: 401,
    AuthErrorCode.REFRESH_FAILED: 500,
    AuthErrorCode.INTERNAL_ERROR: 500,
    AuthErrorCode.TOKEN_EXPIRED: 401,
    AuthErrorCode.INVALID_TOKEN: 401,
    AuthErrorCode.REFRESH_TOKEN_EXPIRED: 401,
    AuthErrorCode.INVALID_REFRESH_TOKEN: 401,
}


@dataclass(frozen=True)
class AuthFailure:
    """Tagged failure outcome: callers branch on ``code`` instead of catching."""

    code: AuthErrorCode
    message: str
    status_code: int
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(
        cls, code: AuthErrorCode, message: str, detail: Optional[Dict[str, Any]] = None
    ) -> "AuthFailure":
        return cls(
            code=code,
            message=message,
            status_code=AUTH_ERROR_STATUS[code],
            detail=dict(detail or {}),
        )

    def to_error(self) -> ServiceError:
        return ServiceError(
            self.message,
            status_code=self.status_code,
            detail=self.detail,
            error_code=self.code.value.lower(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "statusCode": self.status_code,
            "details": self.detail,
        }


class TokenError(Exception):
    """Raised by token verification with a distinguishable code."""

    def __init__(self, message: str, code: AuthErrorCode) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_failure(self) -> AuthFailure:
        return AuthFailure.of(self.code, self.message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "AuthErrorCode",
    "AUTH_ERROR_STATUS",
    "AuthFailure",
    "TokenError",
]
