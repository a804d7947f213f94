from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``.
    Everything below 500 is an operational error: expected, logged at warning
    level and returned to the client as ``{"success": false, "message": ...}``.
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
    """Malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Base for every 401 outcome."""
    status_code = 401
    error_code = "unauthorized"


class UnauthenticatedError(AuthenticationError):
    """No usable identity on the request (401)."""
    pass


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are deliberately indistinguishable."""
    error_code = "invalid_credentials"


class AccountNotActiveError(AuthenticationError):
    error_code = "account_not_active"


class InvalidTokenError(AuthenticationError):
    """Bad signature, malformed token or wrong token type (401)."""
    error_code = "invalid_token"


class ExpiredTokenError(AuthenticationError):
    """Signature is fine but the embedded expiry has lapsed (401)."""
    error_code = "expired_token"


class SessionExpiredError(AuthenticationError):
    """Session row missing, revoked or lapsed, independent of token expiry (401)."""
    error_code = "session_expired"


class ForbiddenError(ServiceError):
    """Authenticated but role or tenant scope is insufficient (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate unique key (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class InternalError(ServiceError):
    """Unexpected failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthenticatedError",
    "InvalidCredentialsError",
    "AccountNotActiveError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "InternalError",
]
