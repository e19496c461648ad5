from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every exception carries an HTTP ``status_code`` and a stable machine
    ``error_code``. Clients branch on the code (for example, ``TOKEN_EXPIRED``
    is refreshable while ``INVALID_TOKEN_TYPE`` is not), so codes never change
    once published.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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
    error_code = "VALIDATION_ERROR"
    default_message = "invalid request"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "authentication required"


class NoTokenError(AuthenticationError):
    error_code = "NO_TOKEN"
    default_message = "no token provided"


class TokenExpiredError(AuthenticationError):
    error_code = "TOKEN_EXPIRED"
    default_message = "token expired"


class TokenNotActiveError(AuthenticationError):
    error_code = "TOKEN_NOT_ACTIVE"
    default_message = "token not active yet"


class InvalidTokenError(AuthenticationError):
    """Bad signature, malformed token, or wrong issuer/audience."""
    error_code = "INVALID_TOKEN"
    default_message = "invalid token"


class FingerprintMismatchError(InvalidTokenError):
    """Token was bound to a different client context.

    Reported to clients as a plain ``INVALID_TOKEN``; the distinct class only
    exists so logs can tell the two apart.
    """
    default_message = "invalid token"


class InvalidTokenTypeError(AuthenticationError):
    error_code = "INVALID_TOKEN_TYPE"
    default_message = "invalid token type"


class TokenInvalidatedError(AuthenticationError):
    error_code = "TOKEN_INVALIDATED"
    default_message = "token has been invalidated"


class UserNotFoundError(AuthenticationError):
    error_code = "USER_NOT_FOUND"
    default_message = "user not found"


class NoUserError(AuthenticationError):
    error_code = "NO_USER"
    default_message = "authentication required"


class InvalidCredentialsError(AuthenticationError):
    """Bad email, bad password, or unverified account; never says which."""
    error_code = "INVALID_CREDENTIALS"
    default_message = "invalid email or password"


class RefreshTokenMismatchError(AuthenticationError):
    error_code = "REFRESH_TOKEN_MISMATCH"
    default_message = "refresh token does not match the active session"


class MissingRefreshTokenError(AuthenticationError):
    error_code = "MISSING_REFRESH_TOKEN"
    default_message = "refresh token required"


class OAuthVerificationError(AuthenticationError):
    error_code = "OAUTH_FAILED"
    default_message = "google sign-in could not be verified"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "access denied"


class AccountSuspendedError(ForbiddenError):
    error_code = "ACCOUNT_SUSPENDED"
    default_message = "account suspended"


class AdminRequiredError(ForbiddenError):
    error_code = "ADMIN_REQUIRED"
    default_message = "admin access required"


class NotFoundError(ServiceError):
    """Resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "not found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"
    default_message = "too many requests, please try again later"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"
    default_message = "internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NoTokenError",
    "TokenExpiredError",
    "TokenNotActiveError",
    "InvalidTokenError",
    "FingerprintMismatchError",
    "InvalidTokenTypeError",
    "TokenInvalidatedError",
    "UserNotFoundError",
    "NoUserError",
    "InvalidCredentialsError",
    "RefreshTokenMismatchError",
    "MissingRefreshTokenError",
    "OAuthVerificationError",
    "ForbiddenError",
    "AccountSuspendedError",
    "AdminRequiredError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
]
