from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from marketsphere.storage.models import UserView


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi-override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "NO_TOKEN",
    "TOKEN_EXPIRED",
    "TOKEN_NOT_ACTIVE",
    "INVALID_TOKEN",
    "INVALID_TOKEN_TYPE",
    "TOKEN_INVALIDATED",
    "USER_NOT_FOUND",
    "NO_USER",
    "ACCOUNT_SUSPENDED",
    "ADMIN_REQUIRED",
    "INVALID_CREDENTIALS",
    "REFRESH_TOKEN_MISMATCH",
    "MISSING_REFRESH_TOKEN",
    "OAUTH_FAILED",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "NOT_FOUND",
    "CONFLICT",
    "RATE_LIMITED",
    "VALIDATION_ERROR",
    "SERVER_ERROR",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=256)
    remember: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class GoogleLoginRequest(BaseModel):
    credential: str = Field(..., min_length=1, max_length=4096)
    remember: bool = False


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    remember: Optional[bool] = None


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class SuspendUserRequest(BaseModel):
    suspended: bool = True


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    is_verified: bool
    is_suspended: bool = False
    avatar: Optional[str] = None
    last_login: Optional[datetime] = None
    last_active: Optional[datetime] = None
    login_count: int = 0
    created_at: datetime

    @classmethod
    def from_view(cls, user: UserView) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            is_verified=user.is_verified,
            is_suspended=user.is_suspended,
            avatar=user.avatar,
            last_login=user.last_login,
            last_active=user.last_active,
            login_count=user.login_count,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    user: Optional[UserResponse] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    remember: bool = False
    is_new_user: Optional[bool] = None


class CurrentUserResponse(BaseModel):
    user: UserResponse
    remember_me: bool = False


class SessionStatusResponse(BaseModel):
    authenticated: bool
    user: Optional[UserResponse] = None


class RevocationHealthResponse(BaseModel):
    status: str
    backend: str
    healthy: bool
    local_entries: int = 0
