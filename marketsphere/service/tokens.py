from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import jwt

from marketsphere.logging import get_logger
from marketsphere.service.errors import (
    FingerprintMismatchError,
    InvalidTokenError,
    InvalidTokenTypeError,
    TokenExpiredError,
    TokenNotActiveError,
)

if TYPE_CHECKING:
    from marketsphere.config import Settings

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class ExpiryProfile:
    """Lifetimes applied to one access/refresh pair."""

    access_ttl: timedelta
    refresh_ttl: timedelta

    def ttl_for(self, token_type: TokenType) -> timedelta:
        return self.access_ttl if token_type is TokenType.ACCESS else self.refresh_ttl

    @classmethod
    def from_settings(cls, settings: "Settings", remember: bool) -> "ExpiryProfile":
        """Pick the long- or short-lived profile for the remember-me flag."""
        if remember:
            return cls(
                access_ttl=timedelta(minutes=settings.access_token_ttl_minutes_remember),
                refresh_ttl=timedelta(days=settings.refresh_token_ttl_days_remember),
            )
        return cls(
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
        )


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    fingerprint: Optional[str] = None
    token_id: Optional[str] = None


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenCodec:
    """Mint and verify signed, expiring access/refresh tokens.

    Access and refresh tokens are signed with independent secrets, so holding
    one secret never lets a caller forge the other type. Every token carries
    the deployment's issuer and audience, and verification rejects tokens
    minted for anything else.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both access and refresh signing secrets are required")
        self._secrets = {
            TokenType.ACCESS: access_secret,
            TokenType.REFRESH: refresh_secret,
        }
        self.issuer = issuer
        self.audience = audience
        self.leeway = timedelta(seconds=max(0, leeway_seconds))

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TokenCodec":
        return cls(
            settings.jwt_access_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    def mint(
        self,
        subject_id: str,
        token_type: TokenType,
        profile: ExpiryProfile,
        fingerprint: Optional[str] = None,
    ) -> str:
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "sub": subject_id,
            "type": token_type.value,
            "iat": now,
            "exp": now + profile.ttl_for(token_type),
            "iss": self.issuer,
            "aud": self.audience,
            # Unique per mint so a rotated pair never repeats within the same second
            "jti": uuid.uuid4().hex,
        }
        if fingerprint:
            payload["fp"] = fingerprint
        return jwt.encode(payload, self._secrets[token_type], algorithm=self.ALGORITHM)

    def verify(
        self,
        token: str,
        expected_type: TokenType,
        fingerprint: Optional[str] = None,
    ) -> TokenClaims:
        """Verify ``token`` as ``expected_type`` and return its claims.

        Raises ``InvalidTokenTypeError`` when the token names another type,
        ``TokenExpiredError`` once ``exp`` has passed, ``InvalidTokenError``
        for bad signatures, malformed input or a foreign issuer/audience, and
        ``FingerprintMismatchError`` when the token embeds a fingerprint and
        ``fingerprint`` differs from it. Tokens without an embedded
        fingerprint are accepted regardless of ``fingerprint``.
        """
        declared = self._unverified_claims(token).get("type")
        if declared != expected_type.value:
            raise InvalidTokenTypeError(
                detail={"expected": expected_type.value, "received": declared}
            )
        try:
            payload = jwt.decode(
                token,
                self._secrets[expected_type],
                algorithms=[self.ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": ["exp", "iat", "sub", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except jwt.ImmatureSignatureError as exc:
            raise TokenNotActiveError() from exc
        except jwt.InvalidTokenError as exc:
            logger.info("token_verification_failed", reason=type(exc).__name__)
            raise InvalidTokenError() from exc

        embedded = payload.get("fp")
        if embedded and fingerprint is not None:
            if not hmac.compare_digest(str(embedded), fingerprint):
                raise FingerprintMismatchError()

        return TokenClaims(
            subject_id=str(payload["sub"]),
            token_type=expected_type,
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
            fingerprint=embedded,
            token_id=payload.get("jti"),
        )

    def peek_expiry(self, token: str) -> Optional[int]:
        """Read ``exp`` without verifying the signature; None when unreadable."""
        try:
            exp = jwt.decode(token, options={"verify_signature": False}).get("exp")
        except jwt.InvalidTokenError:
            return None
        if isinstance(exp, (int, float)) and not isinstance(exp, bool):
            return int(exp)
        return None

    @staticmethod
    def _unverified_claims(token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError() from exc
