from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from marketsphere.config import Settings
from marketsphere.logging import get_logger
from marketsphere.service.errors import (
    AccountSuspendedError,
    AdminRequiredError,
    FingerprintMismatchError,
    NoTokenError,
    NoUserError,
    ServiceError,
    TokenInvalidatedError,
    UserNotFoundError,
)
from marketsphere.service.fingerprint import RequestContext, fingerprint
from marketsphere.service.revocation import RevocationStore
from marketsphere.service.sessions import UserStore
from marketsphere.service.tokens import TokenClaims, TokenCodec, TokenType
from marketsphere.storage.models import UserView

logger = get_logger(__name__)

ACCESS_TOKEN_COOKIE = "accessToken"


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller handed to route handlers."""

    user: UserView
    token: str
    claims: TokenClaims

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


def extract_token(
    authorization: Optional[str], cookies: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """Bearer header first, then the access token cookie."""
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    if cookies:
        token = cookies.get(ACCESS_TOKEN_COOKIE)
        if token:
            return token
    return None


class RequestGate:
    """Single-pass authentication of one request.

    Steps, each failing with its own error: token present, not revoked,
    signature/expiry/type valid, user exists, user not suspended.
    """

    def __init__(
        self,
        store: UserStore,
        codec: TokenCodec,
        revocation: RevocationStore,
        settings: Settings,
    ) -> None:
        self.store = store
        self.codec = codec
        self.revocation = revocation
        self.settings = settings

    async def authenticate(
        self,
        authorization: Optional[str],
        cookies: Optional[Mapping[str, str]] = None,
        context: Optional[RequestContext] = None,
    ) -> AuthContext:
        token = extract_token(authorization, cookies)
        if not token:
            raise NoTokenError()
        if await self.revocation.is_revoked(token):
            logger.info("access_token_revoked_presented")
            raise TokenInvalidatedError()
        fp = (
            fingerprint(context)
            if context is not None and self.settings.fingerprint_binding
            else None
        )
        try:
            claims = self.codec.verify(token, TokenType.ACCESS, fingerprint=fp)
        except FingerprintMismatchError:
            logger.warning("access_token_fingerprint_mismatch")
            raise
        user = self.store.get_user(claims.subject_id)
        if not user:
            raise UserNotFoundError()
        if user.is_suspended:
            raise AccountSuspendedError()
        return AuthContext(user=UserView.from_user(user), token=token, claims=claims)

    async def authenticate_optional(
        self,
        authorization: Optional[str],
        cookies: Optional[Mapping[str, str]] = None,
        context: Optional[RequestContext] = None,
    ) -> Optional[AuthContext]:
        """Same checks as ``authenticate`` but anonymous on any failure."""
        try:
            return await self.authenticate(authorization, cookies, context)
        except ServiceError as exc:
            if not isinstance(exc, NoTokenError):
                logger.debug("optional_auth_skipped", reason=exc.error_code)
            return None
        except Exception as exc:
            # Backend trouble downgrades the caller to anonymous
            logger.warning(
                "optional_auth_skipped", reason="backend_error", error_type=type(exc).__name__
            )
            return None

    def require_admin(self, ctx: Optional[AuthContext]) -> AuthContext:
        if ctx is None:
            raise NoUserError()
        if ctx.role != self.settings.admin_role:
            logger.warning("admin_required", user_id=ctx.user_id, role=ctx.role)
            raise AdminRequiredError()
        return ctx
