from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from marketsphere.config import Settings
from marketsphere.logging import get_logger
from marketsphere.service.errors import (
    AccountSuspendedError,
    AuthenticationError,
    InvalidCredentialsError,
    OAuthVerificationError,
    RefreshTokenMismatchError,
    UserNotFoundError,
)
from marketsphere.service.fingerprint import RequestContext, fingerprint
from marketsphere.service.oauth import OAuthVerifier
from marketsphere.service.passwords import (
    DUMMY_PASSWORD_HASH,
    random_password_hash,
    verify_password,
)
from marketsphere.service.revocation import RevocationStore
from marketsphere.service.tokens import ExpiryProfile, TokenCodec, TokenType
from marketsphere.storage.models import User, UserView

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
        password_hash: Optional[str] = None,
        is_verified: bool = False,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def record_login(self, user_id: str, *, refresh_token: str) -> Optional[User]: ...

    def rotate_refresh_token(self, user_id: str, expected: str, new: str) -> bool: ...

    def clear_refresh_token(self, user_id: str) -> bool: ...

    def set_suspended(self, user_id: str, suspended: bool) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def mark_verified(self, user_id: str) -> Optional[User]: ...

    def find_or_create_oauth_user(
        self,
        *,
        email: str,
        google_id: str,
        password_hash: str,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Tuple[User, bool]: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    remember: bool
    access_expires_in: int
    refresh_expires_in: int


@dataclass(frozen=True)
class LoginResult:
    user: UserView
    tokens: TokenPair


@dataclass(frozen=True)
class OAuthLoginResult(LoginResult):
    is_new_user: bool = False


class SessionIssuer:
    """Issue, rotate and retire token pairs for storefront users.

    Each user has at most one live refresh token: the one stored on the user
    record. Login overwrites it, refresh swaps it with a compare-and-overwrite,
    logout clears it. Any other refresh token, including one rotated out a
    moment ago, fails with ``REFRESH_TOKEN_MISMATCH``.
    """

    def __init__(
        self,
        store: UserStore,
        codec: TokenCodec,
        revocation: RevocationStore,
        settings: Settings,
        *,
        verifier: Optional[OAuthVerifier] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.revocation = revocation
        self.settings = settings
        self.verifier = verifier

    def _mint_pair(
        self, user_id: str, remember: bool, context: Optional[RequestContext]
    ) -> TokenPair:
        # Single minting path so every call site applies the same expiry profile
        profile = ExpiryProfile.from_settings(self.settings, remember)
        fp = (
            fingerprint(context)
            if context is not None and self.settings.fingerprint_binding
            else None
        )
        return TokenPair(
            access_token=self.codec.mint(user_id, TokenType.ACCESS, profile, fingerprint=fp),
            refresh_token=self.codec.mint(user_id, TokenType.REFRESH, profile),
            remember=remember,
            access_expires_in=int(profile.access_ttl.total_seconds()),
            refresh_expires_in=int(profile.refresh_ttl.total_seconds()),
        )

    def _finish_login(
        self, user: User, remember: bool, context: Optional[RequestContext]
    ) -> Tuple[UserView, TokenPair]:
        tokens = self._mint_pair(user.id, remember, context)
        updated = self.store.record_login(user.id, refresh_token=tokens.refresh_token)
        if updated is None:
            raise UserNotFoundError()
        return UserView.from_user(updated), tokens

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember: bool = False,
        context: Optional[RequestContext] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            verify_password(DUMMY_PASSWORD_HASH, password)
            logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()
        if not verify_password(user.password_hash, password):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_verified:
            logger.info("login_failed", reason="unverified", user_id=user.id)
            raise InvalidCredentialsError()
        if user.is_suspended:
            logger.info("login_failed", reason="suspended", user_id=user.id)
            raise AccountSuspendedError()
        view, tokens = self._finish_login(user, remember, context)
        logger.info("login_succeeded", user_id=user.id, remember=remember)
        return LoginResult(user=view, tokens=tokens)

    async def login_with_oauth(
        self,
        credential: str,
        *,
        remember: bool = False,
        context: Optional[RequestContext] = None,
    ) -> OAuthLoginResult:
        if self.verifier is None:
            raise OAuthVerificationError("google sign-in is not configured")
        identity = await self.verifier.verify(credential)
        if not identity.email_verified:
            logger.info("oauth_login_failed", reason="email_unverified")
            raise OAuthVerificationError("google account email is not verified")
        user, created = self.store.find_or_create_oauth_user(
            email=identity.email,
            google_id=identity.subject,
            password_hash=random_password_hash(),
            name=identity.name,
            avatar=identity.picture,
        )
        if user.is_suspended:
            logger.info("oauth_login_failed", reason="suspended", user_id=user.id)
            raise AccountSuspendedError()
        view, tokens = self._finish_login(user, remember, context)
        logger.info(
            "oauth_login_succeeded", user_id=user.id, is_new_user=created, remember=remember
        )
        return OAuthLoginResult(user=view, tokens=tokens, is_new_user=created)

    async def refresh(
        self,
        refresh_token: str,
        *,
        remember: bool = False,
        context: Optional[RequestContext] = None,
    ) -> TokenPair:
        claims = self.codec.verify(refresh_token, TokenType.REFRESH)
        user = self.store.get_user(claims.subject_id)
        if not user:
            raise UserNotFoundError()
        stored = user.refresh_token or ""
        if not stored or not hmac.compare_digest(stored, refresh_token):
            logger.warning("refresh_token_mismatch", user_id=user.id)
            raise RefreshTokenMismatchError()
        if user.is_suspended:
            raise AccountSuspendedError()
        tokens = self._mint_pair(user.id, remember, context)
        if not self.store.rotate_refresh_token(user.id, refresh_token, tokens.refresh_token):
            # A concurrent refresh rotated the token between the read and the write
            logger.warning("refresh_rotation_lost_race", user_id=user.id)
            raise RefreshTokenMismatchError()
        logger.info("refresh_rotated", user_id=user.id, remember=remember)
        return tokens

    async def logout(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        """Retire both tokens; revocation trouble never blocks the logout."""
        revoked = False
        if access_token:
            try:
                revoked = await self.revocation.revoke(access_token)
            except Exception as exc:
                logger.warning(
                    "logout_revoke_failed", error_type=type(exc).__name__, error=str(exc)
                )
        if user_id is None and refresh_token:
            try:
                user_id = self.codec.verify(refresh_token, TokenType.REFRESH).subject_id
            except AuthenticationError as exc:
                logger.info("logout_refresh_token_unusable", reason=exc.error_code)
        if user_id:
            self.store.clear_refresh_token(user_id)
        logger.info("logout_completed", user_id=user_id, access_revoked=revoked)

    def current_user(self, user_id: str) -> UserView:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return UserView.from_user(user)
