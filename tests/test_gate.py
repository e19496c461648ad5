"""Tests for per-request authentication and the admin check."""

from datetime import timedelta

import pytest

from marketsphere.config import Settings
from marketsphere.service.errors import (
    AccountSuspendedError,
    AdminRequiredError,
    InvalidTokenError,
    InvalidTokenTypeError,
    NoTokenError,
    NoUserError,
    TokenExpiredError,
    TokenInvalidatedError,
    UserNotFoundError,
)
from marketsphere.service.fingerprint import RequestContext, fingerprint
from marketsphere.service.gate import ACCESS_TOKEN_COOKIE, RequestGate, extract_token
from marketsphere.service.revocation import RevocationStore
from marketsphere.service.tokens import ExpiryProfile, TokenCodec, TokenType
from marketsphere.storage.memory import MemoryUserStore

PROFILE = ExpiryProfile(access_ttl=timedelta(minutes=15), refresh_ttl=timedelta(days=7))
CONTEXT = RequestContext(ip="198.51.100.4", user_agent="gate-agent", accept_language="en")


class Harness:
    def __init__(self, **settings_overrides):
        self.settings = Settings(
            jwt_access_secret="gate-access-secret-0123456789abcdef",
            jwt_refresh_secret="gate-refresh-secret-0123456789abcdef",
            **settings_overrides,
        )
        self.store = MemoryUserStore()
        self.codec = TokenCodec.from_settings(self.settings)
        self.revocation = RevocationStore(self.codec)
        self.gate = RequestGate(self.store, self.codec, self.revocation, self.settings)

    def user(self, **kwargs):
        return self.store.create_user("gate@example.com", is_verified=True, **kwargs)

    def access_token(self, user_id, *, context=None, profile=PROFILE):
        fp = fingerprint(context) if context is not None else None
        return self.codec.mint(user_id, TokenType.ACCESS, profile, fingerprint=fp)


@pytest.fixture
def harness():
    return Harness()


class TestExtractToken:
    def test_bearer_header(self):
        assert extract_token("Bearer abc.def") == "abc.def"

    def test_scheme_is_case_insensitive(self):
        assert extract_token("bearer abc") == "abc"

    def test_header_wins_over_cookie(self):
        assert extract_token("Bearer header", {ACCESS_TOKEN_COOKIE: "cookie"}) == "header"

    def test_cookie_fallback(self):
        assert extract_token(None, {ACCESS_TOKEN_COOKIE: "cookie"}) == "cookie"

    def test_non_bearer_scheme_ignored(self):
        assert extract_token("Basic dXNlcjpwYXNz") is None


class TestAuthenticate:
    async def test_valid_token_yields_context(self, harness):
        user = harness.user()
        token = harness.access_token(user.id)

        ctx = await harness.gate.authenticate(f"Bearer {token}")

        assert ctx.user_id == user.id
        assert ctx.role == "user"
        assert ctx.token == token
        assert ctx.claims.subject_id == user.id

    async def test_cookie_token_accepted(self, harness):
        user = harness.user()
        token = harness.access_token(user.id)
        ctx = await harness.gate.authenticate(None, {ACCESS_TOKEN_COOKIE: token})
        assert ctx.user_id == user.id

    async def test_missing_token(self, harness):
        with pytest.raises(NoTokenError) as excinfo:
            await harness.gate.authenticate(None, {})
        assert excinfo.value.error_code == "NO_TOKEN"
        assert excinfo.value.status_code == 401

    async def test_revoked_token(self, harness):
        user = harness.user()
        token = harness.access_token(user.id)
        await harness.revocation.revoke(token)

        with pytest.raises(TokenInvalidatedError) as excinfo:
            await harness.gate.authenticate(f"Bearer {token}")
        assert excinfo.value.error_code == "TOKEN_INVALIDATED"

    async def test_expired_token(self, harness):
        user = harness.user()
        token = harness.access_token(
            user.id,
            profile=ExpiryProfile(
                access_ttl=timedelta(seconds=-10), refresh_ttl=timedelta(days=1)
            ),
        )
        with pytest.raises(TokenExpiredError):
            await harness.gate.authenticate(f"Bearer {token}")

    async def test_refresh_token_presented_as_access(self, harness):
        user = harness.user()
        token = harness.codec.mint(user.id, TokenType.REFRESH, PROFILE)
        with pytest.raises(InvalidTokenTypeError):
            await harness.gate.authenticate(f"Bearer {token}")

    async def test_unknown_user(self, harness):
        token = harness.access_token("ghost")
        with pytest.raises(UserNotFoundError):
            await harness.gate.authenticate(f"Bearer {token}")

    async def test_suspended_user_rejected_with_valid_token(self, harness):
        user = harness.user()
        token = harness.access_token(user.id)
        harness.store.set_suspended(user.id, True)

        with pytest.raises(AccountSuspendedError) as excinfo:
            await harness.gate.authenticate(f"Bearer {token}")
        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "ACCOUNT_SUSPENDED"

    async def test_fingerprint_match(self, harness):
        user = harness.user()
        token = harness.access_token(user.id, context=CONTEXT)
        ctx = await harness.gate.authenticate(f"Bearer {token}", context=CONTEXT)
        assert ctx.user_id == user.id

    async def test_fingerprint_mismatch_is_invalid_token(self, harness):
        user = harness.user()
        token = harness.access_token(user.id, context=CONTEXT)
        elsewhere = RequestContext(ip="192.0.2.99", user_agent="gate-agent", accept_language="en")

        with pytest.raises(InvalidTokenError) as excinfo:
            await harness.gate.authenticate(f"Bearer {token}", context=elsewhere)
        assert excinfo.value.error_code == "INVALID_TOKEN"

    async def test_fingerprint_binding_disabled(self):
        harness = Harness(fingerprint_binding=False)
        user = harness.user()
        token = harness.access_token(user.id, context=CONTEXT)
        elsewhere = RequestContext(ip="192.0.2.99")

        ctx = await harness.gate.authenticate(f"Bearer {token}", context=elsewhere)
        assert ctx.user_id == user.id


class TestOptionalAndAdmin:
    async def test_optional_returns_none_without_token(self, harness):
        assert await harness.gate.authenticate_optional(None) is None

    async def test_optional_returns_none_for_bad_token(self, harness):
        assert await harness.gate.authenticate_optional("Bearer nonsense") is None

    async def test_optional_returns_context_for_good_token(self, harness):
        user = harness.user()
        ctx = await harness.gate.authenticate_optional(f"Bearer {harness.access_token(user.id)}")
        assert ctx is not None and ctx.user_id == user.id

    async def test_require_admin_without_context(self, harness):
        with pytest.raises(NoUserError):
            harness.gate.require_admin(None)

    async def test_require_admin_rejects_plain_user(self, harness):
        user = harness.user()
        ctx = await harness.gate.authenticate(f"Bearer {harness.access_token(user.id)}")
        with pytest.raises(AdminRequiredError) as excinfo:
            harness.gate.require_admin(ctx)
        assert excinfo.value.status_code == 403

    async def test_require_admin_accepts_admin(self, harness):
        user = harness.user(role="admin")
        ctx = await harness.gate.authenticate(f"Bearer {harness.access_token(user.id)}")
        assert harness.gate.require_admin(ctx) is ctx

    async def test_optional_returns_none_when_store_fails(self, harness):
        user = harness.user()
        token = harness.access_token(user.id)

        class FailingStore:
            def get_user(self, user_id):
                raise ConnectionError("database unavailable")

        harness.gate.store = FailingStore()

        assert await harness.gate.authenticate_optional(f"Bearer {token}") is None
        with pytest.raises(ConnectionError):
            await harness.gate.authenticate(f"Bearer {token}")
