"""Unit tests for minting and verifying access/refresh tokens."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from marketsphere.config import Settings
from marketsphere.service.errors import (
    FingerprintMismatchError,
    InvalidTokenError,
    InvalidTokenTypeError,
    TokenExpiredError,
    TokenNotActiveError,
)
from marketsphere.service.tokens import ExpiryProfile, TokenCodec, TokenType

ACCESS_SECRET = "unit-access-secret-0123456789abcdef"
REFRESH_SECRET = "unit-refresh-secret-0123456789abcdef"

SHORT = ExpiryProfile(access_ttl=timedelta(minutes=15), refresh_ttl=timedelta(days=7))


@pytest.fixture
def codec():
    return TokenCodec(
        ACCESS_SECRET, REFRESH_SECRET, issuer="marketsphere-api", audience="marketsphere-app"
    )


class TestMintAndVerify:
    """Round trips through the codec."""

    def test_access_token_carries_subject_and_type(self, codec):
        token = codec.mint("user-1", TokenType.ACCESS, SHORT)
        claims = codec.verify(token, TokenType.ACCESS)

        assert claims.subject_id == "user-1"
        assert claims.token_type is TokenType.ACCESS
        assert claims.fingerprint is None
        assert claims.token_id

    def test_expiry_follows_profile(self, codec):
        token = codec.mint("user-1", TokenType.REFRESH, SHORT)
        claims = codec.verify(token, TokenType.REFRESH)

        lifetime = claims.expires_at - claims.issued_at
        assert timedelta(days=7) - timedelta(seconds=2) <= lifetime <= timedelta(days=7)

    def test_each_mint_is_unique(self, codec):
        first = codec.mint("user-1", TokenType.REFRESH, SHORT)
        second = codec.mint("user-1", TokenType.REFRESH, SHORT)
        assert first != second

    def test_codec_requires_both_secrets(self):
        with pytest.raises(ValueError):
            TokenCodec(ACCESS_SECRET, "", issuer="i", audience="a")


class TestVerificationFailures:
    """Each failure maps to its own error code."""

    def test_refresh_token_rejected_as_access(self, codec):
        token = codec.mint("user-1", TokenType.REFRESH, SHORT)
        with pytest.raises(InvalidTokenTypeError) as excinfo:
            codec.verify(token, TokenType.ACCESS)
        assert excinfo.value.error_code == "INVALID_TOKEN_TYPE"
        assert excinfo.value.detail == {"expected": "access", "received": "refresh"}

    def test_access_token_rejected_as_refresh(self, codec):
        token = codec.mint("user-1", TokenType.ACCESS, SHORT)
        with pytest.raises(InvalidTokenTypeError):
            codec.verify(token, TokenType.REFRESH)

    def test_refresh_claims_signed_with_access_secret_are_invalid(self, codec):
        now = datetime.now(timezone.utc)
        forged = jwt.encode(
            {
                "sub": "user-1",
                "type": "refresh",
                "iat": now,
                "exp": now + timedelta(minutes=5),
                "iss": "marketsphere-api",
                "aud": "marketsphere-app",
            },
            ACCESS_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError) as excinfo:
            codec.verify(forged, TokenType.REFRESH)
        assert excinfo.value.error_code == "INVALID_TOKEN"

    def test_expired_token(self, codec):
        expired = ExpiryProfile(
            access_ttl=timedelta(seconds=-30), refresh_ttl=timedelta(seconds=-30)
        )
        token = codec.mint("user-1", TokenType.ACCESS, expired)
        with pytest.raises(TokenExpiredError) as excinfo:
            codec.verify(token, TokenType.ACCESS)
        assert excinfo.value.error_code == "TOKEN_EXPIRED"

    def test_not_yet_valid_token(self, codec):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "sub": "user-1",
                "type": "access",
                "iat": now,
                "nbf": now + timedelta(minutes=10),
                "exp": now + timedelta(minutes=20),
                "iss": "marketsphere-api",
                "aud": "marketsphere-app",
            },
            ACCESS_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(TokenNotActiveError):
            codec.verify(token, TokenType.ACCESS)

    def test_foreign_audience_rejected(self, codec):
        other = TokenCodec(
            ACCESS_SECRET, REFRESH_SECRET, issuer="marketsphere-api", audience="other-app"
        )
        token = other.mint("user-1", TokenType.ACCESS, SHORT)
        with pytest.raises(InvalidTokenError):
            codec.verify(token, TokenType.ACCESS)

    def test_foreign_issuer_rejected(self, codec):
        other = TokenCodec(
            ACCESS_SECRET, REFRESH_SECRET, issuer="someone-else", audience="marketsphere-app"
        )
        token = other.mint("user-1", TokenType.ACCESS, SHORT)
        with pytest.raises(InvalidTokenError):
            codec.verify(token, TokenType.ACCESS)

    @pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c"])
    def test_malformed_token(self, codec, garbage):
        with pytest.raises(InvalidTokenError):
            codec.verify(garbage, TokenType.ACCESS)


class TestFingerprintBinding:
    def test_matching_fingerprint_accepted(self, codec):
        token = codec.mint("user-1", TokenType.ACCESS, SHORT, fingerprint="fp-a")
        claims = codec.verify(token, TokenType.ACCESS, fingerprint="fp-a")
        assert claims.fingerprint == "fp-a"

    def test_mismatched_fingerprint_reports_invalid_token(self, codec):
        token = codec.mint("user-1", TokenType.ACCESS, SHORT, fingerprint="fp-a")
        with pytest.raises(FingerprintMismatchError) as excinfo:
            codec.verify(token, TokenType.ACCESS, fingerprint="fp-b")
        assert excinfo.value.error_code == "INVALID_TOKEN"

    def test_unbound_token_accepts_any_fingerprint(self, codec):
        token = codec.mint("user-1", TokenType.ACCESS, SHORT)
        claims = codec.verify(token, TokenType.ACCESS, fingerprint="fp-anything")
        assert claims.subject_id == "user-1"

    def test_bound_token_without_caller_fingerprint(self, codec):
        token = codec.mint("user-1", TokenType.ACCESS, SHORT, fingerprint="fp-a")
        assert codec.verify(token, TokenType.ACCESS).subject_id == "user-1"


class TestPeekExpiry:
    def test_reads_exp_without_verification(self, codec):
        token = codec.mint("user-1", TokenType.ACCESS, SHORT)
        exp = codec.peek_expiry(token)
        assert isinstance(exp, int)
        assert exp > datetime.now(timezone.utc).timestamp()

    def test_unreadable_token(self, codec):
        assert codec.peek_expiry("garbage") is None


class TestExpiryProfile:
    def _settings(self):
        return Settings(jwt_access_secret=ACCESS_SECRET, jwt_refresh_secret=REFRESH_SECRET)

    def test_short_profile(self):
        profile = ExpiryProfile.from_settings(self._settings(), remember=False)
        assert profile.access_ttl == timedelta(minutes=15)
        assert profile.refresh_ttl == timedelta(days=7)

    def test_remember_profile(self):
        profile = ExpiryProfile.from_settings(self._settings(), remember=True)
        assert profile.access_ttl == timedelta(days=7)
        assert profile.refresh_ttl == timedelta(days=30)
        assert profile.ttl_for(TokenType.REFRESH) == timedelta(days=30)
