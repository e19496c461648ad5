import pytest
from pydantic import ValidationError

from marketsphere.config import Settings, TokenTransport, get_settings, reset_settings_cache

SECRETS = {
    "jwt_access_secret": "config-access-secret-0123456789",
    "jwt_refresh_secret": "config-refresh-secret-0123456789",
}


class TestSigningSecrets:
    def test_missing_access_secret_rejected(self):
        with pytest.raises(ValidationError, match="JWT_SECRET"):
            Settings(jwt_refresh_secret="only-refresh")

    def test_missing_refresh_secret_rejected(self):
        with pytest.raises(ValidationError, match="JWT_REFRESH_SECRET"):
            Settings(jwt_access_secret="only-access")

    def test_shared_secret_rejected(self):
        with pytest.raises(ValidationError, match="must differ"):
            Settings(jwt_access_secret="same", jwt_refresh_secret="same")


class TestDefaults:
    def test_expiry_defaults(self):
        settings = Settings(**SECRETS)
        assert settings.access_token_ttl_minutes == 15
        assert settings.access_token_ttl_minutes_remember == 7 * 24 * 60
        assert settings.refresh_token_ttl_days == 7
        assert settings.refresh_token_ttl_days_remember == 30
        assert settings.jwt_issuer == "marketsphere-api"
        assert settings.jwt_audience == "marketsphere-app"
        assert settings.fingerprint_binding is True

    @pytest.mark.parametrize(
        "transport,cookies,body",
        [
            (TokenTransport.BOTH, True, True),
            (TokenTransport.COOKIE, True, False),
            (TokenTransport.BEARER, False, True),
        ],
    )
    def test_transport_switches(self, transport, cookies, body):
        settings = Settings(token_transport=transport, **SECRETS)
        assert settings.cookies_enabled is cookies
        assert settings.body_tokens_enabled is body


class TestFromEnv:
    def test_reads_declared_env_names(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "env-access-secret")
        monkeypatch.setenv("JWT_REFRESH_SECRET", "env-refresh-secret")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("TOKEN_TRANSPORT", "cookie")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://shop.example.com, https://admin.example.com")

        settings = Settings.from_env()

        assert settings.jwt_access_secret == "env-access-secret"
        assert settings.access_token_ttl_minutes == 5
        assert settings.token_transport is TokenTransport.COOKIE
        assert settings.cors_allow_origins == [
            "https://shop.example.com",
            "https://admin.example.com",
        ]

    def test_settings_are_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("LOGIN_RATE_LIMIT", "42")
        reset_settings_cache()
        assert get_settings().login_rate_limit == 42
