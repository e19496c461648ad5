from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TokenTransport(str, Enum):
    """Where issued tokens travel between the API and its clients."""

    COOKIE = "cookie"
    BEARER = "bearer"
    BOTH = "both"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the storefront session-security core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/marketsphere", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Revocation list and rate limit backend; in-process fallback when unset",
    )
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between isolated test runs.",
    )

    # Token signing. Access and refresh tokens never share a secret.
    jwt_access_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("marketsphere-api", "JWT_ISSUER")
    jwt_audience: str = env_field("marketsphere-app", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")

    # Expiry profiles selected by the remember-me flag
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    access_token_ttl_minutes_remember: int = env_field(
        7 * 24 * 60, "ACCESS_TOKEN_TTL_MINUTES_REMEMBER"
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_ttl_days_remember: int = env_field(
        30, "REFRESH_TOKEN_TTL_DAYS_REMEMBER"
    )

    fingerprint_binding: bool = env_field(
        True,
        "FINGERPRINT_BINDING",
        description="Embed a client-context hash in access tokens and check it per request",
    )
    revocation_default_ttl_seconds: int = env_field(
        300, "REVOCATION_DEFAULT_TTL_SECONDS"
    )
    revocation_sweep_interval_seconds: int = env_field(
        60, "REVOCATION_SWEEP_INTERVAL_SECONDS"
    )

    # Google sign-in
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "GOOGLE_TOKENINFO_URL"
    )

    # HTTP surface
    token_transport: TokenTransport = env_field(TokenTransport.BOTH, "TOKEN_TRANSPORT")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    admin_role: str = env_field("admin", "ADMIN_ROLE")

    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    refresh_rate_limit: int = env_field(15, "REFRESH_RATE_LIMIT")
    refresh_rate_window_seconds: int = env_field(
        15 * 60, "REFRESH_RATE_WINDOW_SECONDS"
    )
    # Per-user budget for every authenticated route
    general_rate_limit: int = env_field(100, "GENERAL_RATE_LIMIT")
    general_rate_window_seconds: int = env_field(
        15 * 60, "GENERAL_RATE_WINDOW_SECONDS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("token_transport")
    @classmethod
    def _validate_transport(cls, value: TokenTransport) -> TokenTransport:
        return TokenTransport(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _require_signing_secrets(self) -> "Settings":
        # Missing secrets abort startup instead of failing per request
        if not self.jwt_access_secret:
            raise ValueError("JWT_SECRET must be set")
        if not self.jwt_refresh_secret:
            raise ValueError("JWT_REFRESH_SECRET must be set")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def cookies_enabled(self) -> bool:
        return self.token_transport in (TokenTransport.COOKIE, TokenTransport.BOTH)

    @property
    def body_tokens_enabled(self) -> bool:
        return self.token_transport in (TokenTransport.BEARER, TokenTransport.BOTH)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
