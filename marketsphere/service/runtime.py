from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from marketsphere.config import get_settings, reset_settings_cache
from marketsphere.logging import get_logger
from marketsphere.service.gate import RequestGate
from marketsphere.service.oauth import GoogleTokenVerifier
from marketsphere.service.revocation import RevocationStore
from marketsphere.service.sessions import SessionIssuer
from marketsphere.service.tokens import TokenCodec
from marketsphere.storage.memory import MemoryUserStore
from marketsphere.storage.postgres import PostgresUserStore
from marketsphere.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryUserStore()
                if self.settings.use_memory_store
                else PostgresUserStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        # The cache stays attached even when the first ping fails; the
        # revocation store reports DEGRADED and can reconnect later.
        self.cache: RedisCache | None = None
        if self.settings.redis_url:
            self.cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.redis_socket_timeout,
            )

        self.codec = TokenCodec.from_settings(self.settings)
        self.revocation = RevocationStore(
            self.codec,
            self.cache,
            default_ttl_seconds=self.settings.revocation_default_ttl_seconds,
        )
        if self.cache is None:
            logger.warning(
                "redis_not_configured",
                message="Revocation list and rate limits are in-process only.",
            )

        verifier = (
            GoogleTokenVerifier(
                self.settings.google_client_id,
                tokeninfo_url=self.settings.google_tokeninfo_url,
            )
            if self.settings.google_client_id
            else None
        )
        self.sessions = SessionIssuer(
            self.store,
            self.codec,
            self.revocation,
            self.settings,
            verifier=verifier,
        )
        self.gate = RequestGate(self.store, self.codec, self.revocation, self.settings)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_url=_mask_url_password(self.settings.redis_url),
            revocation_status=self.revocation.status.value,
            google_sign_in=verifier is not None,
            transport=self.settings.token_transport.value,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building two runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.store.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Enforce rate limits even when Redis is unavailable.

    Uses the Redis token bucket when a cache is attached and answering,
    otherwise an in-process token bucket with the same refill semantics.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache is not None:
        try:
            return await runtime.cache.check_rate_limit(
                key, limit, window_seconds, return_remaining=return_remaining, cost=cost
            )
        except (RedisError, OSError) as exc:
            logger.warning("rate_limit_redis_unavailable", error=str(exc))
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = (
            int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
