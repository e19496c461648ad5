from __future__ import annotations

import asyncio
import hashlib
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from redis.exceptions import RedisError

from marketsphere.logging import get_logger
from marketsphere.service.tokens import TokenCodec
from marketsphere.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class Status(str, Enum):
    AVAILABLE = "available"
    DEGRADED = "degraded"


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class MemoryRevocationBackend:
    """Process-local hash -> expiry map.

    Lookups purge expired entries as they meet them; ``sweep`` clears the
    rest so the map does not grow with tokens nobody presents again.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()

    def add(self, digest: str, ttl_ms: int) -> None:
        if ttl_ms <= 0:
            return
        expires_at = self._clock() + ttl_ms / 1000.0
        with self._lock:
            current = self._entries.get(digest)
            # Revoking again never shortens an entry
            if current is None or expires_at > current:
                self._entries[digest] = expires_at

    def contains(self, digest: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(digest)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[digest]
                return False
            return True

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [digest for digest, exp in self._entries.items() if exp <= now]
            for digest in expired:
                del self._entries[digest]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RevocationStore:
    """Revocation list for access tokens that must die before their ``exp``.

    Entries are keyed by a SHA-256 of the raw token and live exactly as long
    as the token would have. Redis is the shared backend when configured; the
    in-process map covers unconfigured deployments entirely and keeps this
    process honoring revocations recorded while Redis was unreachable.

    Availability is tracked as an explicit ``Status``. ``is_revoked`` fails
    open: a backend error reports "not revoked", marks the store DEGRADED and
    logs the event, trading a short window of honoring a revoked token for not
    rejecting all authenticated traffic.
    """

    def __init__(
        self,
        codec: TokenCodec,
        cache: Optional[RedisCache] = None,
        *,
        default_ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
        probe: bool = True,
    ) -> None:
        self.codec = codec
        self.cache = cache
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self.local = MemoryRevocationBackend(clock=clock)
        self._status = Status.AVAILABLE
        if probe:
            self.probe()

    @property
    def status(self) -> Status:
        return self._status

    @property
    def backend(self) -> str:
        return "redis" if self.cache is not None else "memory"

    def probe(self) -> Status:
        """Ping the shared backend and record the outcome."""
        if self.cache is None:
            self._status = Status.AVAILABLE
            return self._status
        try:
            self.cache.verify_connection()
        except (RedisError, OSError) as exc:
            self._mark_degraded("probe", exc)
        else:
            if self._status is not Status.AVAILABLE:
                logger.info("revocation_backend_recovered", backend=self.backend)
            self._status = Status.AVAILABLE
        return self._status

    def reconnect(self) -> Status:
        logger.info("revocation_reconnect_requested", backend=self.backend)
        return self.probe()

    def health(self) -> Dict[str, Any]:
        return {
            "status": self._status.value,
            "backend": self.backend,
            "healthy": self._status is Status.AVAILABLE,
            "local_entries": len(self.local),
        }

    def _mark_degraded(self, operation: str, exc: Exception) -> None:
        if self._status is not Status.DEGRADED:
            logger.error(
                "revocation_backend_degraded",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        self._status = Status.DEGRADED

    def _remaining_ttl_ms(self, token: str) -> int:
        exp = self.codec.peek_expiry(token)
        if exp is None:
            return self.default_ttl_seconds * 1000
        return int((exp - self._clock()) * 1000)

    async def revoke(self, token: str) -> bool:
        """Revoke ``token`` until its own expiry. Idempotent.

        Returns False when the token has already expired and nothing was
        recorded.
        """
        ttl_ms = self._remaining_ttl_ms(token)
        if ttl_ms <= 0:
            logger.debug("revocation_skipped_expired")
            return False
        digest = token_hash(token)
        if self.cache is None:
            self.local.add(digest, ttl_ms)
            return True
        try:
            await self.cache.add_revoked(digest, ttl_ms)
        except (RedisError, OSError) as exc:
            self._mark_degraded("revoke", exc)
            self.local.add(digest, ttl_ms)
            logger.warning("revocation_recorded_locally", ttl_ms=ttl_ms)
        else:
            self._status = Status.AVAILABLE
        return True

    async def is_revoked(self, token: str) -> bool:
        digest = token_hash(token)
        if self.local.contains(digest):
            return True
        if self.cache is None:
            return False
        try:
            revoked = await self.cache.is_revoked(digest)
        except (RedisError, OSError) as exc:
            self._mark_degraded("check", exc)
            logger.warning("revocation_check_failed", error=str(exc), fail_open=True)
            return False
        self._status = Status.AVAILABLE
        return revoked

    def sweep(self) -> int:
        removed = self.local.sweep()
        if removed:
            logger.debug("revocation_sweep", removed=removed, remaining=len(self.local))
        return removed

    async def run_sweeper(self, interval_seconds: int) -> None:
        """Background loop purging expired local entries."""
        interval = max(interval_seconds, 1)
        try:
            while True:
                await asyncio.sleep(interval)
                self.sweep()
        except asyncio.CancelledError:
            logger.info("revocation_sweeper_cancelled")
            raise
