"""Tests for the access-token revocation list and its degraded mode."""

import asyncio
import time
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from marketsphere.service.revocation import (
    MemoryRevocationBackend,
    RevocationStore,
    Status,
    token_hash,
)
from marketsphere.service.tokens import ExpiryProfile, TokenCodec, TokenType
from marketsphere.storage.redis_cache import RedisCache

PROFILE = ExpiryProfile(access_ttl=timedelta(minutes=15), refresh_ttl=timedelta(days=7))


class FakeClock:
    def __init__(self):
        self.now = time.time()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeCache:
    """Stands in for RedisCache; flips between healthy and unreachable."""

    def __init__(self, *, healthy=True):
        self.healthy = healthy
        self.entries = {}

    def _check(self):
        if not self.healthy:
            raise RedisConnectionError("redis unreachable")

    def verify_connection(self):
        self._check()

    async def add_revoked(self, digest, ttl_ms):
        self._check()
        self.entries[digest] = ttl_ms

    async def is_revoked(self, digest):
        self._check()
        return digest in self.entries


@pytest.fixture
def codec():
    return TokenCodec(
        "revocation-access-secret-0123456789",
        "revocation-refresh-secret-0123456789",
        issuer="marketsphere-api",
        audience="marketsphere-app",
    )


@pytest.fixture
def token(codec):
    return codec.mint("user-1", TokenType.ACCESS, PROFILE)


class TestMemoryBackend:
    def test_entry_expires_with_clock(self):
        clock = FakeClock()
        backend = MemoryRevocationBackend(clock=clock)
        backend.add("digest", 1_000)

        assert backend.contains("digest")
        clock.advance(2)
        assert not backend.contains("digest")
        assert len(backend) == 0

    def test_revoking_again_never_shortens(self):
        clock = FakeClock()
        backend = MemoryRevocationBackend(clock=clock)
        backend.add("digest", 60_000)
        backend.add("digest", 1_000)

        clock.advance(10)
        assert backend.contains("digest")

    def test_sweep_purges_expired_entries(self):
        clock = FakeClock()
        backend = MemoryRevocationBackend(clock=clock)
        backend.add("short", 1_000)
        backend.add("long", 60_000)

        clock.advance(5)
        assert backend.sweep() == 1
        assert len(backend) == 1


class TestRevocationWithoutRedis:
    async def test_revoked_token_is_reported(self, codec, token):
        store = RevocationStore(codec)

        assert store.status is Status.AVAILABLE
        assert store.backend == "memory"
        assert await store.is_revoked(token) is False
        assert await store.revoke(token) is True
        assert await store.is_revoked(token) is True

    async def test_revoke_is_idempotent(self, codec, token):
        store = RevocationStore(codec)
        assert await store.revoke(token)
        assert await store.revoke(token)
        assert await store.is_revoked(token)
        assert len(store.local) == 1

    async def test_entry_lives_until_token_expiry(self, codec, token):
        clock = FakeClock()
        store = RevocationStore(codec, clock=clock)
        await store.revoke(token)

        clock.advance(14 * 60)
        assert await store.is_revoked(token)
        clock.advance(2 * 60)
        assert not await store.is_revoked(token)

    async def test_expired_token_is_not_recorded(self, codec):
        expired = codec.mint(
            "user-1",
            TokenType.ACCESS,
            ExpiryProfile(access_ttl=timedelta(seconds=-5), refresh_ttl=timedelta(days=1)),
        )
        store = RevocationStore(codec)
        assert await store.revoke(expired) is False
        assert len(store.local) == 0

    async def test_unreadable_token_uses_default_ttl(self, codec):
        clock = FakeClock()
        store = RevocationStore(codec, default_ttl_seconds=60, clock=clock)
        assert await store.revoke("not-a-jwt")
        assert await store.is_revoked("not-a-jwt")
        clock.advance(61)
        assert not await store.is_revoked("not-a-jwt")


class TestRevocationWithRedis:
    async def test_entries_go_to_redis_with_remaining_ttl(self, codec, token):
        cache = FakeCache()
        store = RevocationStore(codec, cache)

        assert store.backend == "redis"
        await store.revoke(token)

        ttl_ms = cache.entries[token_hash(token)]
        assert 14 * 60 * 1000 < ttl_ms <= 15 * 60 * 1000
        assert len(store.local) == 0
        assert await store.is_revoked(token)

    def test_probe_failure_marks_degraded(self, codec):
        store = RevocationStore(codec, FakeCache(healthy=False))
        assert store.status is Status.DEGRADED
        assert store.health() == {
            "status": "degraded",
            "backend": "redis",
            "healthy": False,
            "local_entries": 0,
        }

    async def test_check_fails_open_when_redis_is_down(self, codec, token):
        cache = FakeCache()
        store = RevocationStore(codec, cache)
        cache.entries[token_hash(token)] = 1000
        cache.healthy = False

        assert await store.is_revoked(token) is False
        assert store.status is Status.DEGRADED

    async def test_revoke_during_outage_is_kept_locally(self, codec, token):
        cache = FakeCache()
        store = RevocationStore(codec, cache)
        cache.healthy = False

        assert await store.revoke(token) is True
        assert store.status is Status.DEGRADED
        assert len(store.local) == 1
        # Still honored by this process while Redis is unreachable
        assert await store.is_revoked(token) is True

    def test_reconnect_restores_availability(self, codec):
        cache = FakeCache(healthy=False)
        store = RevocationStore(codec, cache)
        assert store.status is Status.DEGRADED

        cache.healthy = True
        assert store.reconnect() is Status.AVAILABLE
        assert store.health()["healthy"] is True


class TestSweeper:
    async def test_sweeper_stops_on_cancel(self, codec):
        store = RevocationStore(codec)
        task = asyncio.create_task(store.run_sweeper(1))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


def test_revocation_key_prefix():
    assert RedisCache.revocation_key("abc") == "jwt-blacklist:abc"
