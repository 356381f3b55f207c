"""Tests for the single-use token vault.

Covers:
- Token generation entropy and encodings
- Consume-once semantics under concurrency
- TTL enforcement against the injected clock
- Slot replacement used by WebAuthn challenges
- Redis error propagation
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tenantcore.service.errors import UpstreamError
from tenantcore.service.vault import TokenVault, generate_token, hash_token


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class InMemorySecretCache:
    """Async cache double with GETDEL semantics."""

    def __init__(self):
        self.data = {}

    async def set_secret(self, key, value, ttl_seconds):
        self.data[key] = value

    async def pop_secret(self, key):
        return self.data.pop(key, None)

    async def delete_secret(self, key):
        return self.data.pop(key, None) is not None

    async def secret_exists(self, key):
        return key in self.data


class YieldingSecretCache(InMemorySecretCache):
    """Suspends after each pop so concurrent consumers interleave."""

    def __init__(self):
        super().__init__()
        self.pops = 0

    async def pop_secret(self, key):
        self.pops += 1
        value = self.data.pop(key, None)
        await asyncio.sleep(0)
        return value


class TestGenerateToken:
    def test_hex_token_has_256_bits(self):
        token = generate_token()
        assert len(token) == 64
        int(token, 16)

    def test_urlsafe_encoding(self):
        token = generate_token(encoding="urlsafe")
        assert len(token) >= 43
        assert all(c.isalnum() or c in "-_" for c in token)

    def test_short_tokens_rejected(self):
        with pytest.raises(ValueError):
            generate_token(16)

    def test_tokens_are_unique(self):
        assert len({generate_token() for _ in range(50)}) == 50


class TestConsume:
    async def test_issue_then_consume_returns_payload_once(self):
        vault = TokenVault(namespace="test")
        token = await vault.issue({"email": "a@example.com"}, 60, owner_key="user-1")

        entry = await vault.consume(token)
        assert entry is not None
        assert entry.payload == {"email": "a@example.com"}
        assert entry.owner == "user-1"
        assert await vault.consume(token) is None

    async def test_unknown_and_empty_tokens(self):
        vault = TokenVault(namespace="test")
        assert await vault.consume("nope") is None
        assert await vault.consume("") is None

    async def test_expired_entry_is_not_returned(self):
        clock = FakeClock()
        vault = TokenVault(namespace="test", clock=clock)
        token = await vault.issue({"x": 1}, 60)
        clock.advance(seconds=61)
        assert await vault.consume(token) is None

    async def test_entry_valid_right_up_to_ttl(self):
        clock = FakeClock()
        vault = TokenVault(namespace="test", clock=clock)
        token = await vault.issue({"x": 1}, 60)
        clock.advance(seconds=59)
        assert await vault.consume(token) is not None

    def test_concurrent_consumers_see_one_winner(self):
        vault = TokenVault(namespace="test")
        token = asyncio.run(vault.issue({"x": 1}, 60))
        barrier = threading.Barrier(16)
        results = []

        def consume():
            barrier.wait(timeout=5)
            results.append(asyncio.run(vault.consume(token)))

        threads = [threading.Thread(target=consume) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(results) == 16
        assert sum(1 for r in results if r is not None) == 1

    async def test_interleaved_cache_consumers_see_one_winner(self):
        cache = YieldingSecretCache()
        vault = TokenVault(cache, namespace="test")
        token = await vault.issue({"x": 1}, 60)

        results = await asyncio.gather(*(vault.consume(token) for _ in range(20)))
        assert cache.pops == 20
        assert sum(1 for r in results if r is not None) == 1

    async def test_namespaces_are_isolated(self):
        a = TokenVault(namespace="a")
        b = TokenVault(namespace="b")
        token = await a.issue({"x": 1}, 60)
        assert a._storage_key(token) != b._storage_key(token)

    async def test_storage_key_never_contains_raw_token(self):
        cache = InMemorySecretCache()
        vault = TokenVault(cache, namespace="test")
        token = await vault.issue({"x": 1}, 60)
        (key,) = cache.data.keys()
        assert token not in key
        assert key.endswith(hash_token(token))


class TestInvalidateAndExists:
    async def test_invalidate_removes_token(self):
        vault = TokenVault(namespace="test")
        token = await vault.issue({"x": 1}, 60)
        assert await vault.exists(token)
        assert await vault.invalidate(token) is True
        assert not await vault.exists(token)
        assert await vault.consume(token) is None

    async def test_invalidate_missing_returns_false(self):
        vault = TokenVault(namespace="test")
        assert await vault.invalidate("missing") is False


class TestSlots:
    async def test_newer_slot_write_replaces_older(self):
        vault = TokenVault(namespace="webauthn")
        await vault.put_slot("user-1:registration", {"challenge": "first"}, 60)
        await vault.put_slot("user-1:registration", {"challenge": "second"}, 60)

        entry = await vault.take_slot("user-1:registration")
        assert entry.payload == {"challenge": "second"}
        assert await vault.take_slot("user-1:registration") is None

    async def test_cleanup_expired_drops_local_entries(self):
        clock = FakeClock()
        vault = TokenVault(namespace="test", clock=clock)
        await vault.issue({"x": 1}, 10)
        await vault.issue({"x": 2}, 600)
        clock.advance(seconds=11)
        assert vault.cleanup_expired() == 1


class TestRedisBackend:
    async def test_round_trip_through_cache(self):
        vault = TokenVault(InMemorySecretCache(), namespace="test")
        token = await vault.issue({"x": 1}, 60)
        assert (await vault.consume(token)).payload == {"x": 1}
        assert await vault.consume(token) is None

    async def test_redis_failure_raises_upstream_error(self):
        cache = InMemorySecretCache()
        cache.pop_secret = AsyncMock(side_effect=RedisConnectionError("down"))
        vault = TokenVault(cache, namespace="test")
        with pytest.raises(UpstreamError):
            await vault.consume("token")

    async def test_corrupt_entry_is_ignored(self):
        cache = InMemorySecretCache()
        vault = TokenVault(cache, namespace="test")
        cache.data[vault._storage_key("tok")] = "{not json"
        assert await vault.consume("tok") is None
