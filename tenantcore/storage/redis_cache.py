from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for ephemeral secrets and sliding-window counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Prune, count, conditional insert and expire in one atomic step.
    # Only admitted requests are recorded, so rejected callers do not
    # extend their own lockout.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  redis.call('ZADD', key, now, member)
  count = count + 1
  allowed = 1
end
redis.call('PEXPIRE', key, window)

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = now
if oldest[2] then
  oldest_score = tonumber(oldest[2])
end
return {allowed, count, oldest_score}
"""

    _GETDEL_FALLBACK_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a safe TTL from an absolute expiry timestamp.

        Naive timestamps are treated as UTC. Clamped to at least 1 second so
        Redis never rejects a zero or negative TTL.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so user input cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_secret(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def pop_secret(self, key: str) -> Optional[str]:
        """Atomically get and delete a secret so only one caller can read it."""
        try:
            return await self.client.getdel(key)
        except AttributeError:
            # Older redis-py without GETDEL: the Lua script is equally atomic
            return await self.client.eval(self._GETDEL_FALLBACK_SCRIPT, 1, key)

    async def delete_secret(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def secret_exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def sliding_window_hit(
        self, key: str, limit: int, window_ms: int, now_ms: int, member: str
    ) -> Tuple[bool, int, int]:
        """Record one request if the window has room.

        Returns ``(allowed, count_in_window, oldest_entry_ms)``.
        """
        allowed, count, oldest = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, window_ms, limit, member],
        )
        return bool(int(allowed)), int(count), int(oldest)

    async def sliding_window_status(
        self, key: str, window_ms: int, now_ms: int
    ) -> Tuple[int, Optional[int]]:
        """Read the live count without recording a request."""
        safe_key = self._normalize_rate_key(key)
        pipe = self.client.pipeline()
        pipe.zcount(safe_key, now_ms - window_ms + 1, "+inf")
        pipe.zrangebyscore(
            safe_key, now_ms - window_ms + 1, "+inf", start=0, num=1, withscores=True
        )
        count, oldest = await pipe.execute()
        oldest_ms = int(oldest[0][1]) if oldest else None
        return int(count), oldest_ms

    async def clear_rate_limit(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so it can be awaited like
    RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self._sync_client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def set_secret(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def pop_secret(self, key: str) -> Optional[str]:
        try:
            return self._sync_client.getdel(key)
        except AttributeError:
            return self._sync_client.eval(RedisCache._GETDEL_FALLBACK_SCRIPT, 1, key)

    async def delete_secret(self, key: str) -> bool:
        return bool(self._sync_client.delete(key))

    async def secret_exists(self, key: str) -> bool:
        return bool(self._sync_client.exists(key))

    async def sliding_window_hit(
        self, key: str, limit: int, window_ms: int, now_ms: int, member: str
    ) -> Tuple[bool, int, int]:
        allowed, count, oldest = self._sliding_window(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[now_ms, window_ms, limit, member],
        )
        return bool(int(allowed)), int(count), int(oldest)

    async def sliding_window_status(
        self, key: str, window_ms: int, now_ms: int
    ) -> Tuple[int, Optional[int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        pipe = self._sync_client.pipeline()
        pipe.zcount(safe_key, now_ms - window_ms + 1, "+inf")
        pipe.zrangebyscore(
            safe_key, now_ms - window_ms + 1, "+inf", start=0, num=1, withscores=True
        )
        count, oldest = pipe.execute()
        oldest_ms = int(oldest[0][1]) if oldest else None
        return int(count), oldest_ms

    async def clear_rate_limit(self, key: str) -> None:
        self._sync_client.delete(RedisCache._normalize_rate_key(key))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
