from __future__ import annotations

import math
import threading
import time
import uuid
import zlib
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from redis.exceptions import RedisError

from tenantcore.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPreset:
    limit: int
    window_seconds: int


RATE_LIMITS: Dict[str, RateLimitPreset] = {
    "standard": RateLimitPreset(60, 60),
    "bulk": RateLimitPreset(10, 60),
    "write": RateLimitPreset(30, 60),
    "sensitive": RateLimitPreset(5, 60),
    "auth": RateLimitPreset(10, 15 * 60),
    "strict": RateLimitPreset(3, 60),
}


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class SlidingWindowRateLimiter:
    """Sliding-window limiter over Redis sorted sets with a local fallback.

    With Redis the prune/count/record/expire sequence is one Lua call, so
    concurrent writers never over-admit. Without Redis each key keeps a
    deque of admitted timestamps guarded by one of a fixed set of shard
    locks, so unrelated keys never contend on a global lock.

    If Redis errors mid-request the limiter fails open and logs a warning.
    """

    def __init__(
        self,
        cache=None,
        *,
        clock: Callable[[], float] = time.time,
        shards: int = 16,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._shard_locks: List[threading.Lock] = [threading.Lock() for _ in range(shards)]
        self._windows: Dict[str, Deque[int]] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _lock_for(self, key: str) -> threading.Lock:
        return self._shard_locks[zlib.crc32(key.encode()) % len(self._shard_locks)]

    @staticmethod
    def _result(
        allowed: bool,
        limit: int,
        count: int,
        oldest_ms: Optional[int],
        now_ms: int,
        window_seconds: int,
    ) -> RateLimitResult:
        window_ms = window_seconds * 1000
        anchor = oldest_ms if oldest_ms is not None else now_ms
        reset_ms = anchor + window_ms
        retry_after = None
        if not allowed:
            retry_after = math.ceil((reset_ms - now_ms) / 1000)
            retry_after = min(max(retry_after, 1), window_seconds)
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=math.ceil(reset_ms / 1000),
            retry_after=retry_after,
        )

    def _open_result(self, limit: int, now_ms: int, window_seconds: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=limit,
            reset_at=math.ceil((now_ms + window_seconds * 1000) / 1000),
        )

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count one request against ``key`` and say whether it may proceed."""
        now_ms = self._now_ms()
        window_ms = window_seconds * 1000
        if self.cache is not None:
            member = f"{now_ms}-{uuid.uuid4().hex}"
            try:
                allowed, count, oldest = await self.cache.sliding_window_hit(
                    key, limit, window_ms, now_ms, member
                )
            except (RedisError, OSError) as exc:
                logger.warning("rate_limit_store_unavailable", error=str(exc))
                return self._open_result(limit, now_ms, window_seconds)
            return self._result(allowed, limit, count, oldest, now_ms, window_seconds)

        with self._lock_for(key):
            entries = self._windows.setdefault(key, deque())
            cutoff = now_ms - window_ms
            while entries and entries[0] <= cutoff:
                entries.popleft()
            allowed = len(entries) < limit
            if allowed:
                entries.append(now_ms)
            count = len(entries)
            oldest = entries[0] if entries else None
        return self._result(allowed, limit, count, oldest, now_ms, window_seconds)

    async def status(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Report the current window for ``key`` without recording a request."""
        now_ms = self._now_ms()
        window_ms = window_seconds * 1000
        if self.cache is not None:
            try:
                count, oldest = await self.cache.sliding_window_status(key, window_ms, now_ms)
            except (RedisError, OSError) as exc:
                logger.warning("rate_limit_store_unavailable", error=str(exc))
                return self._open_result(limit, now_ms, window_seconds)
        else:
            with self._lock_for(key):
                entries = self._windows.get(key) or deque()
                cutoff = now_ms - window_ms
                live = [ts for ts in entries if ts > cutoff]
            count = len(live)
            oldest = live[0] if live else None
        return self._result(count < limit, limit, count, oldest, now_ms, window_seconds)

    async def clear(self, key: str) -> None:
        if self.cache is not None:
            try:
                await self.cache.clear_rate_limit(key)
            except (RedisError, OSError) as exc:
                logger.warning("rate_limit_clear_failed", error=str(exc))
            return
        with self._lock_for(key):
            self._windows.pop(key, None)

    def cleanup_expired(self, max_window_seconds: int = 15 * 60) -> int:
        """Drop local keys with no entries inside the longest window in use."""
        cutoff = self._now_ms() - max_window_seconds * 1000
        removed = 0
        for key in list(self._windows):
            with self._lock_for(key):
                entries = self._windows.get(key)
                if entries is not None and (not entries or entries[-1] <= cutoff):
                    self._windows.pop(key, None)
                    removed += 1
        return removed
