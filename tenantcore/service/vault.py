from __future__ import annotations

import hashlib
import json
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from tenantcore.logging import get_logger
from tenantcore.service.errors import UpstreamError
from tenantcore.storage.models import utcnow

logger = get_logger(__name__)


def generate_token(nbytes: int = 32, *, encoding: str = "hex") -> str:
    """Return a random secret with at least 256 bits of entropy by default."""
    if nbytes < 32:
        raise ValueError("ephemeral secrets need at least 32 random bytes")
    if encoding == "urlsafe":
        return secrets.token_urlsafe(nbytes)
    return secrets.token_hex(nbytes)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class VaultEntry:
    payload: Dict[str, Any]
    owner: Optional[str]
    created_at: datetime
    ttl_seconds: int

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.ttl_seconds)

    def to_json(self) -> str:
        return json.dumps(
            {
                "payload": self.payload,
                "owner": self.owner,
                "created_at": self.created_at.isoformat(),
                "ttl_seconds": self.ttl_seconds,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> Optional["VaultEntry"]:
        try:
            data = json.loads(raw)
            return cls(
                payload=data["payload"],
                owner=data.get("owner"),
                created_at=datetime.fromisoformat(data["created_at"]),
                ttl_seconds=int(data["ttl_seconds"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None


class TokenVault:
    """Single-use, TTL-bound secret store.

    Secrets are stored under the SHA-256 of the raw token so a leaked
    keyspace dump cannot be replayed. ``consume`` is one atomic
    read-then-delete (Redis GETDEL, or a lock-guarded pop in the local
    fallback), so concurrent callers presenting the same token see exactly
    one winner. The TTL is enforced by the store and re-checked against the
    stored creation time on the way out.
    """

    def __init__(
        self,
        cache=None,
        *,
        namespace: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.namespace = namespace
        self._clock = clock
        self._local: Dict[str, Tuple[str, datetime]] = {}
        self._local_lock = threading.Lock()

    def _storage_key(self, material: str) -> str:
        return f"vault:{self.namespace}:{hash_token(material)}"

    async def issue(
        self,
        payload: Dict[str, Any],
        ttl_seconds: int,
        *,
        owner_key: Optional[str] = None,
        token: Optional[str] = None,
        encoding: str = "hex",
    ) -> str:
        """Persist ``payload`` under a fresh token and return the raw token."""
        raw = token or generate_token(encoding=encoding)
        entry = VaultEntry(
            payload=payload,
            owner=owner_key,
            created_at=self._clock(),
            ttl_seconds=int(ttl_seconds),
        )
        await self._put(self._storage_key(raw), entry)
        return raw

    async def consume(self, token: str) -> Optional[VaultEntry]:
        """Atomically fetch and invalidate. Returns None when absent or expired."""
        if not token:
            return None
        return await self._take(self._storage_key(token))

    async def invalidate(self, token: str) -> bool:
        return await self._delete(self._storage_key(token))

    async def exists(self, token: str) -> bool:
        key = self._storage_key(token)
        if self.cache is not None:
            try:
                return await self.cache.secret_exists(key)
            except (RedisError, OSError) as exc:
                raise UpstreamError("ephemeral store unavailable") from exc
        with self._local_lock:
            item = self._local.get(key)
            return bool(item and item[1] > self._clock())

    async def put_slot(
        self, slot: str, payload: Dict[str, Any], ttl_seconds: int, *, owner_key: Optional[str] = None
    ) -> None:
        """Store one secret per slot. A newer write replaces the older one."""
        entry = VaultEntry(
            payload=payload,
            owner=owner_key,
            created_at=self._clock(),
            ttl_seconds=int(ttl_seconds),
        )
        await self._put(self._storage_key(slot), entry)

    async def take_slot(self, slot: str) -> Optional[VaultEntry]:
        return await self._take(self._storage_key(slot))

    def cleanup_expired(self) -> int:
        """Drop expired entries from the local fallback. Redis expires its own."""
        now = self._clock()
        with self._local_lock:
            stale = [k for k, (_, expires_at) in self._local.items() if expires_at <= now]
            for key in stale:
                self._local.pop(key, None)
        return len(stale)

    async def _put(self, key: str, entry: VaultEntry) -> None:
        if self.cache is not None:
            try:
                await self.cache.set_secret(key, entry.to_json(), entry.ttl_seconds)
            except (RedisError, OSError) as exc:
                logger.error("vault_put_failed", namespace=self.namespace, error=str(exc))
                raise UpstreamError("ephemeral store unavailable") from exc
            return
        with self._local_lock:
            self._local[key] = (entry.to_json(), entry.expires_at)

    async def _take(self, key: str) -> Optional[VaultEntry]:
        if self.cache is not None:
            try:
                raw = await self.cache.pop_secret(key)
            except (RedisError, OSError) as exc:
                logger.error("vault_take_failed", namespace=self.namespace, error=str(exc))
                raise UpstreamError("ephemeral store unavailable") from exc
        else:
            with self._local_lock:
                item = self._local.pop(key, None)
            raw = item[0] if item else None
        if raw is None:
            return None
        entry = VaultEntry.from_json(raw)
        if entry is None:
            logger.warning("vault_entry_corrupt", namespace=self.namespace)
            return None
        now = self._clock()
        age = (now - entry.created_at).total_seconds()
        if age < 0 or age > entry.ttl_seconds:
            logger.info("vault_entry_expired", namespace=self.namespace)
            return None
        return entry

    async def _delete(self, key: str) -> bool:
        if self.cache is not None:
            try:
                return await self.cache.delete_secret(key)
            except (RedisError, OSError) as exc:
                raise UpstreamError("ephemeral store unavailable") from exc
        with self._local_lock:
            return self._local.pop(key, None) is not None
