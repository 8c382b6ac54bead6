from __future__ import annotations

import hashlib
import json
import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tokensmith.logging import get_logger
from tokensmith.storage.models import Account, normalize_email

logger = get_logger(__name__)

# Connection drops surface as OSError subclasses outside of redis' own hierarchy
_CACHE_ERRORS = (RedisError, OSError)


class RedisCache:
    """Redis-backed revocation cache for sessions, refresh metadata, blacklist and counters.

    Every call degrades instead of raising: a failed read is a miss and a
    failed write is a no-op. Nothing stored here is authoritative; the
    credential store decides refresh-token validity.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "tokensmith:",
        default_ttl: int = 300,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @staticmethod
    def rate_key(subject: str) -> str:
        """Hash a throttled subject so user-supplied text cannot collide with other keys."""
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"rate:{digest}"

    def _ttl(self, ttl_seconds: Optional[int]) -> int:
        if ttl_seconds is None:
            ttl_seconds = self.default_ttl
        return max(1, int(ttl_seconds))

    # generic primitives

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except _CACHE_ERRORS as exc:
            logger.warning("cache_ping_failed", error=str(exc))
            return False

    async def get_json(self, key: str) -> Any:
        try:
            raw = await self.client.get(self._key(key))
        except _CACHE_ERRORS as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("cache_value_corrupt", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.client.set(
                self._key(key), json.dumps(value, default=str), ex=self._ttl(ttl_seconds)
            )
        except _CACHE_ERRORS as exc:
            logger.warning("cache_set_failed", key=key, error=str(exc))

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self.client.delete(*[self._key(k) for k in keys])
        except _CACHE_ERRORS as exc:
            logger.warning("cache_delete_failed", keys=list(keys), error=str(exc))

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(self._key(key)))
        except _CACHE_ERRORS as exc:
            logger.warning("cache_exists_failed", key=key, error=str(exc))
            return False

    async def get_counter(self, key: str) -> int:
        try:
            raw = await self.client.get(self._key(key))
        except _CACHE_ERRORS as exc:
            logger.warning("cache_counter_read_failed", key=key, error=str(exc))
            return 0
        try:
            return int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            return 0

    async def increment(self, key: str, ttl_seconds: int) -> int:
        full_key = self._key(key)
        try:
            count = await self.client.incr(full_key)
            if count == 1:
                # the window starts at the first hit; later hits do not extend it
                await self.client.expire(full_key, self._ttl(ttl_seconds))
            return int(count)
        except _CACHE_ERRORS as exc:
            logger.warning("cache_increment_failed", key=key, error=str(exc))
            return 0

    # sessions

    async def cache_session(
        self, account_id: str, email: str, login_at: datetime, ttl_seconds: int
    ) -> None:
        await self.set_json(
            f"session:{account_id}",
            {"accountId": account_id, "email": email, "loginAt": login_at.isoformat()},
            ttl_seconds,
        )

    async def get_session(self, account_id: str) -> Optional[dict]:
        return await self.get_json(f"session:{account_id}")

    async def has_session(self, account_id: str) -> bool:
        return await self.exists(f"session:{account_id}")

    # refresh metadata and blacklist

    async def cache_refresh_metadata(
        self, account_id: str, jti: str, issued_at: datetime, ttl_seconds: int
    ) -> None:
        await self.set_json(
            f"refresh:{account_id}",
            {"jti": jti, "issuedAt": issued_at.isoformat()},
            ttl_seconds,
        )

    async def get_refresh_metadata(self, account_id: str) -> Optional[dict]:
        data = await self.get_json(f"refresh:{account_id}")
        return data if isinstance(data, dict) else None

    async def blacklist_refresh(self, jti: str, ttl_seconds: int) -> None:
        await self.set_json(f"blacklist:refresh:{jti}", True, ttl_seconds)

    async def is_refresh_blacklisted(self, jti: str) -> bool:
        return await self.exists(f"blacklist:refresh:{jti}")

    # account lookups

    async def cache_account(self, account: Account, ttl_seconds: int) -> None:
        record = {
            "id": account.id,
            "email": account.email,
            "password_digest": account.password_digest,
            "created_at": account.created_at.isoformat(),
        }
        await self.set_json(f"user:email:{account.email}", record, ttl_seconds)
        await self.set_json(f"user:{account.id}", record, ttl_seconds)

    async def get_cached_account_by_email(self, email: str) -> Optional[Account]:
        data = await self.get_json(f"user:email:{normalize_email(email)}")
        if not isinstance(data, dict):
            return None
        try:
            return Account(
                id=data["id"],
                email=data["email"],
                password_digest=data["password_digest"],
                created_at=datetime.fromisoformat(data["created_at"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("cache_account_record_invalid", account_id=data.get("id"))
            return None

    async def evict_account(self, account_id: str, email: Optional[str] = None) -> None:
        keys = [f"user:{account_id}"]
        if email:
            keys.append(f"user:email:{normalize_email(email)}")
        await self.delete(*keys)


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def ping(self) -> bool:
        return self._sync.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, *keys: str) -> int:
        return self._sync.delete(*keys)

    async def incr(self, key: str) -> int:
        return self._sync.incr(key)

    async def expire(self, key: str, ttl: int) -> bool:
        return self._sync.expire(key, ttl)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)


class SyncRedisCache(RedisCache):
    """Redis cache over a synchronous client, for tests.

    Avoids binding a connection pool to pytest's per-test event loops while
    keeping the awaitable interface of RedisCache.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "tokensmith:",
        default_ttl: int = 300,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()


class _MemoryClient:
    """Process-local stand-in for the handful of Redis commands the cache issues."""

    def __init__(self, *, sweep_interval: float = 1.0) -> None:
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._last_sweep = time.monotonic()

    def _sweep(self) -> None:
        """Drop expired entries, including keys that are never read again."""
        now = time.monotonic()
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        expired = [
            key
            for key, (_, expires_at) in self._values.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._values[key]

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._values.pop(key, None)
            return None
        return value

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        with self._lock:
            self._sweep()
            expires_at = time.monotonic() + ex if ex else None
            self._values[key] = (str(value), expires_at)
            return True

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._values.pop(key, None)
            return removed

    async def incr(self, key: str) -> int:
        with self._lock:
            self._sweep()
            current = self._live(key)
            _, expires_at = self._values.get(key, (None, None))
            count = int(current or 0) + 1
            self._values[key] = (str(count), expires_at)
            return count

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            current = self._live(key)
            if current is None:
                return False
            self._values[key] = (current, time.monotonic() + ttl)
            return True

    async def exists(self, key: str) -> int:
        with self._lock:
            return 1 if self._live(key) is not None else 0


class MemoryCache(RedisCache):
    """In-process cache used when Redis is unavailable under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV."""

    def __init__(self, *, key_prefix: str = "tokensmith:", default_ttl: int = 300):
        self.redis_url = None
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self.client = _MemoryClient()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None
