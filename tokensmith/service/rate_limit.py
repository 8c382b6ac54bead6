from __future__ import annotations

from tokensmith.logging import get_logger
from tokensmith.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimiter:
    """Fixed-window attempt counters kept in the revocation cache.

    A window ends when its counter's TTL expires; nothing sweeps them.
    """

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        """Count one attempt against ``key`` unless the window is already full.

        A limit of 0 or less disables the check.
        """
        if limit <= 0:
            return True
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        counter = self.cache.rate_key(key)
        count = await self.cache.get_counter(counter)
        if count >= limit:
            logger.info("rate_limit_exceeded", key=key, limit=limit, count=count)
            return False
        await self.cache.increment(counter, window_seconds)
        return True

    async def attempts(self, key: str) -> int:
        return await self.cache.get_counter(self.cache.rate_key(key))

    async def record(self, key: str, window_seconds: int) -> int:
        return await self.cache.increment(self.cache.rate_key(key), window_seconds)

    async def reset(self, key: str) -> None:
        await self.cache.delete(self.cache.rate_key(key))
