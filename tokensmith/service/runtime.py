from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokensmith.config import Settings, get_settings, reset_settings_cache
from tokensmith.logging import get_logger
from tokensmith.service.auth import AuthCore
from tokensmith.service.channel import Channel, HttpChannel, LocalChannel
from tokensmith.service.gateway import Gateway
from tokensmith.service.operations import OperationTable, build_operation_table
from tokensmith.service.rate_limit import RateLimiter
from tokensmith.service.tokens import TokenIssuer
from tokensmith.storage.common import CredentialStore
from tokensmith.storage.memory import MemoryCredentialStore
from tokensmith.storage.postgres import PostgresCredentialStore
from tokensmith.storage.redis_cache import MemoryCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _build_cache(settings: Settings) -> RedisCache:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            # Sync client in test mode keeps connections off per-test event loops
            cache_cls = SyncRedisCache if settings.test_mode else RedisCache
            cache = cache_cls(
                settings.redis_url,
                key_prefix=settings.cache_key_prefix,
                default_ttl=settings.cache_default_ttl_seconds,
            )
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for sessions, refresh metadata and rate limits; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        mode=fallback_mode,
    )
    return MemoryCache(
        key_prefix=settings.cache_key_prefix,
        default_ttl=settings.cache_default_ttl_seconds,
    )


class Runtime:
    """Holds singleton service instances for the gateway and core apps."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: CredentialStore = (
                MemoryCredentialStore(fs_root=self.settings.store_fs_root)
                if self.settings.use_memory_store
                else PostgresCredentialStore(
                    self.settings.database_url,
                    timeout=self.settings.database_pool_timeout_seconds,
                    statement_timeout_ms=self.settings.database_statement_timeout_ms,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = _build_cache(self.settings)
        self.issuer = TokenIssuer.from_settings(self.settings)
        self.core = AuthCore(self.store, self.cache, self.issuer, self.settings)
        self.operations: OperationTable = build_operation_table(self.core)

        self.channel: Channel
        if self.settings.auth_core_url:
            self.channel = HttpChannel(
                self.settings.auth_core_url, timeout=self.settings.upstream_timeout_seconds
            )
        else:
            self.channel = LocalChannel(
                self.operations, timeout=self.settings.upstream_timeout_seconds
            )

        self.rate_limiter = RateLimiter(self.cache)
        self.gateway = Gateway(self.channel, self.cache, self.rate_limiter, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            channel="http" if self.settings.auth_core_url else "local",
        )

    async def close(self) -> None:
        await self.channel.close()
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
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
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
