"""Gateway façade: throttles and caching in front of the auth core channel."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from tokensmith.config import Settings
from tokensmith.logging import get_logger
from tokensmith.service import operations as ops
from tokensmith.service.channel import Channel
from tokensmith.service.errors import AuthenticationError, RateLimitedError, ServiceError
from tokensmith.service.rate_limit import RateLimiter
from tokensmith.storage.models import normalize_email
from tokensmith.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_IPV4_MAPPED_PREFIX = "::ffff:"


def client_subject(
    account_id: Optional[str],
    forwarded_for: Optional[str],
    peer_host: Optional[str],
) -> str:
    """Key the per-client throttle by account when known, else by source address.

    The first ``X-Forwarded-For`` entry wins over the socket peer. IPv4-mapped
    IPv6 addresses are reduced to their IPv4 form.
    """
    if account_id:
        return account_id
    ip = ""
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip()
    if not ip:
        ip = peer_host or "unknown"
    if ip.lower().startswith(_IPV4_MAPPED_PREFIX):
        ip = ip[len(_IPV4_MAPPED_PREFIX):]
    return ip


class Gateway:
    def __init__(
        self,
        channel: Channel,
        cache: RedisCache,
        rate_limiter: RateLimiter,
        settings: Settings,
    ) -> None:
        self.channel = channel
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.settings = settings

    async def throttle(self, subject: str) -> None:
        allowed = await self.rate_limiter.allow(
            f"ip:{subject}",
            self.settings.ip_rate_limit,
            self.settings.ip_rate_window_seconds,
        )
        if not allowed:
            raise RateLimitedError("rate limit exceeded")

    async def register(self, email: str, password: str) -> Dict[str, Any]:
        normalized = normalize_email(email)
        cooldown = self.settings.register_cooldown_seconds
        if cooldown > 0:
            allowed = await self.rate_limiter.allow(f"register:{normalized}", 1, cooldown)
            if not allowed:
                raise RateLimitedError(
                    "Registration attempt too recent. Please wait before trying again."
                )
        return await self.channel.request(
            ops.REGISTER, {"email": normalized, "password": password}
        )

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        normalized = normalize_email(email)
        failures_key = f"failed-login:{normalized}"
        attempts = await self.rate_limiter.attempts(failures_key)
        if attempts >= self.settings.login_failure_threshold:
            logger.warning("login_locked_out", attempts=attempts)
            raise RateLimitedError("Too many failed login attempts. Please try again later.")
        try:
            result = await self.channel.request(
                ops.LOGIN, {"email": normalized, "password": password}
            )
        except AuthenticationError:
            # Only rejected credentials count; timeouts and server faults do not
            attempts = await self.rate_limiter.record(
                failures_key, self.settings.login_failure_window_seconds
            )
            logger.warning("login_failed", attempts=attempts)
            raise
        await self.rate_limiter.reset(failures_key)
        return result

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        try:
            return await self.channel.request(
                ops.REFRESH_TOKENS, {"refreshToken": refresh_token}
            )
        except ServiceError as exc:
            logger.warning(
                "refresh_failed", status_code=exc.status_code, error_code=exc.error_code
            )
            raise

    async def logout(self, account_id: str) -> Dict[str, Any]:
        result = await self.channel.request(ops.LOGOUT, {"accountId": account_id})
        await self.cache.delete(f"user_list:{account_id}")
        return result

    async def me(self, account_id: str, email: Optional[str]) -> Dict[str, Any]:
        return {
            "id": account_id,
            "email": email,
            "active": await self.cache.has_session(account_id),
        }

    async def list_accounts(self, requester_id: str) -> List[Dict[str, Any]]:
        cache_key = f"user_list:{requester_id}"
        cached = await self.cache.get_json(cache_key)
        if isinstance(cached, list):
            return cached
        accounts = await self.channel.request(ops.LIST_ACCOUNTS, {})
        await self.cache.set_json(
            cache_key, accounts, self.settings.user_list_cache_seconds
        )
        return accounts
