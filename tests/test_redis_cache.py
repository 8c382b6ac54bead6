import time
from datetime import datetime, timezone

from redis.exceptions import ConnectionError as RedisConnectionError

from tokensmith.storage.models import Account
from tokensmith.storage.redis_cache import MemoryCache, RedisCache, _MemoryClient


class FailingClient:
    """Redis client whose every command fails like a dropped connection."""

    async def _fail(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    ping = get = set = delete = incr = expire = exists = _fail


def _failing_cache() -> MemoryCache:
    cache = MemoryCache()
    cache.client = FailingClient()
    return cache


async def test_session_and_refresh_metadata(cache):
    now = datetime.now(timezone.utc)
    await cache.cache_session("acct-1", "alice@example.com", now, 60)
    await cache.cache_refresh_metadata("acct-1", "jti-1", now, 60)

    assert await cache.has_session("acct-1")
    session = await cache.get_session("acct-1")
    assert session["email"] == "alice@example.com"
    assert (await cache.get_refresh_metadata("acct-1"))["jti"] == "jti-1"

    await cache.delete("session:acct-1", "refresh:acct-1")
    assert not await cache.has_session("acct-1")
    assert await cache.get_refresh_metadata("acct-1") is None


async def test_blacklist(cache):
    assert not await cache.is_refresh_blacklisted("jti-1")
    await cache.blacklist_refresh("jti-1", 60)
    assert await cache.is_refresh_blacklisted("jti-1")


async def test_account_cache_by_email_and_eviction(cache):
    account = Account.new("alice@example.com", "digest")
    await cache.cache_account(account, 60)

    cached = await cache.get_cached_account_by_email("ALICE@example.com")
    assert cached.id == account.id
    assert cached.password_digest == "digest"

    await cache.evict_account(account.id, account.email)
    assert await cache.get_cached_account_by_email("alice@example.com") is None


async def test_keys_carry_prefix():
    cache = MemoryCache(key_prefix="test:")
    await cache.set_json("thing", {"a": 1}, 60)

    assert await cache.client.get("test:thing") == '{"a": 1}'


async def test_counter_increments_within_window(cache):
    assert await cache.get_counter("c") == 0
    assert await cache.increment("c", 60) == 1
    assert await cache.increment("c", 60) == 2
    assert await cache.get_counter("c") == 2


def test_rate_key_hashes_subject():
    key = RedisCache.rate_key("register:alice@example.com")

    assert key.startswith("rate:")
    assert "alice" not in key
    assert key == RedisCache.rate_key("register:alice@example.com")


async def test_unavailable_cache_degrades_to_misses():
    cache = _failing_cache()
    now = datetime.now(timezone.utc)

    # writes are no-ops
    await cache.cache_session("acct-1", "alice@example.com", now, 60)
    await cache.blacklist_refresh("jti-1", 60)
    await cache.delete("session:acct-1")

    # reads are misses
    assert await cache.get_session("acct-1") is None
    assert await cache.get_refresh_metadata("acct-1") is None
    assert await cache.is_refresh_blacklisted("jti-1") is False
    assert await cache.get_cached_account_by_email("alice@example.com") is None
    assert await cache.get_counter("c") == 0
    assert await cache.increment("c", 60) == 0
    assert await cache.ping() is False


async def test_memory_client_sweeps_expired_keys_on_write():
    client = _MemoryClient(sweep_interval=0)
    client._values["blacklist:old"] = ("1", time.monotonic() - 1)
    client._values["rate:old"] = ("3", time.monotonic() - 1)

    await client.set("blacklist:new", "1", ex=60)
    assert "blacklist:old" not in client._values
    assert "rate:old" not in client._values

    client._values["rate:stale"] = ("1", time.monotonic() - 1)
    await client.incr("rate:fresh")
    assert "rate:stale" not in client._values
    assert "blacklist:new" in client._values
