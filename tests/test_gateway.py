import pytest

from tokensmith.config import Settings
from tokensmith.service import operations as ops
from tokensmith.service.errors import (
    AuthenticationError,
    RateLimitedError,
    UpstreamTimeoutError,
)
from tokensmith.service.gateway import Gateway, client_subject
from tokensmith.service.rate_limit import RateLimiter


class FakeChannel:
    """Records requests and answers from a queue of results or exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def request(self, operation, payload=None):
        self.calls.append((operation, payload))
        response = self.responses.pop(0) if self.responses else {"ok": True}
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        return None


def _gateway(cache, channel, **overrides):
    settings = Settings(**overrides)
    return Gateway(channel, cache, RateLimiter(cache), settings)


async def test_register_cooldown(cache):
    channel = FakeChannel()
    gateway = _gateway(cache, channel)

    await gateway.register("Alice@example.com", "pw123")
    with pytest.raises(RateLimitedError) as excinfo:
        await gateway.register("alice@example.com", "pw123")

    assert excinfo.value.status_code == 429
    assert excinfo.value.message == (
        "Registration attempt too recent. Please wait before trying again."
    )
    assert channel.calls == [(ops.REGISTER, {"email": "alice@example.com", "password": "pw123"})]


async def test_register_cooldown_can_be_disabled(cache):
    channel = FakeChannel()
    gateway = _gateway(cache, channel, register_cooldown_seconds=0)

    await gateway.register("alice@example.com", "pw123")
    await gateway.register("alice@example.com", "pw123")

    assert len(channel.calls) == 2


async def test_five_failed_logins_lock_out_without_forwarding(cache):
    failures = [AuthenticationError("invalid credentials") for _ in range(5)]
    channel = FakeChannel(*failures)
    gateway = _gateway(cache, channel)

    for _ in range(5):
        with pytest.raises(AuthenticationError):
            await gateway.login("alice@example.com", "wrong")

    with pytest.raises(RateLimitedError) as excinfo:
        await gateway.login("alice@example.com", "right")

    assert excinfo.value.message == "Too many failed login attempts. Please try again later."
    assert len(channel.calls) == 5


async def test_successful_login_clears_failures(cache):
    channel = FakeChannel(
        AuthenticationError("invalid credentials"),
        AuthenticationError("invalid credentials"),
        {"accessToken": "a"},
    )
    gateway = _gateway(cache, channel)

    for _ in range(2):
        with pytest.raises(AuthenticationError):
            await gateway.login("alice@example.com", "wrong")
    assert await gateway.login("alice@example.com", "right") == {"accessToken": "a"}

    assert await gateway.rate_limiter.attempts("failed-login:alice@example.com") == 0


async def test_upstream_timeouts_do_not_count_as_failed_logins(cache):
    channel = FakeChannel(*[UpstreamTimeoutError("upstream unavailable") for _ in range(6)])
    gateway = _gateway(cache, channel)

    for _ in range(6):
        with pytest.raises(UpstreamTimeoutError):
            await gateway.login("alice@example.com", "pw123")

    assert len(channel.calls) == 6
    assert await gateway.rate_limiter.attempts("failed-login:alice@example.com") == 0


async def test_refresh_failure_is_reraised(cache):
    channel = FakeChannel(AuthenticationError("refresh token mismatch"))
    gateway = _gateway(cache, channel)

    with pytest.raises(AuthenticationError):
        await gateway.refresh("token")
    assert channel.calls == [(ops.REFRESH_TOKENS, {"refreshToken": "token"})]


async def test_list_accounts_is_cached_per_requester(cache):
    accounts = [{"id": "1", "email": "a@example.com", "created_at": "2024-01-01T00:00:00+00:00"}]
    channel = FakeChannel(accounts, [])
    gateway = _gateway(cache, channel)

    assert await gateway.list_accounts("requester") == accounts
    assert await gateway.list_accounts("requester") == accounts
    assert len(channel.calls) == 1

    # a different requester has its own entry
    assert await gateway.list_accounts("other") == []
    assert len(channel.calls) == 2


async def test_ip_throttle(cache):
    gateway = _gateway(cache, FakeChannel(), ip_rate_limit=3)

    for _ in range(3):
        await gateway.throttle("10.0.0.1")
    with pytest.raises(RateLimitedError):
        await gateway.throttle("10.0.0.1")
    await gateway.throttle("10.0.0.2")


def test_client_subject_prefers_account():
    assert client_subject("acct-1", "1.2.3.4", "5.6.7.8") == "acct-1"


def test_client_subject_uses_first_forwarded_address():
    assert client_subject(None, "1.2.3.4, 10.0.0.1", "5.6.7.8") == "1.2.3.4"
    assert client_subject(None, None, "::ffff:5.6.7.8") == "5.6.7.8"
    assert client_subject(None, "", None) == "unknown"
