"""
Tests for the fixed-window rate limiter and its backends.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from wishkeep.core.rate_limit import (
    RATE_LIMIT_POLICIES,
    InMemoryRateLimitBackend,
    RateLimiter,
    RateLimitPolicy,
    RedisRateLimitBackend,
    client_identifier,
)


pytestmark = pytest.mark.anyio


class FailingBackend:
    async def increment_and_check(self, key, window_seconds, limit):
        raise ConnectionError("counter store unreachable")


def _limiter(backend=None, **policies) -> RateLimiter:
    return RateLimiter(
        backend or InMemoryRateLimitBackend(),
        policies={
            "strict": RateLimitPolicy(limit=3, window_seconds=60, fail_closed=True),
            "lenient": RateLimitPolicy(limit=3, window_seconds=60, fail_closed=False),
            **policies,
        },
    )


class TestInMemoryLimiting:
    async def test_allows_up_to_limit_then_denies(self):
        limiter = _limiter()
        results = [await limiter.check("strict", "ip:1.2.3.4") for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results[:3]] == [2, 1, 0]
        assert 1 <= results[3].retry_after_seconds <= 60

    async def test_identifiers_and_actions_are_counted_separately(self):
        limiter = _limiter()
        for _ in range(3):
            await limiter.check("strict", "ip:1.1.1.1")

        assert not (await limiter.check("strict", "ip:1.1.1.1")).allowed
        assert (await limiter.check("strict", "ip:2.2.2.2")).allowed
        assert (await limiter.check("lenient", "ip:1.1.1.1")).allowed

    async def test_window_expiry_resets_the_counter(self):
        backend = InMemoryRateLimitBackend()
        limiter = _limiter(backend, quick=RateLimitPolicy(limit=1, window_seconds=0, fail_closed=False))
        assert (await limiter.check("quick", "user:1")).allowed
        # A zero-length window is already over on the next call.
        assert (await limiter.check("quick", "user:1")).allowed

    async def test_disabled_limiter_allows_everything(self):
        limiter = RateLimiter(FailingBackend(), enabled=False)
        for _ in range(20):
            assert (await limiter.check("login", "ip:9.9.9.9")).allowed

    async def test_unknown_action_is_a_programming_error(self):
        with pytest.raises(ValueError):
            await _limiter().check("not-configured", "ip:1.2.3.4")

    async def test_cleanup_evicts_oldest_entries(self):
        backend = InMemoryRateLimitBackend(max_entries=10)
        for index in range(200):
            await backend.increment_and_check(f"key-{index}", 60, 5)
        assert backend.get_stats()["total_entries"] == 10


class TestBackendFailure:
    async def test_fail_closed_policy_denies(self):
        result = await _limiter(FailingBackend()).check("strict", "ip:1.2.3.4")
        assert result.allowed is False
        assert result.retry_after_seconds == 60

    async def test_fail_open_policy_allows(self):
        result = await _limiter(FailingBackend()).check("lenient", "ip:1.2.3.4")
        assert result.allowed is True

    async def test_credential_actions_fail_closed(self):
        for action in ("token-create", "token-revoke", "list-password", "public-reservation"):
            assert RATE_LIMIT_POLICIES[action].fail_closed


def _redis_client(replies=None, error=None):
    pipe = MagicMock()
    if error is not None:
        pipe.execute = AsyncMock(side_effect=error)
    else:
        pipe.execute = AsyncMock(return_value=replies)
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    client = MagicMock()
    client.pipeline.return_value = pipe
    return client, pipe


class TestRedisBackend:
    async def test_counts_and_expires_in_one_transaction(self):
        client, pipe = _redis_client([3, True, 42])
        backend = RedisRateLimitBackend(client=client)

        state = await backend.increment_and_check("ratelimit:login:ip:1", 60, 5)

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.incr.assert_called_once_with("ratelimit:login:ip:1")
        pipe.expire.assert_called_once_with("ratelimit:login:ip:1", 60, nx=True)
        assert state.count == 3
        assert state.allowed is True
        assert state.reset_in_seconds == 42.0

    async def test_over_limit_reports_ttl(self):
        client, _ = _redis_client([6, False, 17])
        limiter = RateLimiter(RedisRateLimitBackend(client=client))
        result = await limiter.check("login", "ip:1.2.3.4")
        assert result.allowed is False
        assert result.retry_after_seconds == 17

    async def test_redis_errors_follow_policy(self):
        client, _ = _redis_client(error=redis.ConnectionError("down"))
        limiter = _limiter(RedisRateLimitBackend(client=client))
        assert (await limiter.check("strict", "ip:1")).allowed is False
        assert (await limiter.check("lenient", "ip:1")).allowed is True


class TestClientIdentifier:
    def test_prefers_cdn_header(self):
        headers = {"CF-Connecting-IP": "203.0.113.7", "X-Forwarded-For": "1.1.1.1"}
        assert client_identifier(headers, "10.0.0.1") == "ip:203.0.113.7"

    def test_uses_last_forwarded_hop(self):
        headers = {"X-Forwarded-For": "6.6.6.6, 198.51.100.4"}
        assert client_identifier(headers, "10.0.0.1") == "ip:198.51.100.4"

    def test_falls_back_to_peer_then_unknown(self):
        assert client_identifier({}, "10.0.0.1") == "ip:10.0.0.1"
        assert client_identifier({}, None) == "ip:unknown"
