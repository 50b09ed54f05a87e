"""Tests for the Redis-backed limiter against an in-process Redis with Lua support."""

import pytest

fakeredis = pytest.importorskip("fakeredis")
pytest.importorskip("lupa")

from agent_gateway.service.errors import RateLimitedError  # noqa: E402
from agent_gateway.service.rate_limit import (  # noqa: E402
    RateLimitRule,
    RedisRateLimiter,
    enforce_rate_limit,
)
from test_rate_limit import FakeClock  # noqa: E402

RULE = RateLimitRule(max_requests=3, window_ms=60_000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def limiter(redis_client, clock):
    return RedisRateLimiter(
        "redis://unused", allow_list=["127.0.0.1"], client=redis_client, clock=clock
    )


class TestRedisSlidingWindow:
    async def test_allows_up_to_budget(self, limiter):
        decisions = [await limiter.hit("k", RULE, client_host="10.0.0.1") for _ in range(3)]
        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]

    async def test_rejects_over_budget_with_retry_after(self, limiter, clock):
        for _ in range(3):
            await limiter.hit("k", RULE, client_host="10.0.0.1")
            clock.advance(10)
        decision = await limiter.hit("k", RULE, client_host="10.0.0.1")
        assert not decision.allowed
        assert decision.remaining == 0
        assert decision.retry_after_ms == 30_000
        assert decision.reset_seconds == 30

    async def test_window_slides(self, limiter, clock):
        await limiter.hit("k", RULE, client_host="10.0.0.1")
        clock.advance(30)
        await limiter.hit("k", RULE, client_host="10.0.0.1")
        await limiter.hit("k", RULE, client_host="10.0.0.1")
        assert not (await limiter.hit("k", RULE, client_host="10.0.0.1")).allowed
        clock.advance(30.5)
        assert (await limiter.hit("k", RULE, client_host="10.0.0.1")).allowed
        assert not (await limiter.hit("k", RULE, client_host="10.0.0.1")).allowed

    async def test_rejected_requests_do_not_consume_budget(self, limiter, clock):
        for _ in range(8):
            await limiter.hit("k", RULE, client_host="10.0.0.1")
        clock.advance(60.5)
        decision = await limiter.hit("k", RULE, client_host="10.0.0.1")
        assert decision.allowed
        assert decision.remaining == 2

    async def test_allow_list_bypasses_without_touching_redis(self, limiter, redis_client):
        for _ in range(10):
            decision = await limiter.hit("k", RULE, client_host="127.0.0.1")
            assert decision.allowed
            assert decision.bypassed
        assert await redis_client.keys("*") == []

    async def test_keys_are_hashed_and_independent(self, limiter, redis_client):
        for _ in range(3):
            await limiter.hit("chat:user:a:b", RULE, client_host="10.0.0.1")
        assert not (await limiter.hit("chat:user:a:b", RULE, client_host="10.0.0.1")).allowed
        assert (await limiter.hit("chat:user:a", RULE, client_host="10.0.0.1")).allowed
        keys = await redis_client.keys("*")
        assert len(keys) == 2
        assert all(key.startswith("ratelimit:") and ":user:" not in key for key in keys)

    async def test_key_expires_with_window(self, limiter, redis_client):
        await limiter.hit("k", RULE, client_host="10.0.0.1")
        (key,) = await redis_client.keys("*")
        ttl = await redis_client.pttl(key)
        assert 0 < ttl <= RULE.window_ms

    async def test_limiters_share_budget_through_redis(self, redis_client, clock):
        first = RedisRateLimiter("redis://unused", allow_list=[], client=redis_client, clock=clock)
        second = RedisRateLimiter("redis://unused", allow_list=[], client=redis_client, clock=clock)
        rule = RateLimitRule(max_requests=2, window_ms=60_000)
        await enforce_rate_limit(first, "chat", rule, subject="u", client_host=None)
        await enforce_rate_limit(second, "chat", rule, subject="u", client_host=None)
        with pytest.raises(RateLimitedError) as exc_info:
            await enforce_rate_limit(first, "chat", rule, subject="u", client_host=None)
        assert exc_info.value.retry_after_ms == 60_000
