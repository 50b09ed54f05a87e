from __future__ import annotations

import asyncio
import hashlib
import math
import time
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Iterable, Optional, Protocol

import redis.asyncio as aioredis

from agent_gateway.logging import get_logger
from agent_gateway.service.errors import RateLimitedError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_ms: int
    bypassed: bool = False

    @property
    def reset_seconds(self) -> int:
        return math.ceil(self.retry_after_ms / 1000)


class RateLimiter(Protocol):
    async def hit(
        self, key: str, rule: RateLimitRule, *, client_host: Optional[str] = None
    ) -> RateLimitDecision: ...

    async def close(self) -> None: ...


def rate_limit_key(route: str, subject: Optional[str], client_host: Optional[str]) -> str:
    """Key by authenticated subject when there is one, else by network address."""
    if subject:
        return f"{route}:user:{subject}"
    return f"{route}:ip:{client_host or 'unknown'}"


class SlidingWindowRateLimiter:
    """In-process sliding-window limiter.

    Each key keeps the timestamps of requests inside the trailing window. The
    check-and-record step runs under an ``asyncio.Lock`` so concurrent
    requests on the event loop see a consistent count.
    """

    def __init__(
        self,
        *,
        allow_list: Iterable[str] = ("127.0.0.1",),
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.allow_list = frozenset(allow_list)
        self.max_keys = max_keys
        self._clock = clock
        self._hits: "OrderedDict[str, Deque[float]]" = OrderedDict()
        self._lock = asyncio.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    async def hit(
        self, key: str, rule: RateLimitRule, *, client_host: Optional[str] = None
    ) -> RateLimitDecision:
        if client_host is not None and client_host in self.allow_list:
            return RateLimitDecision(
                allowed=True,
                limit=rule.max_requests,
                remaining=rule.max_requests,
                retry_after_ms=0,
                bypassed=True,
            )
        now = self._now_ms()
        window_start = now - rule.window_ms
        async with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                hits = deque()
                self._hits[key] = hits
                self._evict_overflow()
            else:
                self._hits.move_to_end(key)
            while hits and hits[0] <= window_start:
                hits.popleft()
            if len(hits) >= rule.max_requests:
                retry_after = max(0, math.ceil(hits[0] + rule.window_ms - now))
                return RateLimitDecision(
                    allowed=False,
                    limit=rule.max_requests,
                    remaining=0,
                    retry_after_ms=retry_after,
                )
            hits.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=rule.max_requests,
                remaining=rule.max_requests - len(hits),
                retry_after_ms=max(0, math.ceil(hits[0] + rule.window_ms - now)),
            )

    def _evict_overflow(self) -> None:
        while len(self._hits) > self.max_keys:
            evicted, _ = self._hits.popitem(last=False)
            logger.debug("rate_limit_key_evicted", key=evicted)

    async def close(self) -> None:
        self._hits.clear()


class RedisRateLimiter:
    """Sliding-window limiter shared across processes through Redis.

    A sorted set per key holds request timestamps; a Lua script trims,
    counts and records atomically so parallel gateways cannot overshoot.
    """

    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_ts = now
if oldest[2] ~= nil then
  oldest_ts = tonumber(oldest[2])
end

if count >= limit then
  return {0, 0, math.ceil(oldest_ts + window - now)}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, limit - count - 1, math.ceil(oldest_ts + window - now)}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        allow_list: Iterable[str] = ("127.0.0.1",),
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.allow_list = frozenset(allow_list)
        self._clock = clock
        self.client = client if client is not None else aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_key(key: str) -> str:
        # Hash so subjects containing ':' cannot collide with other keys
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"ratelimit:{digest}"

    async def hit(
        self, key: str, rule: RateLimitRule, *, client_host: Optional[str] = None
    ) -> RateLimitDecision:
        if client_host is not None and client_host in self.allow_list:
            return RateLimitDecision(
                allowed=True,
                limit=rule.max_requests,
                remaining=rule.max_requests,
                retry_after_ms=0,
                bypassed=True,
            )
        now_ms = int(self._clock() * 1000)
        allowed, remaining, retry_after = await self._sliding_window(
            keys=[self._normalize_key(key)],
            args=[now_ms, rule.window_ms, rule.max_requests, f"{now_ms}:{uuid.uuid4().hex}"],
        )
        return RateLimitDecision(
            allowed=bool(int(allowed)),
            limit=rule.max_requests,
            remaining=max(0, int(remaining)),
            retry_after_ms=max(0, int(retry_after)),
        )

    async def close(self) -> None:
        await self.client.aclose()


async def enforce_rate_limit(
    limiter: RateLimiter,
    route: str,
    rule: RateLimitRule,
    *,
    subject: Optional[str],
    client_host: Optional[str],
) -> RateLimitDecision:
    """Record one request and raise ``RateLimitedError`` when over budget."""
    key = rate_limit_key(route, subject, client_host)
    decision = await limiter.hit(key, rule, client_host=client_host)
    if not decision.allowed:
        logger.warning(
            "rate_limited",
            route=route,
            key=key,
            limit=rule.max_requests,
            window_ms=rule.window_ms,
            retry_after_ms=decision.retry_after_ms,
        )
        raise RateLimitedError(decision.retry_after_ms, limit=rule.max_requests)
    return decision
