"""Redis-backed sliding window rate limiter."""

from __future__ import annotations

import logging
import time
from typing import Any, Final

from redis import Redis
from redis.exceptions import RedisError, ResponseError

from .rate_limiter import RateLimitDecision, RateLimitPolicy

logger = logging.getLogger(__name__)


class RedisSlidingWindowRateLimiter:
    """Distributed sliding window limiter implemented with Redis sorted sets.

    Any Redis failure at check time is logged and the request is allowed, so
    an outage of the counting store never blocks the login path.
    """

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local counter_key = key .. ':seq'
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    local current = redis.call('ZCARD', key)
    if current >= max_requests then
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        return {0, current, tonumber(oldest[2])}
    end
    local seq = redis.call('INCR', counter_key)
    redis.call('PEXPIRE', counter_key, window_ms)
    local member = tostring(now_ms) .. ':' .. tostring(seq)
    redis.call('ZADD', key, now_ms, member)
    redis.call('PEXPIRE', key, window_ms)
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return {1, current + 1, tonumber(oldest[2])}
    """

    def __init__(self, client: Redis, *, key_prefix: str = "rl") -> None:
        """Initialise the Redis client and Lua script cache."""
        self._client = client
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        """Record an attempt for ``key`` against the distributed window."""
        now_ms = int(time.time() * 1000)
        window_ms = policy.window_seconds * 1000
        redis_key = f"{self._key_prefix}:{policy.name}:{key}"
        try:
            allowed, count, oldest_ms = self._evaluate(redis_key, window_ms, policy.limit, now_ms)
        except RedisError as exc:
            logger.warning("rate limiter backend unavailable, allowing request: %s", exc)
            return RateLimitDecision(
                allowed=True,
                remaining=policy.limit,
                reset_at=(now_ms + window_ms) / 1000,
            )
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, policy.limit - count),
            reset_at=(oldest_ms + window_ms) / 1000,
        )

    def _evaluate(
        self, redis_key: str, window_ms: int, limit: int, now_ms: int
    ) -> tuple[bool, int, int]:
        try:
            result = self._script(keys=[redis_key], args=[window_ms, limit, now_ms])
            return int(result[0]) == 1, int(result[1]), _as_int(result[2], now_ms)
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command `evalsha`" in message or "unknown command `eval`" in message:
                return self._evaluate_fallback(redis_key, window_ms, limit, now_ms)
            raise

    def _evaluate_fallback(
        self, redis_key: str, window_ms: int, limit: int, now_ms: int
    ) -> tuple[bool, int, int]:
        """Fallback pure-Python implementation used when Lua is unavailable."""
        self._client.zremrangebyscore(redis_key, 0, now_ms - window_ms)
        current = self._client.zcard(redis_key)
        if current >= limit:
            return False, current, self._oldest_score(redis_key, now_ms)
        seq = self._client.incr(f"{redis_key}:seq")
        self._client.pexpire(f"{redis_key}:seq", window_ms)
        member = f"{now_ms}:{seq}"
        self._client.zadd(redis_key, {member: now_ms})
        self._client.pexpire(redis_key, window_ms)
        return True, current + 1, self._oldest_score(redis_key, now_ms)

    def _oldest_score(self, redis_key: str, default: int) -> int:
        oldest = self._client.zrange(redis_key, 0, 0, withscores=True)
        if not oldest:
            return default
        return int(oldest[0][1])


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return int(float(value))
