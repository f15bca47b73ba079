"""Tests for the sliding window rate limiters."""

from __future__ import annotations

import time

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.requests import Request

from provisioning.config import Settings
from provisioning.main import build_rate_limiter
from provisioning.security.rate_limiter import (
    RateLimitPolicy,
    SlidingWindowRateLimiter,
    UnthrottledRateLimiter,
    client_ip,
)
from provisioning.security.redis_rate_limiter import RedisSlidingWindowRateLimiter

EMAIL_POLICY = RateLimitPolicy(name="test:email", limit=5, window_seconds=15 * 60)


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] | None = ("10.0.0.9", 1234)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/auth/login",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_memory_limiter_allows_exactly_limit_then_resets(rate_limiter, clock):
    key = "owner@example.com"
    decisions = [rate_limiter.check(key, EMAIL_POLICY) for _ in range(5)]
    assert all(decision.allowed for decision in decisions)
    assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0]

    blocked = rate_limiter.check(key, EMAIL_POLICY)
    assert not blocked.allowed
    assert blocked.reset_at == pytest.approx(clock.now + EMAIL_POLICY.window_seconds)

    clock.advance(EMAIL_POLICY.window_seconds - 1)
    assert not rate_limiter.check(key, EMAIL_POLICY).allowed

    clock.advance(1)
    assert rate_limiter.check(key, EMAIL_POLICY).allowed


def test_memory_limiter_drops_idle_buckets(clock):
    limiter = SlidingWindowRateLimiter(clock=clock, sweep_interval=60)
    short = RateLimitPolicy(name="test:ip", limit=3, window_seconds=60)
    for index in range(50):
        limiter.check(f"10.0.0.{index}", short)
    limiter.check("owner@example.com", EMAIL_POLICY)
    assert len(limiter._events) == 51

    clock.advance(61)
    assert limiter.check("10.0.0.200", short).allowed

    # only the long-window bucket and the fresh one survive
    assert set(limiter._events) == {"test:email:owner@example.com", "test:ip:10.0.0.200"}
    assert not any(bucket.endswith("10.0.0.1") for bucket in limiter._windows)


def test_memory_limiter_window_slides(rate_limiter, clock):
    policy = RateLimitPolicy(name="test:slide", limit=2, window_seconds=60)
    assert rate_limiter.check("k", policy).allowed
    clock.advance(30)
    assert rate_limiter.check("k", policy).allowed
    clock.advance(31)
    # the first event left the window, the second has not
    assert rate_limiter.check("k", policy).allowed
    assert not rate_limiter.check("k", policy).allowed


def test_memory_limiter_keys_and_policies_are_independent(rate_limiter):
    ip_policy = RateLimitPolicy(name="test:ip", limit=1, window_seconds=60)
    assert rate_limiter.check("a", ip_policy).allowed
    assert not rate_limiter.check("a", ip_policy).allowed
    assert rate_limiter.check("b", ip_policy).allowed
    assert rate_limiter.check("a", EMAIL_POLICY).allowed


def test_retry_after_is_at_least_one_second():
    limiter = SlidingWindowRateLimiter()
    policy = RateLimitPolicy(name="test:retry", limit=1, window_seconds=60)
    limiter.check("k", policy)
    decision = limiter.check("k", policy)
    assert 1 <= decision.retry_after() <= 60


def test_redis_rate_limiter_allows_within_threshold(redis_client):
    limiter = RedisSlidingWindowRateLimiter(redis_client, key_prefix="test")
    policy = RateLimitPolicy(name="login:ip", limit=3, window_seconds=1)
    assert limiter.check("10.0.0.1", policy).allowed
    assert limiter.check("10.0.0.1", policy).allowed
    decision = limiter.check("10.0.0.1", policy)
    assert decision.allowed
    assert decision.remaining == 0


def test_redis_rate_limiter_blocks_excess(redis_client):
    limiter = RedisSlidingWindowRateLimiter(redis_client, key_prefix="test")
    assert all(limiter.check("owner@example.com", EMAIL_POLICY).allowed for _ in range(5))
    blocked = limiter.check("owner@example.com", EMAIL_POLICY)
    assert not blocked.allowed
    assert blocked.remaining == 0
    assert blocked.reset_at > time.time()


def test_redis_rate_limiter_expires_entries(redis_client):
    limiter = RedisSlidingWindowRateLimiter(redis_client, key_prefix="test")
    policy = RateLimitPolicy(name="login:ip", limit=1, window_seconds=1)
    assert limiter.check("10.0.0.1", policy).allowed
    assert not limiter.check("10.0.0.1", policy).allowed
    time.sleep(1.1)
    assert limiter.check("10.0.0.1", policy).allowed


def test_redis_rate_limiter_fails_open_when_backend_errors(redis_client, monkeypatch):
    limiter = RedisSlidingWindowRateLimiter(redis_client, key_prefix="test")
    policy = RateLimitPolicy(name="login:ip", limit=1, window_seconds=60)

    def boom(*args, **kwargs):
        raise RedisConnectionError("connection refused")

    monkeypatch.setattr(limiter, "_script", boom)
    for _ in range(3):
        decision = limiter.check("10.0.0.1", policy)
        assert decision.allowed
        assert decision.remaining == policy.limit


def test_unthrottled_limiter_always_allows():
    limiter = UnthrottledRateLimiter()
    policy = RateLimitPolicy(name="test", limit=1, window_seconds=60)
    assert all(limiter.check("k", policy).allowed for _ in range(10))


def test_build_rate_limiter_fails_open_when_redis_unreachable():
    settings = Settings(
        rate_limit_backend="redis",
        redis_url="redis://127.0.0.1:1/0",
        rate_limit_timeout_seconds=0.1,
    )
    assert isinstance(build_rate_limiter(settings), UnthrottledRateLimiter)


def test_build_rate_limiter_selects_backend():
    assert isinstance(build_rate_limiter(Settings(rate_limit_backend="memory")), SlidingWindowRateLimiter)
    assert isinstance(build_rate_limiter(Settings(rate_limit_backend="none")), UnthrottledRateLimiter)
    assert isinstance(
        build_rate_limiter(Settings(rate_limit_backend="redis", redis_url="")), UnthrottledRateLimiter
    )


def test_client_ip_prefers_first_forwarded_hop():
    request = _request({"X-Forwarded-For": " 203.0.113.7 , 10.0.0.1"})
    assert client_ip(request) == "203.0.113.7"


def test_client_ip_ignores_empty_forwarded_header():
    assert client_ip(_request({"X-Forwarded-For": " "})) == "10.0.0.9"


def test_client_ip_falls_back_to_unknown():
    assert client_ip(_request(client=None)) == "unknown"
