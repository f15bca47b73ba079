"""In-memory sliding window rate limiter and shared limiter types."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, Dict, Protocol

from fastapi import Request

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """A named ``limit`` of events per trailing ``window_seconds``."""

    name: str
    limit: int
    window_seconds: int


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float

    def retry_after(self, now: float | None = None) -> int:
        """Seconds until the oldest counted event leaves the window."""
        current = time.time() if now is None else now
        return max(1, int(self.reset_at - current + 0.999))


LOGIN_IP_POLICY = RateLimitPolicy(name="login:ip", limit=10, window_seconds=60)
LOGIN_EMAIL_POLICY = RateLimitPolicy(name="login:email", limit=5, window_seconds=15 * 60)
SIGNUP_IP_POLICY = RateLimitPolicy(name="signup:ip", limit=5, window_seconds=5 * 60)
SIGNUP_VERIFY_POLICY = RateLimitPolicy(name="signup-verify:ip", limit=10, window_seconds=5 * 60)


class RateLimiter(Protocol):
    def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision: ...


class SlidingWindowRateLimiter:
    """Thread-safe sliding window rate limiter.

    Buckets whose newest event has left its window are dropped every
    ``sweep_interval`` seconds, so one-off keys do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.time, *, sweep_interval: float = 60.0) -> None:
        """Initialise per-key storage."""
        self._clock = clock
        self._events: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, int] = {}
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()
        self._lock = Lock()

    def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        """Record an attempt for ``key`` and report whether it fits the policy."""
        now = self._clock()
        bucket = f"{policy.name}:{key}"
        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)
            queue = self._events.get(bucket)
            if queue is None:
                queue = self._events[bucket] = deque()
                self._windows[bucket] = policy.window_seconds
            while queue and now - queue[0] >= policy.window_seconds:
                queue.popleft()
            if len(queue) >= policy.limit:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=queue[0] + policy.window_seconds,
                )
            queue.append(now)
            return RateLimitDecision(
                allowed=True,
                remaining=policy.limit - len(queue),
                reset_at=queue[0] + policy.window_seconds,
            )

    def _sweep(self, now: float) -> None:
        # caller holds the lock
        expired = [
            bucket
            for bucket, queue in self._events.items()
            if not queue or now - queue[-1] >= self._windows[bucket]
        ]
        for bucket in expired:
            del self._events[bucket]
            del self._windows[bucket]
        self._last_sweep = now


class UnthrottledRateLimiter:
    """Limiter used when the counting store is unavailable; allows everything."""

    def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            remaining=policy.limit,
            reset_at=time.time() + policy.window_seconds,
        )


def client_ip(request: Request) -> str:
    """Return the first forwarded hop, the peer address, or ``"unknown"``.

    All requests without either share one bucket.
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    if request.client is not None and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT
