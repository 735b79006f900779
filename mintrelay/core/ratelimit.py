"""
Sliding-window rate limiter for relay-consuming endpoints.

- Keyed by wallet address (IP fallback), shared by all request workers.
- Check-and-increment is atomic: a process-local lock for the in-memory
  limiter, a Lua script for the Redis limiter, so two near-simultaneous
  requests can never both pass the boundary.
"""

import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Mapping, Protocol


@dataclass
class RateLimitConfig:
    enabled: bool = True
    backend: str = "memory"
    limit: int = 8
    window_seconds: int = 60
    redis_url: str = "redis://localhost:6379"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset: int  # unix seconds at which the oldest counted hit leaves the window
    retry_after: int = 0

    def as_info(self) -> dict:
        return {"limit": self.limit, "remaining": self.remaining, "reset": self.reset}

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }


class RateLimiter(Protocol):
    limit: int
    window_seconds: int

    def hit(self, key: str) -> RateLimitDecision:
        ...


class SlidingWindowRateLimiter:
    """In-process sliding-window log. One lock serializes every check-and-add."""

    def __init__(self, limit: int, window_seconds: int, time_fn: Callable[[], float] = time.time):
        self.limit = max(1, limit)
        self.window_seconds = max(1, window_seconds)
        self.time_fn = time_fn
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    def hit(self, key: str) -> RateLimitDecision:
        with self._lock:
            now = self.time_fn()
            window_start = now - self.window_seconds
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(window_start)
                self._last_sweep = now
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= window_start:
                hits.popleft()

            allowed = len(hits) < self.limit
            if allowed:
                hits.append(now)

            oldest = hits[0] if hits else now
            reset_at = oldest + self.window_seconds
            retry_after = 0 if allowed else max(1, math.ceil(reset_at - now))
            return RateLimitDecision(
                allowed=allowed,
                limit=self.limit,
                remaining=max(0, self.limit - len(hits)),
                reset=int(math.ceil(reset_at)),
                retry_after=retry_after,
            )

    def _sweep(self, window_start: float) -> None:
        # keys whose newest hit has left the window
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for key in stale:
            del self._hits[key]

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._last_sweep = 0.0


_SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  redis.call('ZADD', key, now, member)
  count = count + 1
  allowed = 1
end
redis.call('PEXPIRE', key, math.ceil(window * 1000))
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = now
if oldest[2] then
  oldest_score = tonumber(oldest[2])
end
return {allowed, count, tostring(oldest_score)}
"""


class RedisSlidingWindowRateLimiter:
    """Sliding-window log in a Redis sorted set, shared across processes."""

    def __init__(self, client, limit: int, window_seconds: int, *, prefix: str = "mintrelay:ratelimit:", time_fn: Callable[[], float] = time.time):
        self.client = client
        self.limit = max(1, limit)
        self.window_seconds = max(1, window_seconds)
        self.prefix = prefix
        self.time_fn = time_fn
        self._script = client.register_script(_SLIDING_WINDOW_LUA)

    def hit(self, key: str) -> RateLimitDecision:
        now = self.time_fn()
        allowed, count, oldest = self._script(
            keys=[f"{self.prefix}{key}"],
            args=[now, self.window_seconds, self.limit, f"{now}:{uuid.uuid4().hex}"],
        )
        count = int(count)
        reset_at = float(oldest) + self.window_seconds
        allowed = bool(int(allowed))
        return RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset=int(math.ceil(reset_at)),
            retry_after=0 if allowed else max(1, math.ceil(reset_at - now)),
        )


def build_rate_limit_config_from_env(env: Mapping[str, str]) -> RateLimitConfig:
    def _bool(name: str, default: bool) -> bool:
        raw = env.get(name)
        if raw is None:
            return default
        return str(raw).lower() in {"1", "true", "yes", "on"}

    def _int(name: str, default: int) -> int:
        raw = env.get(name)
        if raw is None:
            return default
        try:
            value = int(raw)
            return value if value > 0 else default
        except (TypeError, ValueError):
            return default

    return RateLimitConfig(
        enabled=_bool("RATE_LIMIT_ENABLED", True),
        backend=(env.get("RATE_LIMIT_BACKEND") or "memory").lower(),
        limit=_int("RELAY_RATE_LIMIT_PER_WINDOW", 8),
        window_seconds=_int("RELAY_RATE_LIMIT_WINDOW_SECONDS", 60),
        redis_url=env.get("REDIS_URL") or "redis://localhost:6379",
    )


def build_rate_limiter(config: RateLimitConfig, time_fn: Callable[[], float] = time.time) -> RateLimiter:
    if config.backend == "redis":
        from redis import Redis

        client = Redis.from_url(config.redis_url)
        return RedisSlidingWindowRateLimiter(client, config.limit, config.window_seconds, time_fn=time_fn)
    return SlidingWindowRateLimiter(config.limit, config.window_seconds, time_fn=time_fn)
