"""
Fixed-window rate limiting per client address.

Counters live in a RateLimitStore passed to the limiter (or installed on
app.state at startup). The memory store is process-local: counters are lost on
restart and are not shared between instances. The Redis store shares counters
between instances and fails open when Redis is unavailable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from fastapi import Request
from prometheus_client import Counter

from doccontrol.api.errors import http_exception_for
from doccontrol.config import settings
from doccontrol.core import clock
from doccontrol.core.results import AuthErrorCode, Rejected

logger = logging.getLogger(__name__)

rate_limited_total = Counter(
    "doccontrol_rate_limited_requests_total",
    "Requests rejected by a rate limiter",
    ["limiter"],
)


@dataclass(frozen=True)
class WindowState:
    count: int
    reset_at_ms: int
    allowed: bool


@dataclass(frozen=True)
class RateLimitDecision:
    limit: int
    remaining: int
    reset_at_ms: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at_ms // 1000),
        }


class RateLimitStore(Protocol):
    async def hit(self, key: str, max_requests: int, window_ms: int, now_ms: int) -> WindowState:
        """Record one request for key unless it is already at max; must be atomic per key."""
        ...

    async def reset(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryRateLimitStore:
    """In-process store. hit() never awaits, so read-modify-write is atomic in the event loop."""

    def __init__(self) -> None:
        self._records: dict[str, tuple[int, int]] = {}

    async def hit(self, key: str, max_requests: int, window_ms: int, now_ms: int) -> WindowState:
        record = self._records.get(key)
        if record is None or now_ms >= record[1]:
            reset_at = now_ms + window_ms
            self._records[key] = (1, reset_at)
            return WindowState(count=1, reset_at_ms=reset_at, allowed=True)
        count, reset_at = record
        if count >= max_requests:
            return WindowState(count=count, reset_at_ms=reset_at, allowed=False)
        self._records[key] = (count + 1, reset_at)
        return WindowState(count=count + 1, reset_at_ms=reset_at, allowed=True)

    async def reset(self, key: str) -> None:
        self._records.pop(key, None)

    def purge_expired(self, now_ms: int | None = None) -> int:
        """Drop records whose window has passed; returns how many were removed."""
        now_ms = clock.now_ms() if now_ms is None else now_ms
        stale = [k for k, (_, reset_at) in self._records.items() if now_ms >= reset_at]
        for k in stale:
            del self._records[k]
        return len(stale)

    async def close(self) -> None:
        self._records.clear()


# KEYS[1]=key ARGV[1]=max ARGV[2]=window_ms -> {count, pttl, allowed}
_HIT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
  return {current, redis.call('PTTL', KEYS[1]), 0}
end
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return {count, redis.call('PTTL', KEYS[1]), 1}
"""


class RedisRateLimitStore:
    """Shared counters in Redis. On Redis errors the request is allowed (fail open)."""

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisRateLimitStore:
        from redis.asyncio import from_url

        return cls(from_url(url, encoding="utf-8", decode_responses=True))

    async def hit(self, key: str, max_requests: int, window_ms: int, now_ms: int) -> WindowState:
        try:
            count, pttl, allowed = await self._client.eval(_HIT_SCRIPT, 1, key, max_requests, window_ms)
        except Exception as e:
            logger.warning("Rate limit: Redis error for %s, allowing request: %s", key, e)
            return WindowState(count=0, reset_at_ms=now_ms + window_ms, allowed=True)
        ttl_ms = int(pttl) if int(pttl) > 0 else window_ms
        return WindowState(count=int(count), reset_at_ms=now_ms + ttl_ms, allowed=bool(int(allowed)))

    async def reset(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except Exception as e:
            logger.warning("Rate limit: Redis error resetting %s: %s", key, e)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Rate limit: error closing Redis: %s", e)


def create_rate_limit_store(backend: str | None = None) -> RateLimitStore:
    backend = (backend or settings.rate_limit_backend).lower()
    if backend == "redis":
        return RedisRateLimitStore.from_url(settings.redis_url)
    if backend != "memory":
        raise ValueError(f"Unknown rate limit backend: {backend}")
    return MemoryRateLimitStore()


def client_address(request: Request) -> str:
    """Client IP: first X-Forwarded-For hop (if trusted), X-Real-IP, then the socket peer."""
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = (request.headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimiter:
    """
    A mounted limiter instance: {window_ms, max_requests} plus the store it counts in.
    Usable as a FastAPI dependency; raises 429 with Retry-After when the window is full.
    """

    def __init__(
        self,
        window_ms: int,
        max_requests: int,
        store: RateLimitStore | None = None,
        name: str = "default",
    ) -> None:
        if window_ms <= 0 or max_requests <= 0:
            raise ValueError("window_ms and max_requests must be positive")
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.store = store
        self.name = name

    def key_for(self, client: str) -> str:
        # Window and limit are part of the key so differently configured limiters never share counters
        return f"rate-limit:{client}:{self.window_ms}:{self.max_requests}"

    async def check(
        self,
        client: str,
        now_ms: int | None = None,
        store: RateLimitStore | None = None,
    ) -> RateLimitDecision | Rejected:
        if store is None:
            store = self.store
        if store is None:
            raise RuntimeError("RateLimiter has no store configured")
        now_ms = clock.now_ms() if now_ms is None else now_ms
        state = await store.hit(self.key_for(client), self.max_requests, self.window_ms, now_ms)
        if not state.allowed:
            retry_after = max(1, (state.reset_at_ms - now_ms + 999) // 1000)
            return Rejected(
                AuthErrorCode.RATE_LIMITED,
                f"{self.name}: {client} over {self.max_requests}/{self.window_ms}ms",
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(self.max_requests),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(state.reset_at_ms // 1000),
                },
            )
        return RateLimitDecision(
            limit=self.max_requests,
            remaining=max(0, self.max_requests - state.count),
            reset_at_ms=state.reset_at_ms,
        )

    async def __call__(self, request: Request) -> RateLimitDecision:
        store = self.store if self.store is not None else getattr(request.app.state, "rate_limit_store", None)
        client = client_address(request)
        result = await self.check(client, store=store)
        if isinstance(result, Rejected):
            rate_limited_total.labels(limiter=self.name).inc()
            logger.info("Rate limit exceeded: %s", result.reason)
            raise http_exception_for(result)
        return result


general_limiter = RateLimiter(
    window_ms=settings.rate_limit_window_ms,
    max_requests=settings.rate_limit_max_requests,
    name="general",
)
refresh_limiter = RateLimiter(
    window_ms=settings.rate_limit_window_ms,
    max_requests=settings.refresh_rate_limit_max_requests,
    name="refresh",
)
sensitive_limiter = RateLimiter(
    window_ms=settings.rate_limit_window_ms,
    max_requests=settings.sensitive_rate_limit_max_requests,
    name="sensitive",
)
