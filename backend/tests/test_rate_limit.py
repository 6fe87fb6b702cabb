"""Unit tests for the fixed-window rate limiter and its stores."""

from unittest.mock import patch

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from doccontrol.core.rate_limit import (
    MemoryRateLimitStore,
    RateLimitDecision,
    RateLimiter,
    RedisRateLimitStore,
    client_address,
    create_rate_limit_store,
)
from doccontrol.core.results import AuthErrorCode, Rejected

WINDOW_MS = 60_000
T0 = 1_700_000_000_000


class FakeRedis:
    """In-memory Redis-like client: runs the hit script's logic in Python."""

    def __init__(self):
        self._store: dict[str, int] = {}
        self._expires: dict[str, int] = {}
        self.closed = False

    async def eval(self, script, numkeys, key, max_requests, window_ms):
        current = self._store.get(key, 0)
        if current >= int(max_requests):
            return [current, self._expires.get(key, -1), 0]
        self._store[key] = current + 1
        if current + 1 == 1:
            self._expires[key] = int(window_ms)
        return [current + 1, self._expires[key], 1]

    async def delete(self, key):
        self._store.pop(key, None)
        self._expires.pop(key, None)

    async def aclose(self):
        self.closed = True


class BrokenRedis:
    async def eval(self, *args, **kwargs):
        raise ConnectionError("redis down")

    async def delete(self, key):
        raise ConnectionError("redis down")

    async def aclose(self):
        pass


def _request(headers: dict | None = None, client=("10.0.0.9", 1234)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


@pytest.mark.asyncio
async def test_sixth_request_in_window_is_rejected():
    limiter = RateLimiter(WINDOW_MS, 5, store=MemoryRateLimitStore())
    for i in range(5):
        result = await limiter.check("1.2.3.4", now_ms=T0 + i)
        assert isinstance(result, RateLimitDecision)
        assert result.remaining == 4 - i
    rejected = await limiter.check("1.2.3.4", now_ms=T0 + 10)
    assert isinstance(rejected, Rejected)
    assert rejected.code == AuthErrorCode.RATE_LIMITED
    assert rejected.headers["Retry-After"] == "60"
    assert rejected.headers["X-RateLimit-Remaining"] == "0"


@pytest.mark.asyncio
async def test_new_window_after_reset_time():
    limiter = RateLimiter(WINDOW_MS, 5, store=MemoryRateLimitStore())
    for i in range(5):
        await limiter.check("1.2.3.4", now_ms=T0 + i)
    assert isinstance(await limiter.check("1.2.3.4", now_ms=T0 + WINDOW_MS - 1), Rejected)
    result = await limiter.check("1.2.3.4", now_ms=T0 + WINDOW_MS + 1)
    assert isinstance(result, RateLimitDecision)
    assert result.remaining == 4
    assert result.reset_at_ms == T0 + 2 * WINDOW_MS + 1


@pytest.mark.asyncio
async def test_window_resets_exactly_at_reset_time():
    limiter = RateLimiter(WINDOW_MS, 1, store=MemoryRateLimitStore())
    await limiter.check("c", now_ms=T0)
    assert isinstance(await limiter.check("c", now_ms=T0 + WINDOW_MS), RateLimitDecision)


@pytest.mark.asyncio
async def test_rejected_requests_do_not_extend_or_count():
    store = MemoryRateLimitStore()
    limiter = RateLimiter(WINDOW_MS, 2, store=store)
    await limiter.check("c", now_ms=T0)
    await limiter.check("c", now_ms=T0 + 1)
    for i in range(10):
        assert isinstance(await limiter.check("c", now_ms=T0 + 100 + i), Rejected)
    state = await store.hit(limiter.key_for("c"), 2, WINDOW_MS, T0 + 200)
    assert state.count == 2
    assert state.reset_at_ms == T0 + WINDOW_MS
    assert not state.allowed


@pytest.mark.asyncio
async def test_clients_and_configurations_are_counted_separately():
    store = MemoryRateLimitStore()
    strict = RateLimiter(WINDOW_MS, 1, store=store)
    loose = RateLimiter(WINDOW_MS, 100, store=store)
    await strict.check("a", now_ms=T0)
    assert isinstance(await strict.check("a", now_ms=T0 + 1), Rejected)
    assert isinstance(await strict.check("b", now_ms=T0 + 1), RateLimitDecision)
    assert isinstance(await loose.check("a", now_ms=T0 + 1), RateLimitDecision)
    assert strict.key_for("a") == f"rate-limit:a:{WINDOW_MS}:1"


@pytest.mark.asyncio
async def test_reset_clears_client_window():
    store = MemoryRateLimitStore()
    limiter = RateLimiter(WINDOW_MS, 1, store=store)
    await limiter.check("a", now_ms=T0)
    await store.reset(limiter.key_for("a"))
    assert isinstance(await limiter.check("a", now_ms=T0 + 1), RateLimitDecision)


@pytest.mark.asyncio
async def test_purge_expired_drops_finished_windows():
    store = MemoryRateLimitStore()
    limiter = RateLimiter(WINDOW_MS, 5, store=store)
    await limiter.check("a", now_ms=T0)
    await limiter.check("b", now_ms=T0 + WINDOW_MS // 2)
    assert store.purge_expired(now_ms=T0 + WINDOW_MS) == 1
    assert store.purge_expired(now_ms=T0 + WINDOW_MS) == 0


def test_limiter_requires_positive_config():
    with pytest.raises(ValueError):
        RateLimiter(0, 5)
    with pytest.raises(ValueError):
        RateLimiter(WINDOW_MS, 0)


@pytest.mark.asyncio
async def test_limiter_without_store_raises():
    with pytest.raises(RuntimeError):
        await RateLimiter(WINDOW_MS, 5).check("a")


@pytest.mark.asyncio
async def test_redis_store_counts_and_rejects():
    store = RedisRateLimitStore(FakeRedis())
    limiter = RateLimiter(WINDOW_MS, 2, store=store)
    assert isinstance(await limiter.check("a", now_ms=T0), RateLimitDecision)
    assert isinstance(await limiter.check("a", now_ms=T0 + 1), RateLimitDecision)
    rejected = await limiter.check("a", now_ms=T0 + 2)
    assert isinstance(rejected, Rejected)
    assert int(rejected.headers["Retry-After"]) >= 1


@pytest.mark.asyncio
async def test_redis_store_fails_open():
    store = RedisRateLimitStore(BrokenRedis())
    limiter = RateLimiter(WINDOW_MS, 1, store=store)
    for i in range(3):
        assert isinstance(await limiter.check("a", now_ms=T0 + i), RateLimitDecision)
    await store.reset(limiter.key_for("a"))


@pytest.mark.asyncio
async def test_redis_store_close():
    client = FakeRedis()
    await RedisRateLimitStore(client).close()
    assert client.closed


def test_create_store_rejects_unknown_backend():
    assert isinstance(create_rate_limit_store("memory"), MemoryRateLimitStore)
    with pytest.raises(ValueError):
        create_rate_limit_store("memcached")


def test_client_address_prefers_first_forwarded_hop():
    req = _request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1", "X-Real-IP": "198.51.100.2"})
    assert client_address(req) == "203.0.113.5"
    assert client_address(_request({"X-Real-IP": "198.51.100.2"})) == "198.51.100.2"
    assert client_address(_request()) == "10.0.0.9"
    assert client_address(_request(client=None)) == "unknown"


def test_client_address_ignores_forwarded_when_untrusted():
    from doccontrol.config import settings

    with patch.object(settings, "trust_forwarded_for", False):
        assert client_address(_request({"X-Forwarded-For": "203.0.113.5"})) == "10.0.0.9"


@pytest.mark.asyncio
async def test_dependency_returns_429_with_retry_after():
    limiter = RateLimiter(WINDOW_MS, 2, store=MemoryRateLimitStore(), name="test")
    app = FastAPI()

    @app.get("/ping", dependencies=[Depends(limiter)])
    async def ping():
        return {"ok": True}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        assert (await ac.get("/ping")).status_code == 200
        assert (await ac.get("/ping")).status_code == 200
        r = await ac.get("/ping")
        assert r.status_code == 429
        assert r.json()["detail"] == "Too many requests, please try again later."
        assert int(r.headers["retry-after"]) >= 1
        # Another client address has its own window
        r = await ac.get("/ping", headers={"X-Forwarded-For": "203.0.113.7"})
        assert r.status_code == 200


@pytest.mark.asyncio
async def test_dependency_uses_app_state_store():
    limiter = RateLimiter(WINDOW_MS, 1, name="state")
    app = FastAPI()
    app.state.rate_limit_store = MemoryRateLimitStore()

    @app.get("/ping", dependencies=[Depends(limiter)])
    async def ping():
        return {"ok": True}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        assert (await ac.get("/ping")).status_code == 200
        assert (await ac.get("/ping")).status_code == 429
        app.state.rate_limit_store = MemoryRateLimitStore()
        assert (await ac.get("/ping")).status_code == 200
