"""
Tests for the fixed-window rate limiter, its FastAPI dependency and
bulk clearing of rate limit keys.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from pcc_cache.rate_limit import (
    RateLimitRule,
    RateLimitService,
    clear_rate_limits,
    default_rules,
    rate_limit_dependency,
)


class WallClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def limiter(memory_store, wall_clock):
    rules = {"login": RateLimitRule(max_attempts=3, window=900, key_prefix="ratelimit:login")}
    return RateLimitService(memory_store, rules=rules, clock=wall_clock)


def test_default_rules_read_environment(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_LOGIN", "12")
    monkeypatch.setenv("RATE_LIMIT_2FA", "not-a-number")
    rules = default_rules()
    assert rules["login"].max_attempts == 12
    assert rules["two_factor"].max_attempts == 3
    assert rules["register"] == RateLimitRule(5, 3600, "ratelimit:register")
    assert set(rules) == {"register", "login", "verification", "resend_email", "two_factor"}


@pytest.mark.asyncio
async def test_allows_until_limit_then_blocks(limiter, memory_store, wall_clock):
    await memory_store.connect()

    results = [await limiter.check_rate_limit("login", "10.0.0.1") for _ in range(3)]
    assert [r.allowed for r in results] == [True, True, True]
    assert [r.remaining for r in results] == [2, 1, 0]

    wall_clock.now += 60
    blocked = await limiter.check_rate_limit("login", "10.0.0.1")
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.retry_after == 900 - 60

    # other identifiers are unaffected
    assert (await limiter.check_rate_limit("login", "10.0.0.2")).allowed is True


@pytest.mark.asyncio
async def test_window_elapses(limiter, memory_store, wall_clock, clock):
    await memory_store.connect()
    for _ in range(4):
        await limiter.check_rate_limit("login", "user@pcc.edu")

    wall_clock.now += 901
    clock.advance(901)
    result = await limiter.check_rate_limit("login", "user@pcc.edu")
    assert result.allowed is True
    assert result.remaining == 2


@pytest.mark.asyncio
async def test_status_reset_and_unknown_action(limiter, memory_store):
    await memory_store.connect()
    await limiter.record_attempt("login", "u1")
    await limiter.record_attempt("login", "u1")

    status = await limiter.get_rate_limit_status("login", "u1")
    assert (status.count, status.remaining) == (2, 1)

    await limiter.reset_rate_limit("login", "u1")
    status = await limiter.get_rate_limit_status("login", "u1")
    assert (status.count, status.remaining) == (0, 3)

    with pytest.raises(ValueError):
        await limiter.check_rate_limit("teleport", "u1")


@pytest.mark.asyncio
async def test_update_config(limiter, memory_store):
    await memory_store.connect()
    limiter.update_config("login", max_attempts=1)
    assert limiter.get_config("login").max_attempts == 1
    assert (await limiter.check_rate_limit("login", "u")).allowed is True
    assert (await limiter.check_rate_limit("login", "u")).allowed is False


@pytest.mark.asyncio
async def test_fails_open_when_store_errors(limiter):
    limiter.store.get = AsyncMock(side_effect=RuntimeError("store down"))
    for _ in range(5):
        result = await limiter.check_rate_limit("login", "u")
        assert result.allowed is True
        assert result.remaining == 3


@pytest.mark.asyncio
async def test_works_against_redis(redis_store, fake_redis, wall_clock):
    await redis_store.connect()
    limiter = RateLimitService(redis_store, clock=wall_clock)

    await limiter.check_rate_limit("resend_email", "student@pcc.edu")

    assert await fake_redis.exists("ratelimit:resend:student@pcc.edu") == 1
    assert 0 < await fake_redis.ttl("ratelimit:resend:student@pcc.edu") <= 3600
    await redis_store.disconnect()


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["redis", "memory"])
async def test_concurrent_attempts_never_exceed_limit(request, backend, wall_clock):
    store = request.getfixturevalue(f"{backend}_store")
    await store.connect()
    limiter = RateLimitService(
        store,
        rules={"login": RateLimitRule(3, 900, "ratelimit:login")},
        clock=wall_clock,
    )

    results = await asyncio.gather(
        *(limiter.check_rate_limit("login", "10.0.0.9") for _ in range(10))
    )

    assert sum(r.allowed for r in results) == 3
    assert sorted(r.remaining for r in results if r.allowed) == [0, 1, 2]
    status = await limiter.get_rate_limit_status("login", "10.0.0.9")
    assert status.count == 3
    await store.disconnect()


@pytest.mark.asyncio
async def test_clear_rate_limits_targets_both_prefixes(redis_store):
    await redis_store.connect()
    await redis_store.set("ratelimit:login:a", {"count": 1})
    await redis_store.set("rate_limit:api:b", 1)
    await redis_store.set("ratelimits_archive", 1)
    await redis_store.set("session:c", 1)

    result = await clear_rate_limits(redis_store, return_keys=True)

    assert result.deleted == 2
    assert sorted(result.keys) == ["rate_limit:api:b", "ratelimit:login:a"]
    assert await redis_store.get("ratelimits_archive") == 1
    assert await redis_store.get("session:c") == 1
    await redis_store.disconnect()


def test_fastapi_dependency_sets_headers_and_returns_429(memory_store, wall_clock):
    limiter = RateLimitService(
        memory_store,
        rules={"register": RateLimitRule(2, 3600, "ratelimit:register")},
        clock=wall_clock,
    )
    app = FastAPI()

    @app.post("/register", dependencies=[Depends(rate_limit_dependency(limiter, "register"))])
    async def register():
        return {"ok": True}

    with TestClient(app) as client:
        client.portal.call(memory_store.connect)
        first = client.post("/register")
        second = client.post("/register")
        third = client.post("/register")

    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert second.headers["X-RateLimit-Remaining"] == "0"
    assert third.status_code == 429
    assert third.headers["Retry-After"] == "3600"
    assert third.json()["detail"]["code"] == "RATE_LIMIT_EXCEEDED"


def test_fastapi_dependency_rejects_unknown_action(memory_store):
    with pytest.raises(ValueError):
        rate_limit_dependency(RateLimitService(memory_store), "teleport")
