"""
Shared pytest fixtures for the cache store tests
"""

import dataclasses
from unittest.mock import AsyncMock, MagicMock

import pytest

fakeredis = pytest.importorskip("fakeredis")
import fakeredis.aioredis

from pcc_cache.config import RedisConfig
from pcc_cache.connection import ConnectionManager
from pcc_cache.fallback import FallbackStore
from pcc_cache.store import CacheStore
from redis.exceptions import ConnectionError


class FakeClock:
    """Manually advanced monotonic clock for TTL tests"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def redis_config():
    """Config with fast timeouts and a one-failure circuit breaker"""
    return RedisConfig(
        connect_timeout=0.5,
        socket_timeout=0.5,
        scan_count=10,
        failure_threshold=1,
        recovery_timeout=60,
    )


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def fake_redis(fake_server):
    """Direct handle on the fake Redis the store talks to"""
    return fakeredis.aioredis.FakeRedis(server=fake_server, decode_responses=True)


@pytest.fixture
def fake_factory(fake_server):
    def factory(config):
        return fakeredis.aioredis.FakeRedis(server=fake_server, decode_responses=True)

    return factory


@pytest.fixture
def unreachable_factory():
    """Client factory whose clients refuse every PING"""
    created = []

    def factory(config):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=ConnectionError("Connection refused"))
        client.aclose = AsyncMock()
        created.append(client)
        return client

    factory.created = created
    return factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_store(redis_config, fake_factory):
    """CacheStore backed by fakeredis (call connect() inside the test)"""
    return CacheStore(ConnectionManager(redis_config, client_factory=fake_factory))


@pytest.fixture
def memory_store(redis_config, clock):
    """CacheStore with Redis disabled, so the fallback is authoritative"""
    config = dataclasses.replace(redis_config, enabled=False)
    manager = ConnectionManager(config, fallback=FallbackStore(clock=clock))
    return CacheStore(manager)
