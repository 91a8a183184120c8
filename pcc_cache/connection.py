"""
Connection lifecycle for the cache store.

A ConnectionManager owns one Redis client and one in-memory fallback and
decides which of them is authoritative:

    DISCONNECTED -> CONNECTING -> CONNECTED
    DISCONNECTED -> CONNECTING -> FALLBACK   (connect failed or Redis disabled)
    CONNECTED    -> FALLBACK                 (runtime I/O failure)
    FALLBACK     -> CONNECTING -> CONNECTED  (explicit reconnect)
    any          -> DISCONNECTED             (explicit disconnect)

connect() and reconnect() never raise; a failed attempt leaves the manager
in FALLBACK so callers keep working against process memory.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Callable

from circuitbreaker import CircuitBreaker, CircuitBreakerError
from redis.asyncio import Redis

from pcc_cache.base import StoreBackend
from pcc_cache.client import RemoteStore, create_redis_client
from pcc_cache.config import CONNECT_EXCEPTIONS, RedisConfig
from pcc_cache.fallback import FallbackStore
from pcc_cache.metrics import get_demotion_counter, get_fallback_mode_gauge

logger = logging.getLogger(__name__)


class StoreState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FALLBACK = "fallback"


@dataclass
class ConnectionState:
    state: StoreState = StoreState.DISCONNECTED
    last_error: str | None = field(default=None)

    @property
    def is_connected(self) -> bool:
        return self.state is StoreState.CONNECTED

    @property
    def fallback_mode(self) -> bool:
        return self.state is StoreState.FALLBACK


class ConnectionManager:
    """
    Selects the active backend for a CacheStore.

    Args:
        config: Connection settings; defaults to RedisConfig.from_env()
        client_factory: Builds an unconnected Redis client from config
        fallback: In-memory store used while Redis is unavailable
    """

    def __init__(
        self,
        config: RedisConfig | None = None,
        client_factory: Callable[[RedisConfig], Redis] = create_redis_client,
        fallback: FallbackStore | None = None,
    ):
        self.config = config or RedisConfig.from_env()
        self.state = ConnectionState()
        self.fallback = fallback if fallback is not None else FallbackStore()
        self._client_factory = client_factory
        self._remote: RemoteStore | None = None
        self._sweeper_task: asyncio.Task | None = None
        self._breaker = CircuitBreaker(
            failure_threshold=self.config.failure_threshold,
            recovery_timeout=self.config.recovery_timeout,
            expected_exception=CONNECT_EXCEPTIONS,
            name=f"redis-connect-{self.config.host}:{self.config.port}",
        )
        self._open_remote = self._breaker(self._open_remote_unguarded)

    @property
    def is_connected(self) -> bool:
        return self.state.is_connected

    @property
    def fallback_mode(self) -> bool:
        return self.state.fallback_mode

    async def _open_remote_unguarded(self) -> RemoteStore:
        remote = RemoteStore(self._client_factory(self.config))
        try:
            await asyncio.wait_for(
                remote.client.ping(), timeout=self.config.connect_timeout
            )
        except BaseException:
            await remote.close()
            raise
        return remote

    async def connect(self) -> Redis | None:
        """
        Connect to Redis, or switch to the in-memory fallback.

        Returns:
            The raw Redis client when connected, None in fallback mode.
        """
        if self.state.is_connected:
            return self.get_client()

        if not self.config.enabled:
            logger.info("Redis disabled in configuration, using in-memory fallback")
            self._enter_fallback(None)
            return None

        await self._close_remote()
        self.state.state = StoreState.CONNECTING
        target = f"{self.config.host}:{self.config.port}/{self.config.db}"
        try:
            self._remote = await self._open_remote()
        except CircuitBreakerError as e:
            logger.warning(f"Redis connect circuit open ({target}), staying in fallback mode: {e}")
            self._enter_fallback(str(e))
            return None
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.warning(f"Redis connection failed ({target}), using in-memory fallback: {reason}")
            self._enter_fallback(reason)
            return None

        # Redis is authoritative again; fallback entries are stale from here on
        self.fallback.clear()
        self.state.state = StoreState.CONNECTED
        self.state.last_error = None
        get_fallback_mode_gauge().set(0)
        logger.info(f"Redis connected: {target}")
        return self.get_client()

    async def reconnect(self) -> bool:
        """Explicit FALLBACK -> CONNECTED attempt. Returns True when connected."""
        if self.state.is_connected:
            return True
        await self.connect()
        return self.state.is_connected

    async def disconnect(self) -> None:
        """Close Redis, stop the sweeper and drop fallback data. Idempotent."""
        self.stop_sweeper()
        await self._close_remote()
        self.fallback.clear()
        if self.state.state is not StoreState.DISCONNECTED:
            logger.info("Cache store disconnected")
        self.state.state = StoreState.DISCONNECTED
        get_fallback_mode_gauge().set(0)

    def get_client(self) -> Redis | None:
        """Raw Redis client for low-level commands; None means use the fallback."""
        if self.state.is_connected and self._remote is not None:
            return self._remote.client
        return None

    def active_backend(self) -> StoreBackend | None:
        if self.state.is_connected and self._remote is not None:
            return self._remote
        if self.state.fallback_mode:
            return self.fallback
        return None

    def demote(self, error: Exception) -> None:
        """Runtime Redis failure: make the fallback authoritative."""
        if not self.state.is_connected:
            return
        logger.warning(f"Redis I/O failed, switching to in-memory fallback: {error}")
        get_demotion_counter().labels(reason=type(error).__name__).inc()
        self._enter_fallback(str(error))

    def _enter_fallback(self, reason: str | None) -> None:
        self.state.state = StoreState.FALLBACK
        self.state.last_error = reason
        get_fallback_mode_gauge().set(1)

    async def _close_remote(self) -> None:
        if self._remote is not None:
            remote, self._remote = self._remote, None
            await remote.close()

    def start_sweeper(self, interval: float | None = None) -> asyncio.Task:
        """Start a task that periodically purges expired fallback entries."""
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(
                self._sweep_loop(interval or self.config.sweep_interval)
            )
        return self._sweeper_task

    def stop_sweeper(self) -> None:
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            self._sweeper_task = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.fallback.sweep_expired()

    async def __aenter__(self) -> "ConnectionManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()
