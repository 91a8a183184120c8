"""
Key/value store over the active backend.

CacheStore gives the same get/set/delete/scan semantics whether Redis or
the in-memory fallback is authoritative. Values are JSON-serialized, so
anything ``json.dumps`` accepts round-trips (tuples come back as lists).

Redis failures during an operation switch the manager to fallback mode and
the operation is re-run once against the fallback, which is authoritative
from then on. Connection errors are never raised to callers; an error
Redis itself answers with (a WRONGTYPE reply, say) is raised as StoreError
for that one call and Redis stays authoritative.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

from pcc_cache.base import ScanPage, StoreBackend, validate_pattern
from pcc_cache.config import HEALTH_CHECK_KEY, HEALTH_CHECK_TTL
from pcc_cache.connection import ConnectionManager
from pcc_cache.exceptions import SerializationError, StoreConnectionError, StoreError
from pcc_cache.metrics import record_metrics

logger = logging.getLogger(__name__)

_UNAVAILABLE = object()


@dataclass
class ClearResult:
    """Outcome of a bulk pattern clear."""

    deleted: int = 0
    keys: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


def _dumps(key: str, value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as e:
        raise SerializationError(key, f"cannot encode value: {e}") from e


def _loads(key: str, payload: str) -> Any:
    try:
        return json.loads(payload)
    except ValueError as e:
        raise SerializationError(key, f"cannot decode stored payload: {e}") from e


class CacheStore:
    """
    Cache and rate-limit store with Redis primary and in-memory fallback.

    Usage:
        async with CacheStore() as store:
            await store.set("events:upcoming", events, ttl=300)
            events = await store.get("events:upcoming")
    """

    def __init__(self, manager: ConnectionManager | None = None, page_size: int | None = None):
        self.manager = manager or ConnectionManager()
        self.page_size = page_size or self.manager.config.scan_count

    async def connect(self) -> None:
        await self.manager.connect()

    async def disconnect(self) -> None:
        await self.manager.disconnect()

    async def __aenter__(self) -> "CacheStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def _run(
        self,
        operation: str,
        call: Callable[[StoreBackend], Awaitable[Any]],
        **context,
    ) -> Any:
        backend = self.manager.active_backend()
        if backend is None:
            logger.debug(f"Cache {operation} skipped, store not connected")
            return _UNAVAILABLE
        try:
            result = await call(backend)
        except StoreConnectionError as e:
            self.manager.demote(e)
            backend = self.manager.active_backend()
            if backend is None:
                return _UNAVAILABLE
            result = await call(backend)
        record_metrics(operation, backend.name, **context)
        return result

    async def get(self, key: str) -> Any:
        """Stored value, or None when the key is missing or expired."""
        payload = await self._run("get", lambda b: b.get(key), key=key)
        if payload is _UNAVAILABLE or payload is None:
            return None
        return _loads(key, payload)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """
        Store ``value`` under ``key``, replacing any previous entry.

        Args:
            key: Cache key
            value: Any JSON-serializable value
            ttl: Optional lifetime in whole seconds (must be positive)

        Returns:
            True if stored, False if the store is not connected.
        """
        if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0):
            raise ValueError("ttl must be a positive integer number of seconds")
        payload = _dumps(key, value)
        result = await self._run("set", lambda b: b.set(key, payload, ttl), key=key)
        return result is not _UNAVAILABLE

    async def delete(self, key: str) -> int:
        """Remove ``key``. Missing keys are not an error. Returns the number removed."""
        result = await self._run("delete", lambda b: b.delete(key), key=key)
        return 0 if result is _UNAVAILABLE else result

    async def exists(self, key: str) -> bool:
        result = await self._run("exists", lambda b: b.exists(key), key=key)
        return False if result is _UNAVAILABLE else result

    async def scan(self, pattern: str, cursor: int = 0, count: int | None = None) -> ScanPage:
        """
        One page of keys matching a glob ``pattern``.

        Loop until the returned cursor is 0; a single call never walks the
        whole keyspace.
        """
        validate_pattern(pattern)
        count = count or self.page_size
        if count < 1:
            raise ValueError("count must be at least 1")
        result = await self._run(
            "scan", lambda b: b.scan(cursor, pattern, count), pattern=pattern
        )
        return ScanPage(0, []) if result is _UNAVAILABLE else result

    async def iter_keys(self, pattern: str, count: int | None = None) -> AsyncIterator[str]:
        """
        Yield every key matching ``pattern``, paging with scan().

        Keys may be yielded more than once. If the backend changes mid-scan
        the scan restarts from the beginning on the new backend, since
        cursors are not portable between backends.
        """
        cursor = 0
        state = self.manager.state.state
        while True:
            page = await self.scan(pattern, cursor, count)
            if self.manager.state.state is not state:
                state = self.manager.state.state
                cursor = 0
                continue
            for key in page.keys:
                yield key
            cursor = page.cursor
            if cursor == 0:
                return

    async def clear_by_pattern(
        self, patterns: str | Iterable[str], return_keys: bool = False
    ) -> ClearResult:
        """
        Delete every key matching any of ``patterns``.

        A failing pattern is recorded in ``ClearResult.errors`` and does not
        stop the remaining patterns.
        """
        patterns = [patterns] if isinstance(patterns, str) else list(patterns)
        result = ClearResult()
        for pattern in patterns:
            try:
                async for key in self.iter_keys(pattern):
                    removed = await self.delete(key)
                    if removed:
                        result.deleted += removed
                        if return_keys:
                            result.keys.append(key)
                        logger.debug(f"Deleted: {key}")
            except StoreError as e:
                logger.error(f"Error clearing pattern {pattern}: {e}")
                result.errors[pattern] = str(e)
        logger.info(f"Cleared {result.deleted} entries matching {patterns}")
        return result

    async def health_check(self) -> dict:
        """Write a short-lived probe key and report the connection state."""
        healthy = await self.set(HEALTH_CHECK_KEY, True, ttl=HEALTH_CHECK_TTL)
        backend = self.manager.active_backend()
        return {
            "state": self.manager.state.state.value,
            "connected": self.manager.is_connected,
            "fallback_mode": self.manager.fallback_mode,
            "backend": backend.name if backend else None,
            "healthy": healthy,
        }
