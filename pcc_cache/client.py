"""
Redis-backed store.

Follows the same rules for every command:
- Tracing span per command
- Latency histogram per operation
- Connection, timeout and socket failures surface as StoreConnectionError
  so the connection manager can switch to the fallback
- Errors Redis answers with (WRONGTYPE, OOM, ...) surface as StoreError and
  leave the connection alone
"""

import logging
import time
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.trace import StatusCode
from redis.asyncio import Redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from pcc_cache.base import ScanPage, validate_pattern
from pcc_cache.config import RedisConfig
from pcc_cache.exceptions import StoreConnectionError, StoreError
from pcc_cache.metrics import get_command_duration_histogram

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)


def create_redis_client(config: RedisConfig) -> Redis:
    """Build a standalone async Redis client from config. Does not connect."""
    return Redis(
        host=config.host,
        port=config.port,
        password=config.password,
        db=config.db,
        socket_connect_timeout=config.connect_timeout,
        socket_timeout=config.socket_timeout,
        decode_responses=True,
    )


class RemoteStore:
    """
    StoreBackend over an async Redis client.

    The client is owned by the connection manager; this class only issues
    commands against it.
    """

    name = "redis"

    def __init__(self, client: Redis):
        self._client = client

    @property
    def client(self) -> Redis:
        return self._client

    @contextmanager
    def _command(self, operation: str, **attributes):
        started = time.perf_counter()
        with tracer.start_as_current_span(f"redis.{operation}") as span:
            span.set_attributes({f"redis.{k}": v for k, v in attributes.items()})
            try:
                yield span
                span.set_status(StatusCode.OK)
            except (ConnectionError, TimeoutError, OSError) as e:
                span.record_exception(e)
                span.set_status(StatusCode.ERROR)
                logger.debug(f"Redis {operation} failed {attributes}: {e}")
                raise StoreConnectionError(f"redis {operation} failed: {e}") from e
            except RedisError as e:
                span.record_exception(e)
                span.set_status(StatusCode.ERROR)
                logger.warning(f"Redis rejected {operation} {attributes}: {e}")
                raise StoreError(f"redis {operation} rejected: {e}") from e
            finally:
                get_command_duration_histogram().labels(operation=operation).observe(
                    time.perf_counter() - started
                )

    async def get(self, key: str) -> str | None:
        with self._command("get", key=key):
            return await self._client.get(key)

    async def set(self, key: str, payload: str, ttl: int | None = None) -> None:
        with self._command("set", key=key, ttl=ttl or 0):
            await self._client.set(key, payload, ex=ttl)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with self._command("delete", keys=len(keys)):
            return await self._client.delete(*keys)

    async def exists(self, key: str) -> bool:
        with self._command("exists", key=key):
            return await self._client.exists(key) == 1

    async def scan(self, cursor: int, match: str, count: int) -> ScanPage:
        """
        One SCAN step (never KEYS). Redis may return fewer or more keys than
        ``count`` and may repeat keys across pages; callers loop until the
        returned cursor is 0.
        """
        validate_pattern(match)
        with self._command("scan", pattern=match, cursor=cursor):
            next_cursor, batch = await self._client.scan(cursor=cursor, match=match, count=count)
            keys = [k.decode() if isinstance(k, bytes) else k for k in batch]
            return ScanPage(int(next_cursor), keys)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing Redis client: {e}")
