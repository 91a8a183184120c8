"""
Rate Limiting Utilities

Fixed-window rate limiting for portal actions (registration, login,
verification, ...) stored in the cache store, with:
- Atomic counting: WATCH/MULTI on Redis, a lock on the in-memory fallback
- Fail-open behaviour when the store errors
- FastAPI dependency that sets X-RateLimit-* headers and answers 429
- Bulk clearing of every rate limit key
- Prometheus counters per action and outcome
"""

import asyncio
import dataclasses
import json
import logging
import math
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from fastapi import HTTPException, Request, Response, status
from redis.exceptions import ConnectionError, TimeoutError

from pcc_cache.config import RATE_LIMIT_ACTIONS, RATE_LIMIT_PATTERNS
from pcc_cache.exceptions import StoreConnectionError
from pcc_cache.metrics import get_rate_limit_requests
from pcc_cache.store import CacheStore, ClearResult

logger = logging.getLogger(__name__)


@dataclass
class RateLimitRule:
    max_attempts: int
    window: int  # seconds
    key_prefix: str


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: int | None = None


@dataclass
class RateLimitStatus:
    count: int
    remaining: int
    reset_at: datetime


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name) or default)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={os.getenv(name)!r}, using {default}")
        return default


def default_rules() -> dict[str, RateLimitRule]:
    """Built-in action rules; max attempts can be overridden per action from the environment."""
    return {
        action: RateLimitRule(_env_int(env_name, default_max), window, prefix)
        for action, (env_name, default_max, window, prefix) in RATE_LIMIT_ACTIONS.items()
    }


def _as_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _advance(data: dict | None, rule: RateLimitRule, now: int) -> tuple[dict | None, int]:
    # (entry to store, ttl seconds); entry is None once the window is used up
    if not data or now > data["reset_at"]:
        return {"count": 1, "reset_at": now + rule.window * 1000}, rule.window
    if data["count"] >= rule.max_attempts:
        return None, 0
    ttl = max(1, math.ceil((data["reset_at"] - now) / 1000))
    return {"count": data["count"] + 1, "reset_at": data["reset_at"]}, ttl


class RateLimitService:
    """
    Per-action fixed-window limiter.

    Each identifier gets one entry ``{count, reset_at}`` (reset_at in epoch
    milliseconds) stored as JSON with a TTL matching the remaining window,
    the same encoding CacheStore uses, so status reads work on either backend.
    """

    def __init__(
        self,
        store: CacheStore,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.rules = rules if rules is not None else default_rules()
        self._clock = clock
        self._lock = asyncio.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get_config(self, action: str) -> RateLimitRule:
        rule = self.rules.get(action)
        if rule is None:
            raise ValueError(f"Unknown rate limit action: {action}")
        return rule

    def update_config(self, action: str, **changes) -> RateLimitRule:
        """Replace fields (max_attempts, window, key_prefix) of an existing rule."""
        self.rules[action] = dataclasses.replace(self.get_config(action), **changes)
        return self.rules[action]

    def _key(self, action: str, identifier: str) -> str:
        return f"{self.get_config(action).key_prefix}:{identifier}"

    async def _count_attempt(self, key: str, rule: RateLimitRule, now: int):
        """
        Read-modify-write of one window entry with no lost updates.

        On Redis the entry is WATCHed and rewritten in MULTI/EXEC, retrying
        if another request changed it in between. On the fallback the
        update runs under the service lock.

        Returns:
            (stored entry before this attempt, new entry or None when limited)
        """
        client = self.store.manager.get_client()
        if client is not None:
            async def attempt(pipe):
                raw = await pipe.get(key)
                data = json.loads(raw) if raw else None
                entry, ttl = _advance(data, rule, now)
                pipe.multi()
                if entry is not None:
                    pipe.set(key, json.dumps(entry), ex=ttl)
                return data, entry

            try:
                return await client.transaction(attempt, key, value_from_callable=True)
            except (ConnectionError, TimeoutError, OSError) as e:
                self.store.manager.demote(StoreConnectionError(f"redis rate limit failed: {e}"))

        async with self._lock:
            data = await self.store.get(key)
            entry, ttl = _advance(data, rule, now)
            if entry is not None:
                await self.store.set(key, entry, ttl=ttl)
            return data, entry

    async def check_rate_limit(self, action: str, identifier: str) -> RateLimitResult:
        """
        Count one attempt for ``identifier`` and decide whether it is allowed.

        Raises:
            ValueError: ``action`` has no rule
        """
        rule = self.get_config(action)
        key = self._key(action, identifier)
        now = self._now_ms()

        try:
            data, entry = await self._count_attempt(key, rule, now)
        except Exception as e:
            logger.error(f"Rate limit check error for {key}: {e}", exc_info=True)
            get_rate_limit_requests().labels(action=action, status="error").inc()
            # Fail open when the store misbehaves
            return RateLimitResult(True, rule.max_attempts, _as_datetime(now + rule.window * 1000))

        if entry is None:
            retry_after = math.ceil((data["reset_at"] - now) / 1000)
            logger.warning(f"Rate limit exceeded: {key} ({data['count']}/{rule.max_attempts})")
            get_rate_limit_requests().labels(action=action, status="limited").inc()
            return RateLimitResult(False, 0, _as_datetime(data["reset_at"]), retry_after)

        get_rate_limit_requests().labels(action=action, status="allowed").inc()
        return RateLimitResult(True, rule.max_attempts - entry["count"], _as_datetime(entry["reset_at"]))

    async def record_attempt(self, action: str, identifier: str) -> None:
        await self.check_rate_limit(action, identifier)

    async def reset_rate_limit(self, action: str, identifier: str) -> None:
        await self.store.delete(self._key(action, identifier))

    async def get_rate_limit_status(self, action: str, identifier: str) -> RateLimitStatus:
        """Current usage without counting an attempt."""
        rule = self.get_config(action)
        now = self._now_ms()
        fresh = RateLimitStatus(0, rule.max_attempts, _as_datetime(now + rule.window * 1000))
        try:
            data = await self.store.get(self._key(action, identifier))
            if not data or now > data["reset_at"]:
                return fresh
            return RateLimitStatus(
                data["count"],
                max(0, rule.max_attempts - data["count"]),
                _as_datetime(data["reset_at"]),
            )
        except Exception as e:
            logger.error(f"Get rate limit status error: {e}", exc_info=True)
            return fresh


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit_dependency(
    service: RateLimitService,
    action: str,
    identifier_fn: Callable[[Request], str] = client_ip,
):
    """
    Build a FastAPI dependency enforcing ``action``'s limit.

    Usage:
        @router.post("/login", dependencies=[Depends(rate_limit_dependency(limiter, "login"))])
    """
    service.get_config(action)

    async def dependency(request: Request, response: Response) -> RateLimitResult | None:
        try:
            identifier = identifier_fn(request)
        except Exception as e:
            # Fail open: a request we cannot identify is not limited
            logger.error(f"Rate limit identifier error for {action}: {e}", exc_info=True)
            return None

        result = await service.check_rate_limit(action, identifier)
        headers = {
            "X-RateLimit-Limit": str(service.get_config(action).max_attempts),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": result.reset_at.isoformat(),
        }
        if not result.allowed:
            headers["Retry-After"] = str(result.retry_after)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "code": "RATE_LIMIT_EXCEEDED",
                    "message": "Too many attempts. Please try again later.",
                    "retryAfter": result.retry_after,
                    "resetAt": result.reset_at.isoformat(),
                },
                headers=headers,
            )
        response.headers.update(headers)
        return result

    return dependency


async def clear_rate_limits(store: CacheStore, return_keys: bool = False) -> ClearResult:
    """Delete every ``ratelimit:*`` and ``rate_limit:*`` entry."""
    result = await store.clear_by_pattern(RATE_LIMIT_PATTERNS, return_keys=return_keys)
    logger.info(f"Cleared {result.deleted} rate limit entries")
    return result
