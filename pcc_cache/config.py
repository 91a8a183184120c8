"""
Redis configuration settings with timeout and fallback parameters.
"""

import asyncio
import os
from dataclasses import dataclass

from redis.exceptions import ConnectionError, RedisError, TimeoutError

# Reserved rate limit key prefixes; bulk clears target exactly these
RATE_LIMIT_PREFIXES = ("ratelimit:", "rate_limit:")
RATE_LIMIT_PATTERNS = tuple(f"{prefix}*" for prefix in RATE_LIMIT_PREFIXES)

HEALTH_CHECK_KEY = "health_check"
HEALTH_CHECK_TTL = 60  # seconds

# Failures that count against the connect circuit breaker
CONNECT_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    RedisError,
    OSError,
    asyncio.TimeoutError,
)

_FALSE_VALUES = ("0", "false", "no", "off")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in _FALSE_VALUES


@dataclass
class RedisConfig:
    """Connection settings for the cache store."""

    enabled: bool = True
    host: str = "localhost"
    port: int = 6379
    password: str | None = None
    db: int = 0

    # Connection timeouts in seconds (float)
    connect_timeout: float = 5.0
    socket_timeout: float = 5.0

    # SCAN page size
    scan_count: int = 100

    # Circuit breaker settings for (re)connect attempts
    failure_threshold: int = 3
    recovery_timeout: int = 30

    # Seconds between fallback sweeps
    sweep_interval: float = 60.0

    @classmethod
    def from_env(cls) -> "RedisConfig":
        """Build a config from REDIS_* environment variables."""
        return cls(
            enabled=_env_bool("REDIS_ENABLED", True),
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            password=os.getenv("REDIS_PASSWORD") or None,
            db=int(os.getenv("REDIS_DB", "0")),
            connect_timeout=float(os.getenv("REDIS_CONNECT_TIMEOUT", "5.0")),
            socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0")),
            scan_count=int(os.getenv("REDIS_SCAN_COUNT", "100")),
            failure_threshold=int(os.getenv("REDIS_FAILURE_THRESHOLD", "3")),
            recovery_timeout=int(os.getenv("REDIS_RECOVERY_TIMEOUT", "30")),
            sweep_interval=float(os.getenv("REDIS_SWEEP_INTERVAL", "60")),
        )


# Rate limit actions: (env override for max attempts, default max, window seconds, key prefix)
RATE_LIMIT_ACTIONS = {
    "register": ("RATE_LIMIT_REGISTER", 5, 60 * 60, "ratelimit:register"),
    "login": ("RATE_LIMIT_LOGIN", 5, 15 * 60, "ratelimit:login"),
    "verification": ("RATE_LIMIT_VERIFICATION", 10, 60 * 60, "ratelimit:verification"),
    "resend_email": ("RATE_LIMIT_RESEND", 3, 60 * 60, "ratelimit:resend"),
    "two_factor": ("RATE_LIMIT_2FA", 3, 15 * 60, "ratelimit:2fa"),
}
