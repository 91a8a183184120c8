"""
Cache and rate-limit store with Redis primary and in-memory fallback.
"""
from .config import RATE_LIMIT_PATTERNS, RATE_LIMIT_PREFIXES, RedisConfig
from .connection import ConnectionManager, ConnectionState, StoreState
from .exceptions import (
    InvalidPatternError,
    SerializationError,
    StoreConnectionError,
    StoreError,
)
from .fallback import FallbackStore
from .client import RemoteStore
from .base import ScanPage, StoreBackend
from .store import CacheStore, ClearResult
from .rate_limit import (
    RateLimitResult,
    RateLimitRule,
    RateLimitService,
    RateLimitStatus,
    clear_rate_limits,
    rate_limit_dependency,
)

__all__ = [
    'CacheStore',
    'ClearResult',
    'ConnectionManager',
    'ConnectionState',
    'FallbackStore',
    'InvalidPatternError',
    'RATE_LIMIT_PATTERNS',
    'RATE_LIMIT_PREFIXES',
    'RateLimitResult',
    'RateLimitRule',
    'RateLimitService',
    'RateLimitStatus',
    'RedisConfig',
    'RemoteStore',
    'ScanPage',
    'SerializationError',
    'StoreBackend',
    'StoreConnectionError',
    'StoreError',
    'StoreState',
    'clear_rate_limits',
    'rate_limit_dependency',
]
