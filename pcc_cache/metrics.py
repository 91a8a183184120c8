"""
Cache store metrics for monitoring and test instrumentation.
Prometheus collectors are created lazily through singleton getters to avoid
duplicate registration when modules are reloaded.
"""
import logging

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


def get_operations_counter():
    if not hasattr(get_operations_counter, "_metric"):
        get_operations_counter._metric = Counter(
            "pcc_cache_operations_total",
            "Cache store operations",
            ["operation", "backend"],
        )
    return get_operations_counter._metric


def get_command_duration_histogram():
    if not hasattr(get_command_duration_histogram, "_metric"):
        get_command_duration_histogram._metric = Histogram(
            "pcc_cache_redis_command_duration_seconds",
            "Redis command duration",
            ["operation"],
        )
    return get_command_duration_histogram._metric


def get_demotion_counter():
    if not hasattr(get_demotion_counter, "_metric"):
        get_demotion_counter._metric = Counter(
            "pcc_cache_fallback_demotions_total",
            "Switches from Redis to the in-memory fallback",
            ["reason"],
        )
    return get_demotion_counter._metric


def get_fallback_mode_gauge():
    if not hasattr(get_fallback_mode_gauge, "_metric"):
        get_fallback_mode_gauge._metric = Gauge(
            "pcc_cache_fallback_mode",
            "1 while the in-memory fallback is authoritative",
        )
    return get_fallback_mode_gauge._metric


def get_rate_limit_requests():
    if not hasattr(get_rate_limit_requests, "_metric"):
        get_rate_limit_requests._metric = Counter(
            "pcc_rate_limit_requests_total",
            "Rate limit checks",
            ["action", "status"],
        )
    return get_rate_limit_requests._metric


def record_metrics(event: str, backend: str, value: int = 1, **kwargs) -> None:
    """
    * Record a store operation against the Prometheus counter
    Args:
        event (str): Operation name (get, set, delete, scan, ...)
        backend (str): Backend that served it ("redis" or "memory")
        value (int): Value to record (default 1)
        kwargs: Additional context for the debug log (key, pattern, ...)
    """
    get_operations_counter().labels(operation=event, backend=backend).inc(value)
    logger.debug(f"[metrics] Event: {event}, Backend: {backend}, Value: {value}, Context: {kwargs}")
