"""
Cache store error types.

Absence of a key is never an error: lookups return None.
"""


class StoreError(Exception):
    """Base class for cache store errors."""


class StoreConnectionError(StoreError):
    """The remote store is unreachable or timed out."""


class SerializationError(StoreError):
    """A value could not be encoded, or a stored payload could not be decoded."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key


class InvalidPatternError(StoreError, ValueError):
    """A scan pattern is empty or malformed."""

    def __init__(self, pattern: str, message: str):
        super().__init__(f"invalid pattern {pattern!r}: {message}")
        self.pattern = pattern
