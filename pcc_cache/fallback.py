"""
In-memory fallback store.

Used whenever Redis is disabled or unreachable. Data lives only in this
process and is lost on restart. TTLs are enforced lazily on read and by
``sweep_expired``; no background thread is started here.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Callable, NamedTuple

from pcc_cache.base import ScanPage, compile_glob, validate_pattern

logger = logging.getLogger(__name__)


class _Entry(NamedTuple):
    payload: str
    expires_at: float | None
    seq: int


class FallbackStore:
    """
    Process-local key/value map with TTL support.

    Entries are replaced whole under a lock, so a concurrent reader sees
    either the previous or the new payload.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.RLock()
        self._seq = itertools.count(1)

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._entries) if self._live(key))

    def _live(self, key: str) -> _Entry | None:
        # Caller holds the lock. Drops the entry if it has expired.
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            return entry.payload if entry else None

    async def set(self, key: str, payload: str, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            current = self._live(key)
            seq = current.seq if current else next(self._seq)
            self._entries[key] = _Entry(payload, expires_at, seq)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def scan(self, cursor: int, match: str, count: int) -> ScanPage:
        """
        Page through live keys matching ``match``.

        Every key carries the sequence number it was first written with and
        the cursor is the last sequence number returned. Deleting keys
        between calls therefore never shifts later pages, and keys deleted
        before a call are never returned.
        """
        validate_pattern(match)
        glob = compile_glob(match)
        matches = []
        with self._lock:
            for key in list(self._entries):
                if not glob.fullmatch(key):
                    continue
                entry = self._live(key)
                if entry is not None and entry.seq > cursor:
                    matches.append((entry.seq, key))
        matches.sort()
        page = matches[:count]
        next_cursor = page[-1][0] if len(matches) > count else 0
        return ScanPage(next_cursor, [key for _, key in page])

    def sweep_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if entry.expires_at is not None and now >= entry.expires_at
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired fallback entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
