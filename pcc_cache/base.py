"""Backend protocol shared by the Redis store and the in-memory fallback."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import NamedTuple, Protocol, runtime_checkable

from pcc_cache.exceptions import InvalidPatternError


class ScanPage(NamedTuple):
    """One page of a pattern scan. A cursor of 0 means the scan is complete."""

    cursor: int
    keys: list[str]


@runtime_checkable
class StoreBackend(Protocol):
    """Operations every backend provides over serialized string payloads."""

    name: str

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, payload: str, ttl: int | None = None) -> None:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def scan(self, cursor: int, match: str, count: int) -> ScanPage:
        ...


def validate_pattern(pattern: str) -> str:
    """Reject empty patterns and unterminated character classes."""
    if not isinstance(pattern, str) or not pattern:
        raise InvalidPatternError(str(pattern), "pattern must be a non-empty string")
    in_class = False
    escaped = False
    for char in pattern:
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "[" and not in_class:
            in_class = True
        elif char == "]" and in_class:
            in_class = False
    if in_class or escaped:
        raise InvalidPatternError(pattern, "unbalanced '[' or trailing escape")
    return pattern


def _translate_class(pattern: str, i: int) -> tuple[int, str]:
    # i points just past '['; returns the index past the closing ']'
    negate = pattern[i:i + 1] == "^"
    if negate:
        i += 1
    members = []
    while i < len(pattern) and pattern[i] != "]":
        if pattern[i] == "\\" and i + 1 < len(pattern):
            members.append(re.escape(pattern[i + 1]))
            i += 2
        elif i + 2 < len(pattern) and pattern[i + 1] == "-" and pattern[i + 2] != "]":
            low, high = sorted((pattern[i], pattern[i + 2]))
            members.append(f"{re.escape(low)}-{re.escape(high)}")
            i += 3
        else:
            members.append(re.escape(pattern[i]))
            i += 1
    if not members:
        return i + 1, "." if negate else "(?!)"
    return i + 1, f"[{'^' if negate else ''}{''.join(members)}]"


@lru_cache(maxsize=256)
def compile_glob(pattern: str) -> re.Pattern:
    """
    Compile a Redis glob into a regex that matches whole keys.

    Follows Redis rather than fnmatch: ``[^a]`` negates a class while
    ``[!a]`` matches ``!`` or ``a``, ranges may be written either way round,
    and a backslash escapes the next character inside and outside classes.
    """
    out = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
        elif char == "*":
            out.append(".*")
            i += 1
        elif char == "?":
            out.append(".")
            i += 1
        elif char == "[":
            i, part = _translate_class(pattern, i + 1)
            out.append(part)
        else:
            out.append(re.escape(char))
            i += 1
    return re.compile("".join(out), re.DOTALL)
