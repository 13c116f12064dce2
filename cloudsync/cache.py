"""
LRU cache of last-known documents and revisions.

Lets the engine skip writes of unchanged documents and supply an expected
revision for optimistic saves. Writers take the per-key lock so that
revision updates for one key are never interleaved.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
from collections import OrderedDict
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .protocol import Document, RevisionToken

CacheKey = tuple[str, str, str]


@dataclass
class CacheEntry:
    """Last document written or read for a key, with its revision."""

    document: Document
    revision: RevisionToken


@dataclass
class _KeyLock:
    lock: asyncio.Lock
    users: int = 0


class RevisionCache:
    """
    LRU cache keyed by (namespace, collection, key).

    Features:
    - Least Recently Used eviction policy
    - Configurable max entries
    - Stores deep copies so callers cannot mutate cached documents
    - Per-key asyncio locks for single-writer updates, dropped once no task
      holds or waits for them
    """

    def __init__(self, max_entries: int = 1024):
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")

        self.max_entries = max_entries
        self._cache: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._locks: dict[CacheKey, _KeyLock] = {}
        self._hits = 0
        self._misses = 0

    @contextlib.asynccontextmanager
    async def lock(self, key: CacheKey) -> AsyncIterator[None]:
        """Hold the writer lock for a key.

        The lock is independent of the cached entry: evicting or invalidating
        the entry never releases a writer or its waiters.
        """
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock(asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def get(self, key: CacheKey) -> CacheEntry | None:
        """Get a copy of the cached entry, if any."""
        entry = self._cache.get(key)
        if entry is None:
            self._misses += 1
            return None

        self._hits += 1
        self._cache.move_to_end(key)
        return CacheEntry(copy.deepcopy(entry.document), entry.revision)

    def put(self, key: CacheKey, document: Document, revision: RevisionToken) -> None:
        """Record the document and revision last seen for a key."""
        if key in self._cache:
            del self._cache[key]

        self._cache[key] = CacheEntry(copy.deepcopy(document), revision)

        if len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)

    def invalidate(self, key: CacheKey) -> None:
        """Forget a key."""
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()

    def size(self) -> int:
        return len(self._cache)

    def stats(self) -> dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with cache metrics
        """
        return {
            "size": len(self._cache),
            "max_entries": self.max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "locks": len(self._locks),
            "utilization": len(self._cache) / self.max_entries,
        }
