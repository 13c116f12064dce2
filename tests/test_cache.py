"""Tests for the revision cache."""

import asyncio

import pytest

from cloudsync import RevisionCache


class TestRevisionCache:
    """Tests for LRU revision cache."""

    def test_basic_get_put(self):
        cache = RevisionCache(max_entries=10)
        cache.put(("", "users", "u1"), {"name": "Ada"}, "r1")

        entry = cache.get(("", "users", "u1"))

        assert entry.document == {"name": "Ada"}
        assert entry.revision == "r1"

    def test_cache_miss(self):
        cache = RevisionCache(max_entries=10)

        assert cache.get(("", "users", "missing")) is None

    def test_namespaces_separate(self):
        """Same key in different namespaces is cached separately."""
        cache = RevisionCache(max_entries=10)
        cache.put(("a", "users", "u1"), {"v": 1}, "r1")
        cache.put(("b", "users", "u1"), {"v": 2}, "r2")

        assert cache.get(("a", "users", "u1")).revision == "r1"
        assert cache.get(("b", "users", "u1")).revision == "r2"

    def test_lru_eviction(self):
        """Least recently used entries are evicted when full."""
        cache = RevisionCache(max_entries=2)
        cache.put(("", "c", "a"), {}, "1")
        cache.put(("", "c", "b"), {}, "2")

        # Touch "a" so "b" becomes the oldest
        cache.get(("", "c", "a"))
        cache.put(("", "c", "c"), {}, "3")

        assert cache.size() == 2
        assert cache.get(("", "c", "b")) is None
        assert cache.get(("", "c", "a")) is not None

    def test_entries_are_copies(self):
        """Neither the stored nor the returned document can be mutated from outside."""
        cache = RevisionCache()
        document = {"tags": ["a"]}
        cache.put(("", "c", "k"), document, "1")
        document["tags"].append("b")

        entry = cache.get(("", "c", "k"))
        entry.document["tags"].append("c")

        assert cache.get(("", "c", "k")).document == {"tags": ["a"]}

    def test_invalidate_and_clear(self):
        cache = RevisionCache()
        cache.put(("", "c", "a"), {}, "1")
        cache.put(("", "c", "b"), {}, "2")

        cache.invalidate(("", "c", "a"))
        assert cache.get(("", "c", "a")) is None

        cache.clear()
        assert cache.size() == 0

    @pytest.mark.asyncio
    async def test_lock_serializes_writers(self):
        """Writers on one key never overlap, even while the entry is evicted."""
        cache = RevisionCache(max_entries=1)
        key = ("", "c", "a")
        active = 0
        peak = 0

        async def writer(n):
            nonlocal active, peak
            async with cache.lock(key):
                active += 1
                peak = max(peak, active)
                cache.put(key, {"n": n}, str(n))
                # Evicts "a" while other writers wait on its lock
                cache.put(("", "c", f"other-{n}"), {}, "x")
                await asyncio.sleep(0)
                active -= 1

        await asyncio.gather(*(writer(n) for n in range(5)))

        assert peak == 1

    @pytest.mark.asyncio
    async def test_lock_released_when_unused(self):
        """Locks are dropped once no task holds or waits for them."""
        cache = RevisionCache()

        for n in range(20):
            async with cache.lock(("", "c", f"k{n}")):
                assert cache.stats()["locks"] == 1

        assert cache.stats()["locks"] == 0

    @pytest.mark.asyncio
    async def test_lock_survives_invalidate_and_clear(self):
        """Dropping cache entries does not release a held lock."""
        cache = RevisionCache()
        key = ("", "c", "a")
        order = []

        async def first():
            async with cache.lock(key):
                cache.invalidate(key)
                cache.clear()
                await asyncio.sleep(0)
                order.append("first")

        async def second():
            async with cache.lock(key):
                order.append("second")

        await asyncio.gather(first(), second())

        assert order == ["first", "second"]
        assert cache.stats()["locks"] == 0

    def test_stats(self):
        cache = RevisionCache(max_entries=4)
        cache.put(("", "c", "a"), {}, "1")
        cache.get(("", "c", "a"))
        cache.get(("", "c", "b"))

        stats = cache.stats()

        assert stats["size"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["locks"] == 0
        assert stats["utilization"] == 0.25

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            RevisionCache(max_entries=0)
