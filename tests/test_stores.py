"""
Contract tests run against every local store backend.

MemoryStore and LocalFileStore must behave identically for the core
operations; watch() is only offered by MemoryStore.
"""

import asyncio
import gc
import json

import pytest

from cloudsync import (
    ABSENT,
    ChangeKind,
    CredentialsHandle,
    Destination,
    DocumentNotFoundError,
    PermissionDeniedError,
    RevisionMismatchError,
    StoreError,
    UnsupportedCapabilityError,
)
from cloudsync.stores import LocalFileStore, MemoryStore, StoreCapability

USERS = Destination("users", CredentialsHandle("test"))
OTHER_NS = Destination("users", CredentialsHandle("test"), namespace="other")


@pytest.fixture(params=["memory", "local"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return LocalFileStore(tmp_path / "documents")


class TestStoreContract:
    """Behaviour shared by all stores."""

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get(USERS, "nobody") is None

    @pytest.mark.asyncio
    async def test_put_then_get(self, store):
        written = await store.put(USERS, "u1", {"name": "Ada", "tags": ["x"]})
        stored = await store.get(USERS, "u1")

        assert written.created is True
        assert stored.document == {"name": "Ada", "tags": ["x"]}
        assert stored.revision == written.revision

    @pytest.mark.asyncio
    async def test_overwrite_changes_revision(self, store):
        first = await store.put(USERS, "u1", {"v": 1})
        second = await store.put(USERS, "u1", {"v": 2})

        assert second.created is False
        assert second.revision != first.revision
        assert (await store.get(USERS, "u1")).document == {"v": 2}

    @pytest.mark.asyncio
    async def test_absent_expectation(self, store):
        """ABSENT creates once and then conflicts."""
        await store.put(USERS, "u1", {"v": 1}, expected_revision=ABSENT)

        with pytest.raises(RevisionMismatchError):
            await store.put(USERS, "u1", {"v": 2}, expected_revision=ABSENT)
        assert (await store.get(USERS, "u1")).document == {"v": 1}

    @pytest.mark.asyncio
    async def test_revision_expectation(self, store):
        """A stale revision is rejected, the current one accepted."""
        first = await store.put(USERS, "u1", {"v": 1})
        await store.put(USERS, "u1", {"v": 2})

        with pytest.raises(RevisionMismatchError):
            await store.put(USERS, "u1", {"v": 3}, expected_revision=first.revision)

        current = await store.get(USERS, "u1")
        await store.put(USERS, "u1", {"v": 3}, expected_revision=current.revision)
        assert (await store.get(USERS, "u1")).document == {"v": 3}

    @pytest.mark.asyncio
    async def test_revision_expected_on_missing_document(self, store):
        with pytest.raises(RevisionMismatchError):
            await store.put(USERS, "u1", {"v": 1}, expected_revision="stale")

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.put(USERS, "u1", {"v": 1})

        await store.delete(USERS, "u1")

        assert await store.get(USERS, "u1") is None

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        with pytest.raises(DocumentNotFoundError):
            await store.delete(USERS, "u1")

    @pytest.mark.asyncio
    async def test_conditional_delete(self, store):
        written = await store.put(USERS, "u1", {"v": 1})
        await store.put(USERS, "u1", {"v": 2})

        with pytest.raises(RevisionMismatchError):
            await store.delete(USERS, "u1", expected_revision=written.revision)
        assert await store.get(USERS, "u1") is not None

    @pytest.mark.asyncio
    async def test_namespaces_isolated(self, store):
        await store.put(USERS, "u1", {"v": 1})

        assert await store.get(OTHER_NS, "u1") is None

    @pytest.mark.asyncio
    async def test_scan(self, store):
        await store.put(USERS, "b", {"v": 2})
        await store.put(USERS, "a", {"v": 1})
        await store.put(OTHER_NS, "c", {"v": 3})

        items = [(key, stored.document) async for key, stored in store.scan(USERS)]

        assert items == [("a", {"v": 1}), ("b", {"v": 2})]

    @pytest.mark.asyncio
    async def test_scan_empty(self, store):
        assert [item async for item in store.scan(USERS)] == []

    @pytest.mark.asyncio
    async def test_stored_document_is_detached(self, store):
        document = {"tags": ["a"]}
        await store.put(USERS, "u1", document)
        document["tags"].append("b")

        stored = await store.get(USERS, "u1")
        stored.document["tags"].append("c")

        assert (await store.get(USERS, "u1")).document == {"tags": ["a"]}

    @pytest.mark.asyncio
    async def test_concurrent_absent_creates(self, store):
        """Exactly one of several ABSENT creates wins."""
        results = await asyncio.gather(
            *(store.put(USERS, "u1", {"writer": i}, expected_revision=ABSENT) for i in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, RevisionMismatchError)]
        assert len(winners) == 1
        assert len(losers) == 4

    @pytest.mark.asyncio
    async def test_context_manager(self, store):
        async with store as s:
            await s.put(USERS, "u1", {"v": 1})


class TestMemoryStore:
    """MemoryStore specifics."""

    def test_capabilities(self):
        store = MemoryStore()

        assert all(store.supports(c) for c in StoreCapability)

    @pytest.mark.asyncio
    async def test_watch(self):
        """Subscribers see writes and deletes made after watch()."""
        store = MemoryStore()
        await store.put(USERS, "before", {"v": 0})
        changes = store.watch(USERS)

        await store.put(USERS, "u1", {"v": 1})
        await store.put(OTHER_NS, "elsewhere", {"v": 9})
        await store.delete(USERS, "u1")

        first = await asyncio.wait_for(anext(changes), timeout=1)
        second = await asyncio.wait_for(anext(changes), timeout=1)
        await changes.aclose()

        assert (first.kind, first.key, first.document) == (ChangeKind.UPSERTED, "u1", {"v": 1})
        assert (second.kind, second.key) == (ChangeKind.DELETED, "u1")

    @pytest.mark.asyncio
    async def test_watch_closed_without_iterating(self):
        """Closing a stream that was never read unregisters it."""
        store = MemoryStore()
        changes = store.watch(USERS)
        assert store.subscriber_count(USERS) == 1

        await changes.aclose()
        await store.put(USERS, "u1", {"v": 1})

        assert store.subscriber_count(USERS) == 0
        with pytest.raises(StopAsyncIteration):
            await anext(changes)

    @pytest.mark.asyncio
    async def test_watch_dropped_without_iterating(self):
        """A stream that is discarded unread stops receiving changes."""
        store = MemoryStore()
        changes = store.watch(USERS)
        del changes
        gc.collect()

        await store.put(USERS, "u1", {"v": 1})

        assert store.subscriber_count(USERS) == 0

    @pytest.mark.asyncio
    async def test_watch_cancelled_read(self):
        store = MemoryStore()
        changes = store.watch(USERS)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(anext(changes), timeout=0.01)

        assert store.subscriber_count(USERS) == 0

    @pytest.mark.asyncio
    async def test_document_count(self):
        store = MemoryStore()
        await store.put(USERS, "a", {})
        await store.put(USERS, "b", {})

        assert store.document_count(USERS) == 2
        assert store.document_count(OTHER_NS) == 0


class TestLocalFileStore:
    """LocalFileStore specifics."""

    def test_no_watch(self, tmp_path):
        store = LocalFileStore(tmp_path)

        assert not store.supports(StoreCapability.WATCH)
        with pytest.raises(UnsupportedCapabilityError):
            store.watch(USERS)

    def test_backslash_forbidden(self, tmp_path):
        assert "\\" in LocalFileStore(tmp_path).forbidden_key_chars

    @pytest.mark.asyncio
    async def test_file_layout(self, tmp_path):
        """Documents live at {base}/{namespace}/{collection}/{key}.json."""
        store = LocalFileStore(tmp_path)
        written = await store.put(USERS, "u1", {"name": "Ada"})
        await store.put(OTHER_NS, "u2", {"name": "Bob"})

        path = tmp_path / "default" / "users" / "u1.json"
        data = json.loads(path.read_text())

        assert data == {"revision": written.revision, "document": {"name": "Ada"}}
        assert (tmp_path / "other" / "users" / "u2.json").exists()

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path):
        store = LocalFileStore(tmp_path)
        await store.put(USERS, "u1", {"v": 1})
        await store.put(USERS, "u1", {"v": 2})

        names = [p.name for p in (tmp_path / "default" / "users").iterdir()]

        assert names == ["u1.json"]

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        store = LocalFileStore(tmp_path)
        directory = tmp_path / "default" / "users"
        directory.mkdir(parents=True)
        (directory / "u1.json").write_text("{not json")

        with pytest.raises(StoreError, match="Corrupt"):
            await store.get(USERS, "u1")

    @pytest.mark.asyncio
    async def test_scan_skips_foreign_files(self, tmp_path):
        store = LocalFileStore(tmp_path)
        await store.put(USERS, "u1", {"v": 1})
        directory = tmp_path / "default" / "users"
        (directory / "notes.txt").write_text("ignore me")
        (directory / ".tmp_abc.tmp").write_text("{}")

        keys = [key async for key, _ in store.scan(USERS)]

        assert keys == ["u1"]

    @pytest.mark.asyncio
    async def test_dot_tmp_keys_listed(self, tmp_path):
        """Keys that look like temp file prefixes are ordinary documents."""
        store = LocalFileStore(tmp_path)
        await store.put(USERS, ".tmp_report", {"v": 1})
        await store.put(USERS, "u1", {"v": 2})

        keys = [key async for key, _ in store.scan(USERS)]

        assert keys == [".tmp_report", "u1"]

    @pytest.mark.asyncio
    async def test_permission_denied(self, tmp_path, monkeypatch):
        """OS permission errors map to PermissionDeniedError."""
        store = LocalFileStore(tmp_path)

        async def denied(*args, **kwargs):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr("cloudsync.stores.local.aiofiles.os.makedirs", denied)

        with pytest.raises(PermissionDeniedError):
            await store.put(USERS, "u1", {"v": 1})
