"""
In-memory document store.

Process-local implementation of the store contract, used for tests and
for applications that want sync semantics without a remote backend.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator

from ..exceptions import DocumentNotFoundError
from ..protocol import (
    ChangeKind,
    ChangeNotification,
    Destination,
    Document,
    ExpectedRevision,
    StoredDocument,
    WriteResult,
)
from .base import StoreCapability, StoreClient, check_expected_revision

CollectionKey = tuple[str | None, str]


class MemoryStore(StoreClient):
    """Dictionary-backed store with monotonically increasing revisions."""

    capabilities = frozenset(StoreCapability)

    def __init__(self) -> None:
        self._collections: dict[CollectionKey, dict[str, StoredDocument]] = {}
        self._subscribers: dict[CollectionKey, list[asyncio.Queue[ChangeNotification]]] = {}
        self._lock = asyncio.Lock()
        self._counter = 0

    @staticmethod
    def _collection_key(destination: Destination) -> CollectionKey:
        return (destination.namespace, destination.collection)

    def _collection(self, destination: Destination) -> dict[str, StoredDocument]:
        return self._collections.setdefault(self._collection_key(destination), {})

    def _next_revision(self) -> str:
        self._counter += 1
        return str(self._counter)

    def _notify(self, destination: Destination, change: ChangeNotification) -> None:
        for queue in self._subscribers.get(self._collection_key(destination), []):
            queue.put_nowait(copy.deepcopy(change))

    async def get(self, destination: Destination, key: str) -> StoredDocument | None:
        async with self._lock:
            stored = self._collection(destination).get(key)
            if stored is None:
                return None
            return StoredDocument(copy.deepcopy(stored.document), stored.revision)

    async def put(
        self,
        destination: Destination,
        key: str,
        document: Document,
        expected_revision: ExpectedRevision = None,
    ) -> WriteResult:
        async with self._lock:
            collection = self._collection(destination)
            current = collection.get(key)
            check_expected_revision(key, current, expected_revision)

            revision = self._next_revision()
            collection[key] = StoredDocument(copy.deepcopy(document), revision)
            self._notify(
                destination,
                ChangeNotification(ChangeKind.UPSERTED, key, document, revision),
            )
            return WriteResult(revision=revision, created=current is None)

    async def delete(
        self,
        destination: Destination,
        key: str,
        expected_revision: ExpectedRevision = None,
    ) -> None:
        async with self._lock:
            collection = self._collection(destination)
            current = collection.get(key)
            if current is None:
                raise DocumentNotFoundError(destination.collection, key)
            check_expected_revision(key, current, expected_revision)

            del collection[key]
            self._notify(destination, ChangeNotification(ChangeKind.DELETED, key))

    async def scan(self, destination: Destination) -> AsyncIterator[tuple[str, StoredDocument]]:
        async with self._lock:
            snapshot = [
                (key, StoredDocument(copy.deepcopy(s.document), s.revision))
                for key, s in sorted(self._collection(destination).items())
            ]
        for item in snapshot:
            yield item

    def watch(self, destination: Destination) -> AsyncIterator[ChangeNotification]:
        subscribers = self._subscribers.setdefault(self._collection_key(destination), [])
        return _Subscription(subscribers)

    def subscriber_count(self, destination: Destination) -> int:
        """Number of open watch subscriptions on a collection."""
        return len(self._subscribers.get(self._collection_key(destination), []))

    def document_count(self, destination: Destination) -> int:
        """Number of documents currently stored in a collection."""
        return len(self._collections.get(self._collection_key(destination), {}))


class _Subscription:
    """
    Change stream for one watch() call.

    Registered on creation so no change is missed before the first
    iteration. Unregistered by aclose(), by cancelling a pending read, or
    when the stream is garbage collected, iterated or not.
    """

    def __init__(self, subscribers: list[asyncio.Queue[ChangeNotification]]):
        self._subscribers = subscribers
        self._queue: asyncio.Queue[ChangeNotification] = asyncio.Queue()
        self._closed = False
        subscribers.append(self._queue)

    def __aiter__(self) -> _Subscription:
        return self

    async def __anext__(self) -> ChangeNotification:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._queue.get()
        except asyncio.CancelledError:
            self._unregister()
            raise

    async def aclose(self) -> None:
        self._unregister()

    def _unregister(self) -> None:
        if not self._closed:
            self._closed = True
            self._subscribers.remove(self._queue)

    def __del__(self) -> None:
        self._unregister()
