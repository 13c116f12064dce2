"""
Abstract document store interface.

Defines the contract every store backend implements. The sync engine
depends on nothing else; vendor transports live behind this seam.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

from ..exceptions import RevisionMismatchError, UnsupportedCapabilityError
from ..identity import BASE_FORBIDDEN_KEY_CHARS
from ..protocol import (
    ABSENT,
    ChangeNotification,
    Destination,
    Document,
    ExpectedRevision,
    StoredDocument,
    WriteResult,
)


class StoreCapability(Enum):
    """Operations a store may support."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    SCAN = "scan"
    WATCH = "watch"


def check_expected_revision(
    key: str, current: StoredDocument | None, expected: ExpectedRevision
) -> None:
    """Raise RevisionMismatchError unless the stored state meets the expectation."""
    if expected is None:
        return
    if expected is ABSENT:
        if current is not None:
            raise RevisionMismatchError(key, "ABSENT", current.revision)
        return
    actual = current.revision if current is not None else None
    if actual != expected:
        raise RevisionMismatchError(key, str(expected), actual)


class StoreClient(ABC):
    """Abstract interface for document stores.

    Failures are reported with the cloudsync taxonomy:
    - TransientStoreError: timeouts, unavailability, throttling
    - RevisionMismatchError: expected_revision did not match
    - PermissionDeniedError: credentials rejected
    - DocumentNotFoundError: delete of a missing document
    """

    capabilities: frozenset[StoreCapability] = frozenset(
        {StoreCapability.READ, StoreCapability.WRITE, StoreCapability.DELETE}
    )

    # Characters the backend rejects in keys
    forbidden_key_chars: frozenset[str] = BASE_FORBIDDEN_KEY_CHARS

    def supports(self, capability: StoreCapability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    async def get(self, destination: Destination, key: str) -> StoredDocument | None:
        """Read a document.

        Returns:
            The document and its revision, or None if it does not exist
        """
        ...

    @abstractmethod
    async def put(
        self,
        destination: Destination,
        key: str,
        document: Document,
        expected_revision: ExpectedRevision = None,
    ) -> WriteResult:
        """Write a document atomically.

        Args:
            destination: Target collection
            key: Document key
            document: Full document body (replaces any previous one)
            expected_revision: None for an unconditional write, ABSENT to
                require that no document exists, or a revision token that
                must match the stored one

        Returns:
            New revision and whether the document was created

        Raises:
            RevisionMismatchError: If the expectation does not hold
        """
        ...

    @abstractmethod
    async def delete(
        self,
        destination: Destination,
        key: str,
        expected_revision: ExpectedRevision = None,
    ) -> None:
        """Delete a document.

        Raises:
            DocumentNotFoundError: If the document does not exist
            RevisionMismatchError: If expected_revision does not match
        """
        ...

    async def scan(self, destination: Destination) -> AsyncIterator[tuple[str, StoredDocument]]:
        """Iterate over every document in a collection."""
        raise UnsupportedCapabilityError(type(self).__name__, StoreCapability.SCAN.value)
        yield  # pragma: no cover

    def watch(self, destination: Destination) -> AsyncIterator[ChangeNotification]:
        """Stream changes made to a collection after this call returns.

        The subscription starts when watch() is called, not on first iteration.
        """
        raise UnsupportedCapabilityError(type(self).__name__, StoreCapability.WATCH.value)

    async def close(self) -> None:
        """Release connections and other resources."""
        return None

    async def __aenter__(self) -> StoreClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
