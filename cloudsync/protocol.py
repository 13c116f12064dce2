"""
Shared types for cloud sync.

Defines the document alphabet, destinations, store results, sync results,
and the structural protocols an application type may satisfy to take
part in synchronization.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Protocol, TypeAlias, Union, runtime_checkable

from .exceptions import (
    CloudSyncError,
    ConflictError,
    PermissionDeniedError,
    SchemaMismatchError,
    StoreError,
    TransientExhaustedError,
)

DocumentValue: TypeAlias = Union[
    None, bool, int, float, str, dict[str, "DocumentValue"], list["DocumentValue"]
]
Document: TypeAlias = dict[str, DocumentValue]

RevisionToken: TypeAlias = str


class _Absent:
    """Expected-revision marker meaning "the document must not exist yet"."""

    _instance: ClassVar[_Absent | None] = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()

ExpectedRevision: TypeAlias = RevisionToken | _Absent | None


# =============================================================================
# Destinations
# =============================================================================


@dataclass(frozen=True)
class CredentialsHandle:
    """Opaque credentials reference handed to a store.

    Attributes:
        name: Stable name used by stores to pool connections
        value: Store-specific credential (key string, token credential, ...).
            Never inspected outside the store that consumes it.
    """

    name: str
    value: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class Destination:
    """Where documents of one type live.

    Attributes:
        collection: Collection / container name
        credentials: Credentials handle for the store
        namespace: Optional database or project the collection belongs to
    """

    collection: str
    credentials: CredentialsHandle
    namespace: str | None = None


# =============================================================================
# Store results
# =============================================================================


@dataclass
class StoredDocument:
    """A document as read from a store, with its current revision."""

    document: Document
    revision: RevisionToken


@dataclass
class WriteResult:
    """Outcome of a successful put."""

    revision: RevisionToken
    created: bool


class ChangeKind(Enum):
    """Kind of remote change reported by a watching store."""

    UPSERTED = "upserted"
    DELETED = "deleted"


@dataclass
class ChangeNotification:
    """Raw change event emitted by Store.watch()."""

    kind: ChangeKind
    key: str
    document: Document | None = None
    revision: RevisionToken | None = None


@dataclass
class RemoteChange:
    """Decoded change event emitted by SyncEngine.watch()."""

    kind: ChangeKind
    key: str
    value: Any = None
    revision: RevisionToken | None = None


# =============================================================================
# Sync results
# =============================================================================


class SyncOutcome(Enum):
    """Discriminator for the result of a sync verb."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    FOUND = "found"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FAILED = "failed"


class FailureReason(Enum):
    """Why a verb ended in SyncOutcome.FAILED."""

    TRANSIENT_EXHAUSTED = "transient_exhausted"
    SCHEMA_MISMATCH = "schema_mismatch"
    PERMISSION_DENIED = "permission_denied"
    STORE_ERROR = "store_error"


class SyncPhase(Enum):
    """Phases a single verb call moves through."""

    IDLE = "idle"
    RESOLVING = "resolving"
    SERIALIZING = "serializing"
    STORING = "storing"
    SUCCESS = "success"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Result of a sync verb.

    Attributes:
        outcome: What happened
        key: Document key
        collection: Destination collection
        revision: Revision after the call (None when nothing is stored)
        value: Loaded or merged object, for load and update
        reason: Failure reason when outcome is FAILED
        error: Underlying exception for FAILED and CONFLICT outcomes
        attempts: Store attempts spent, including retries
    """

    outcome: SyncOutcome
    key: str
    collection: str
    revision: RevisionToken | None = None
    value: Any = None
    reason: FailureReason | None = None
    error: Exception | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        """True unless the verb ended in CONFLICT or FAILED."""
        return self.outcome not in (SyncOutcome.CONFLICT, SyncOutcome.FAILED)

    def raise_for_failure(self) -> SyncResult:
        """Raise the matching exception for CONFLICT / FAILED, else return self."""
        if self.outcome == SyncOutcome.CONFLICT:
            if isinstance(self.error, ConflictError):
                raise self.error
            raise ConflictError(self.collection, self.key, self.attempts) from self.error
        if self.outcome == SyncOutcome.FAILED:
            if isinstance(self.error, CloudSyncError):
                raise self.error
            raise StoreError(
                f"Sync failed for {self.collection}/{self.key}: "
                f"{self.reason.value if self.reason else 'unknown'}",
                {"collection": self.collection, "key": self.key},
            ) from self.error
        return self


def failure_reason_for(error: Exception) -> FailureReason:
    """Map an exception to the FailureReason reported in a SyncResult."""
    if isinstance(error, TransientExhaustedError):
        return FailureReason.TRANSIENT_EXHAUSTED
    if isinstance(error, SchemaMismatchError):
        return FailureReason.SCHEMA_MISMATCH
    if isinstance(error, PermissionDeniedError):
        return FailureReason.PERMISSION_DENIED
    return FailureReason.STORE_ERROR


# =============================================================================
# Application-facing protocols
# =============================================================================


@runtime_checkable
class HasSyncKey(Protocol):
    """A type that reports its own stable key."""

    def sync_key(self) -> Any: ...


@runtime_checkable
class DocumentConvertible(Protocol):
    """A type that converts itself to and from a document."""

    def to_document(self) -> Document: ...

    @classmethod
    def from_document(cls, document: Document) -> Any: ...


@runtime_checkable
class HasSyncConfig(Protocol):
    """A type that resolves its own destination."""

    @classmethod
    def sync_config(cls) -> Destination: ...
