"""
cloudsync - save and load application objects to a remote document store.

Any dataclass (or type with to_document / from_document) registered with a
destination gains save / load / update / delete through a SyncEngine.

Example:
    >>> from dataclasses import dataclass
    >>> from cloudsync import ConfigurationResolver, CredentialsHandle, SyncEngine
    >>> from cloudsync.stores import MemoryStore
    >>> resolver = ConfigurationResolver()
    >>> @resolver.syncable("users", CredentialsHandle("default"), key_field="user_id")
    ... @dataclass
    ... class User:
    ...     user_id: str
    ...     name: str
    >>> engine = SyncEngine(MemoryStore(), resolver)
"""

from .cache import CacheEntry, RevisionCache
from .config import ConfigurationResolver, SyncConfig, TypeRegistration
from .engine import SyncEngine
from .exceptions import (
    CloudSyncError,
    ConfigurationError,
    ConflictError,
    DocumentNotFoundError,
    IdentityError,
    InvalidIdentityError,
    MissingConfigurationError,
    PermissionDeniedError,
    RevisionMismatchError,
    SchemaMismatchError,
    SerializationError,
    StoreError,
    TransientExhaustedError,
    TransientStoreError,
    UnsupportedCapabilityError,
    UnsupportedFieldTypeError,
)
from .identity import IdentityProvider, composite_key
from .logging_utils import (
    StructuredJsonFormatter,
    SyncLoggerAdapter,
    configure_structured_logging,
    get_sync_logger,
)
from .merge import CallerSuppliedMerge, FieldUnion, MergePolicy, Overwrite
from .protocol import (
    ABSENT,
    ChangeKind,
    ChangeNotification,
    CredentialsHandle,
    Destination,
    Document,
    DocumentConvertible,
    FailureReason,
    HasSyncConfig,
    HasSyncKey,
    RemoteChange,
    RevisionToken,
    StoredDocument,
    SyncOutcome,
    SyncPhase,
    SyncResult,
    WriteResult,
)
from .retry import RetryConfig, retry_transient
from .serialization import DocumentAdapter, from_document, to_document

__version__ = "0.1.0"

__all__ = [
    # Engine
    "SyncEngine",
    "SyncConfig",
    "RetryConfig",
    "retry_transient",
    # Configuration
    "ConfigurationResolver",
    "TypeRegistration",
    "CredentialsHandle",
    "Destination",
    # Identity
    "IdentityProvider",
    "composite_key",
    # Serialization
    "DocumentAdapter",
    "Document",
    "to_document",
    "from_document",
    # Merge policies
    "MergePolicy",
    "Overwrite",
    "FieldUnion",
    "CallerSuppliedMerge",
    # Cache
    "RevisionCache",
    "CacheEntry",
    # Results and store types
    "SyncResult",
    "SyncOutcome",
    "SyncPhase",
    "FailureReason",
    "StoredDocument",
    "WriteResult",
    "ChangeKind",
    "ChangeNotification",
    "RemoteChange",
    "RevisionToken",
    "ABSENT",
    # Protocols
    "HasSyncKey",
    "HasSyncConfig",
    "DocumentConvertible",
    # Logging
    "StructuredJsonFormatter",
    "SyncLoggerAdapter",
    "configure_structured_logging",
    "get_sync_logger",
    # Exceptions
    "CloudSyncError",
    "IdentityError",
    "InvalidIdentityError",
    "SerializationError",
    "UnsupportedFieldTypeError",
    "SchemaMismatchError",
    "StoreError",
    "TransientStoreError",
    "TransientExhaustedError",
    "RevisionMismatchError",
    "PermissionDeniedError",
    "DocumentNotFoundError",
    "UnsupportedCapabilityError",
    "ConfigurationError",
    "MissingConfigurationError",
    "ConflictError",
]
