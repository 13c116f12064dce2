"""
Custom exceptions for cloud sync.

Errors are grouped by what the caller has to do about them:
- IdentityError, SerializationError, ConfigurationError: fix the code
- TransientStoreError / TransientExhaustedError: retry later
- ConflictError / RevisionMismatchError: reconcile data
"""


class CloudSyncError(Exception):
    """Base exception for all cloud sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Identity
# =============================================================================


class IdentityError(CloudSyncError):
    """Base exception for identity derivation errors."""


class InvalidIdentityError(IdentityError):
    """Raised when a derived key is empty or violates the store's key grammar."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Invalid identity {key!r}: {reason}", {"key": key, "reason": reason})
        self.key = key
        self.reason = reason


# =============================================================================
# Serialization
# =============================================================================


class SerializationError(CloudSyncError):
    """Base exception for object <-> document conversion errors."""


class UnsupportedFieldTypeError(SerializationError):
    """Raised when a field value cannot be represented in a document."""

    def __init__(self, path: str, type_name: str):
        super().__init__(
            f"Unsupported field type at {path or '<root>'}: {type_name}",
            {"path": path, "type": type_name},
        )
        self.path = path
        self.type_name = type_name


class SchemaMismatchError(SerializationError):
    """Raised when a stored document cannot be turned back into the target type."""

    def __init__(self, target: str, path: str, reason: str):
        super().__init__(
            f"Document does not match {target} at {path or '<root>'}: {reason}",
            {"target": target, "path": path, "reason": reason},
        )
        self.target = target
        self.path = path
        self.reason = reason


# =============================================================================
# Store
# =============================================================================


class StoreError(CloudSyncError):
    """Base exception for store access errors."""


class TransientStoreError(StoreError):
    """Raised for failures expected to resolve on retry.

    Timeouts, service unavailability and rate limiting all map here.
    """

    def __init__(
        self,
        operation: str,
        cause: Exception | None = None,
        retry_after: float | None = None,
        status_code: int | None = None,
    ):
        details: dict = {"operation": operation}
        if cause:
            details["cause"] = str(cause)
        if retry_after is not None:
            details["retry_after"] = retry_after
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(f"Transient store failure during {operation}", details)
        self.operation = operation
        self.cause = cause
        self.retry_after = retry_after
        self.status_code = status_code


class RevisionMismatchError(StoreError):
    """Raised when an expected revision does not match the stored one."""

    def __init__(self, key: str, expected: str | None = None, actual: str | None = None):
        details = {"key": key}
        if expected is not None:
            details["expected"] = expected
        if actual is not None:
            details["actual"] = actual
        super().__init__(f"Revision mismatch for {key}", details)
        self.key = key
        self.expected = expected
        self.actual = actual


class PermissionDeniedError(StoreError):
    """Raised when the store rejects the credentials for an operation."""

    def __init__(self, operation: str, reason: str | None = None):
        details = {"operation": operation}
        if reason:
            details["reason"] = reason
        super().__init__(f"Permission denied during {operation}", details)
        self.operation = operation
        self.reason = reason


class DocumentNotFoundError(StoreError):
    """Raised by stores when a document does not exist."""

    def __init__(self, collection: str, key: str):
        super().__init__(
            f"Document not found: {collection}/{key}",
            {"collection": collection, "key": key},
        )
        self.collection = collection
        self.key = key


class UnsupportedCapabilityError(StoreError):
    """Raised when a store does not implement an optional capability."""

    def __init__(self, store: str, capability: str):
        super().__init__(
            f"{store} does not support {capability}",
            {"store": store, "capability": capability},
        )
        self.store = store
        self.capability = capability


class TransientExhaustedError(StoreError):
    """Raised when transient failures persist past the retry bound."""

    def __init__(self, operation: str, attempts: int, last_error: Exception | None = None):
        details: dict = {"operation": operation, "attempts": attempts}
        if last_error:
            details["last_error"] = str(last_error)
        super().__init__(
            f"Gave up on {operation} after {attempts} attempts",
            details,
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(CloudSyncError):
    """Raised when sync configuration is invalid."""


class MissingConfigurationError(ConfigurationError):
    """Raised when a type requests sync without a registered destination."""

    def __init__(self, type_name: str):
        super().__init__(
            f"No sync destination registered for {type_name}",
            {"type": type_name},
        )
        self.type_name = type_name


# =============================================================================
# Conflicts
# =============================================================================


class ConflictError(CloudSyncError):
    """Raised when an optimistic write keeps losing to concurrent writers."""

    def __init__(self, collection: str, key: str, attempts: int):
        super().__init__(
            f"Sync conflict on {collection}/{key} after {attempts} attempts",
            {"collection": collection, "key": key, "attempts": attempts},
        )
        self.collection = collection
        self.key = key
        self.attempts = attempts
