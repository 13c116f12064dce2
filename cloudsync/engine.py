"""
Synchronization engine.

Composes identity, configuration, serialization and a store client into
the sync verbs:
- save: write the object's document (last-writer-wins or optimistic)
- load: read and decode a document by key
- update: read-merge-write with a revision check, retried on conflicts
- delete: remove a document, tolerating one that is already gone

Every store call is retried on transient failures with exponential
backoff. Expected outcomes (not found, conflict, exhausted retries, schema
mismatch, permission denied) come back as a SyncResult; programmer errors
(invalid identity, missing configuration, unsupported field types) raise.

Each call moves through RESOLVING -> SERIALIZING -> STORING and ends in
SUCCESS, CONFLICT or FAILED; transitions are logged at DEBUG.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .cache import CacheKey, RevisionCache
from .config import ConfigurationResolver, SyncConfig, TypeRegistration
from .exceptions import (
    ConflictError,
    DocumentNotFoundError,
    RevisionMismatchError,
    SchemaMismatchError,
    StoreError,
)
from .identity import IdentityProvider
from .logging_utils import SyncLoggerAdapter, get_sync_logger
from .merge import MergePolicy, Overwrite
from .protocol import (
    ABSENT,
    ChangeKind,
    ChangeNotification,
    Destination,
    Document,
    ExpectedRevision,
    RemoteChange,
    StoredDocument,
    SyncOutcome,
    SyncPhase,
    SyncResult,
    failure_reason_for,
)
from .retry import retry_transient
from .serialization import DocumentAdapter
from .stores.base import StoreClient

logger = get_sync_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class _Call:
    """Bookkeeping for one verb invocation."""

    verb: str
    key: str
    destination: Destination
    log: SyncLoggerAdapter
    attempts: int = 0
    phase: SyncPhase = SyncPhase.IDLE
    cache_key: CacheKey = field(default=("", "", ""))

    def enter(self, phase: SyncPhase, **fields: Any) -> None:
        self.log.debug(
            f"{self.verb}: {self.phase.value} -> {phase.value}",
            extra={"phase": phase.value, "attempts": self.attempts, **fields},
        )
        self.phase = phase

    def count_attempt(self, _attempt: int) -> None:
        self.attempts += 1

    def result(self, outcome: SyncOutcome, **kwargs: Any) -> SyncResult:
        if outcome == SyncOutcome.CONFLICT:
            terminal = SyncPhase.CONFLICT
        elif outcome == SyncOutcome.FAILED:
            terminal = SyncPhase.FAILED
        else:
            terminal = SyncPhase.SUCCESS
        self.enter(terminal, outcome=outcome.value)
        return SyncResult(
            outcome=outcome,
            key=self.key,
            collection=self.destination.collection,
            attempts=self.attempts,
            **kwargs,
        )

    def failed(self, error: Exception) -> SyncResult:
        reason = failure_reason_for(error)
        self.log.warning(
            f"{self.verb} failed ({reason.value}): {error}",
            extra={"phase": self.phase.value, "attempts": self.attempts},
        )
        return self.result(SyncOutcome.FAILED, reason=reason, error=error)


class SyncEngine:
    """Single-object sync between application objects and a document store.

    The engine holds no per-object state except the optional revision cache,
    so one instance can serve concurrent tasks.
    """

    def __init__(
        self,
        store: StoreClient,
        resolver: ConfigurationResolver,
        config: SyncConfig | None = None,
        cache: RevisionCache | None = None,
        adapter: DocumentAdapter | None = None,
    ):
        """Initialize the sync engine.

        Args:
            store: Store client performing the remote operations
            resolver: Destination lookup for application types
            config: Retry / conflict / cache settings
            cache: Revision cache to share; created from config when omitted
                and config.cache_enabled is set
            adapter: Serialization adapter
        """
        self.store = store
        self.resolver = resolver
        self.config = config or SyncConfig()
        if cache is None and self.config.cache_enabled:
            cache = RevisionCache(self.config.cache_max_entries)
        self.cache = cache
        self.adapter = adapter or DocumentAdapter()
        self.identity = IdentityProvider(store.forbidden_key_chars)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _begin(self, verb: str, registration: TypeRegistration, key: str) -> _Call:
        destination = registration.destination
        call = _Call(
            verb=verb,
            key=key,
            destination=destination,
            log=SyncLoggerAdapter(
                logger, {"collection": destination.collection, "key": key, "verb": verb}
            ),
            cache_key=(destination.namespace or "", destination.collection, key),
        )
        call.enter(SyncPhase.RESOLVING)
        return call

    def _resolve_object(self, verb: str, obj: Any) -> _Call:
        registration = self.resolver.registration_for(type(obj))
        key = self.identity.identity_of(obj, registration.key_field)
        return self._begin(verb, registration, key)

    def _resolve_key(self, verb: str, cls: type, key: Any) -> _Call:
        registration = self.resolver.registration_for(cls)
        return self._begin(verb, registration, self.identity.validate_key(key))

    def _key_lock(self, call: _Call) -> contextlib.AbstractAsyncContextManager[Any]:
        if self.cache is None:
            return contextlib.nullcontext()
        return self.cache.lock(call.cache_key)

    def _remember(self, call: _Call, document: Document, revision: str) -> None:
        if self.cache is not None:
            self.cache.put(call.cache_key, document, revision)

    def _forget(self, call: _Call) -> None:
        if self.cache is not None:
            self.cache.invalidate(call.cache_key)

    async def _store_call(
        self,
        call: _Call,
        fn: Callable[[], Coroutine[Any, Any, R]],
        operation: str,
    ) -> R:
        return await retry_transient(
            fn,
            self.config.retry,
            operation=f"{operation} {call.destination.collection}/{call.key}",
            on_attempt=call.count_attempt,
        )

    # =========================================================================
    # Verbs
    # =========================================================================

    async def save(self, obj: Any, optimistic: bool = False) -> SyncResult:
        """Write an object's document.

        Args:
            obj: Object to save
            optimistic: Present the last known revision (or require that the
                document does not exist yet, if none is known) instead of
                overwriting unconditionally

        Returns:
            CREATED, UPDATED, UNCHANGED (cached document identical),
            CONFLICT (optimistic check failed) or FAILED

        Raises:
            InvalidIdentityError, MissingConfigurationError,
            UnsupportedFieldTypeError: Programmer errors
        """
        call = self._resolve_object("save", obj)
        call.enter(SyncPhase.SERIALIZING)
        document = self.adapter.to_document(obj)

        async with self._key_lock(call):
            cached = self.cache.get(call.cache_key) if self.cache is not None else None
            if cached is not None and cached.document == document:
                return call.result(SyncOutcome.UNCHANGED, revision=cached.revision)

            expected: ExpectedRevision = None
            if optimistic:
                expected = cached.revision if cached is not None else ABSENT

            call.enter(SyncPhase.STORING)
            try:
                written = await self._store_call(
                    call,
                    lambda: self.store.put(call.destination, call.key, document, expected),
                    "save",
                )
            except RevisionMismatchError as e:
                self._forget(call)
                call.log.info(f"save lost optimistic check: {e}")
                return call.result(SyncOutcome.CONFLICT, error=e)
            except StoreError as e:
                return call.failed(e)

            self._remember(call, document, written.revision)

        outcome = SyncOutcome.CREATED if written.created else SyncOutcome.UPDATED
        return call.result(outcome, revision=written.revision)

    async def load(self, cls: type[T], key: Any) -> SyncResult:
        """Read and decode the document stored under a key.

        Returns:
            FOUND with the object in ``value``, NOT_FOUND with ``value=None``,
            or FAILED (SCHEMA_MISMATCH when the stored data cannot be decoded)
        """
        call = self._resolve_key("load", cls, key)

        async with self._key_lock(call):
            call.enter(SyncPhase.STORING)
            try:
                stored = await self._store_call(
                    call, lambda: self.store.get(call.destination, call.key), "load"
                )
            except StoreError as e:
                return call.failed(e)

            if stored is None:
                self._forget(call)
                return call.result(SyncOutcome.NOT_FOUND)

            call.enter(SyncPhase.SERIALIZING)
            try:
                value = self.adapter.from_document(cls, stored.document)
            except SchemaMismatchError as e:
                self._forget(call)
                return call.failed(e)

            self._remember(call, stored.document, stored.revision)

        return call.result(SyncOutcome.FOUND, value=value, revision=stored.revision)

    async def get(self, cls: type[T], key: Any) -> T | None:
        """Load an object, returning None when absent and raising on failure."""
        result = await self.load(cls, key)
        result.raise_for_failure()
        return result.value

    async def update(
        self,
        obj: Any,
        merge_policy: MergePolicy | None = None,
        expected_revision: ExpectedRevision = None,
    ) -> SyncResult:
        """Merge an object into the stored document under a revision check.

        Each cycle reads the current document, merges the local document
        into it, and writes the result conditioned on the revision just
        read. A lost race repeats the cycle up to ``config.conflict_attempts``
        times.

        Args:
            obj: Local object
            merge_policy: How to combine local and remote (default Overwrite)
            expected_revision: Pin the revision the caller based its change on.
                A pinned update never re-reads: if the stored revision differs
                the result is CONFLICT.

        Returns:
            CREATED / UPDATED with the merged object in ``value``, UNCHANGED if
            the merge produced the stored document, CONFLICT, or FAILED
        """
        policy = merge_policy or Overwrite()
        cls = type(obj)
        call = self._resolve_object("update", obj)
        call.enter(SyncPhase.SERIALIZING)
        local_doc = self.adapter.to_document(obj)

        pinned = expected_revision is not None
        cycles = 1 if pinned else self.config.conflict_attempts
        last_conflict: RevisionMismatchError | None = None

        async with self._key_lock(call):
            for cycle in range(cycles):
                call.enter(SyncPhase.STORING)
                try:
                    remote: StoredDocument | None = await self._store_call(
                        call, lambda: self.store.get(call.destination, call.key), "update read"
                    )
                except StoreError as e:
                    return call.failed(e)

                if pinned and not self._matches(remote, expected_revision):
                    last_conflict = RevisionMismatchError(
                        call.key,
                        str(expected_revision),
                        remote.revision if remote is not None else None,
                    )
                    break

                call.enter(SyncPhase.SERIALIZING)
                merged = self.adapter.normalize(
                    policy.merge(local_doc, remote.document if remote is not None else None)
                )
                try:
                    merged_obj = self.adapter.from_document(cls, merged)
                except SchemaMismatchError as e:
                    return call.failed(e)

                if remote is not None and merged == remote.document:
                    self._remember(call, remote.document, remote.revision)
                    return call.result(
                        SyncOutcome.UNCHANGED, value=merged_obj, revision=remote.revision
                    )

                expected: ExpectedRevision = (
                    expected_revision if pinned
                    else (remote.revision if remote is not None else ABSENT)
                )

                call.enter(SyncPhase.STORING)
                try:
                    written = await self._store_call(
                        call,
                        lambda: self.store.put(call.destination, call.key, merged, expected),
                        "update write",
                    )
                except RevisionMismatchError as e:
                    last_conflict = e
                    call.log.info(
                        f"update cycle {cycle + 1}/{cycles} lost a concurrent write, retrying"
                    )
                    continue
                except StoreError as e:
                    return call.failed(e)

                self._remember(call, merged, written.revision)
                outcome = SyncOutcome.CREATED if written.created else SyncOutcome.UPDATED
                return call.result(outcome, value=merged_obj, revision=written.revision)

            self._forget(call)

        conflict = ConflictError(call.destination.collection, call.key, cycles)
        conflict.__cause__ = last_conflict
        call.log.warning(f"update gave up: {conflict}")
        return call.result(SyncOutcome.CONFLICT, error=conflict)

    @staticmethod
    def _matches(remote: StoredDocument | None, expected: ExpectedRevision) -> bool:
        if expected is ABSENT:
            return remote is None
        return remote is not None and remote.revision == expected

    async def delete(
        self,
        target: Any,
        key: Any = None,
        expected_revision: ExpectedRevision = None,
    ) -> SyncResult:
        """Delete a document.

        Args:
            target: The object to delete, or its type together with ``key``
            key: Document key when ``target`` is a type
            expected_revision: Only delete if the stored revision matches

        Returns:
            DELETED (also when the document was already gone), CONFLICT on a
            revision mismatch, or FAILED
        """
        if isinstance(target, type):
            call = self._resolve_key("delete", target, key)
        else:
            call = self._resolve_object("delete", target)

        async with self._key_lock(call):
            call.enter(SyncPhase.STORING)
            try:
                await self._store_call(
                    call,
                    lambda: self.store.delete(call.destination, call.key, expected_revision),
                    "delete",
                )
            except DocumentNotFoundError:
                call.log.debug("delete: document already absent")
            except RevisionMismatchError as e:
                return call.result(SyncOutcome.CONFLICT, error=e)
            except StoreError as e:
                return call.failed(e)
            finally:
                self._forget(call)

        return call.result(SyncOutcome.DELETED)

    # =========================================================================
    # Collection-wide reads
    # =========================================================================

    async def _scan(self, cls: type) -> list[tuple[str, StoredDocument]]:
        destination = self.resolver.config_for(cls)

        async def collect() -> list[tuple[str, StoredDocument]]:
            return [item async for item in self.store.scan(destination)]

        return await retry_transient(
            collect, self.config.retry, operation=f"scan {destination.collection}"
        )

    async def load_all(self, cls: type[T]) -> list[T]:
        """Load every object stored in the type's collection.

        Raises:
            SchemaMismatchError: If any stored document cannot be decoded
            StoreError: If the store fails or cannot scan
        """
        return [
            self.adapter.from_document(cls, stored.document)
            for _, stored in await self._scan(cls)
        ]

    async def load_map(self, cls: type[T]) -> dict[str, T]:
        """Load every object in the type's collection, keyed by document key."""
        return {
            key: self.adapter.from_document(cls, stored.document)
            for key, stored in await self._scan(cls)
        }

    def watch(self, cls: type[T]) -> AsyncIterator[RemoteChange]:
        """Stream decoded remote changes for a type's collection.

        The subscription starts immediately. Changes whose document cannot be
        decoded are logged and skipped.

        Raises:
            UnsupportedCapabilityError: If the store cannot watch
        """
        destination = self.resolver.config_for(cls)
        stream = self.store.watch(destination)
        return self._decode_changes(cls, destination, stream)

    async def _decode_changes(
        self,
        cls: type[T],
        destination: Destination,
        stream: AsyncIterator[ChangeNotification],
    ) -> AsyncIterator[RemoteChange]:
        try:
            async for change in stream:
                cache_key = (destination.namespace or "", destination.collection, change.key)
                if change.kind == ChangeKind.DELETED or change.document is None:
                    if self.cache is not None:
                        self.cache.invalidate(cache_key)
                    yield RemoteChange(ChangeKind.DELETED, change.key)
                    continue

                try:
                    value = self.adapter.from_document(cls, change.document)
                except SchemaMismatchError as e:
                    logger.warning(
                        f"Skipping undecodable change for {change.key}: {e}",
                        extra={"collection": destination.collection, "key": change.key},
                    )
                    continue

                if self.cache is not None and change.revision is not None:
                    self.cache.put(cache_key, change.document, change.revision)
                yield RemoteChange(change.kind, change.key, value, change.revision)
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()
