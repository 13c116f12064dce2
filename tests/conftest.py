"""
Shared test configuration and fixtures.

Provides a resolver with the test model types registered, engines over an
in-memory store, and store wrappers that inject failures.
"""

import asyncio
import logging

import pytest

from cloudsync import (
    ConfigurationResolver,
    CredentialsHandle,
    RetryConfig,
    SyncConfig,
    SyncEngine,
    TransientStoreError,
)
from cloudsync.stores import MemoryStore, StoreClient
from sync_models import Membership, Note, Profile, User

logger = logging.getLogger(__name__)

CREDENTIALS = CredentialsHandle("test", "not-a-secret")


def fast_retry(max_attempts: int = 4) -> RetryConfig:
    """Retry policy without real sleeps."""
    return RetryConfig(max_attempts=max_attempts, backoff_base=0.0, jitter=0.0, max_elapsed=5.0)


class FlakyStore(StoreClient):
    """
    Store wrapper that fails the first ``failures`` calls transiently.

    Set ``failures`` to a large number for a store that never recovers.
    """

    def __init__(self, inner: StoreClient, failures: int = 0):
        self.inner = inner
        self.failures = failures
        self.calls = 0
        self.capabilities = inner.capabilities

    def _maybe_fail(self, operation: str) -> None:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientStoreError(operation, status_code=503)

    async def get(self, destination, key):
        self._maybe_fail("get")
        return await self.inner.get(destination, key)

    async def put(self, destination, key, document, expected_revision=None):
        self._maybe_fail("put")
        return await self.inner.put(destination, key, document, expected_revision)

    async def delete(self, destination, key, expected_revision=None):
        self._maybe_fail("delete")
        return await self.inner.delete(destination, key, expected_revision)

    async def scan(self, destination):
        self._maybe_fail("scan")
        async for item in self.inner.scan(destination):
            yield item


class PausingStore(StoreClient):
    """
    Store wrapper that parks every get until ``release`` is set.

    Lets two engines read the same revision before either of them writes.
    """

    def __init__(self, inner: StoreClient, readers: int = 2):
        self.inner = inner
        self.readers = readers
        self._arrived = 0
        self.all_read = asyncio.Event()
        self.release = asyncio.Event()

    async def get(self, destination, key):
        stored = await self.inner.get(destination, key)
        self._arrived += 1
        if self._arrived >= self.readers:
            self.all_read.set()
        if self._arrived <= self.readers:
            await self.release.wait()
        return stored

    async def put(self, destination, key, document, expected_revision=None):
        return await self.inner.put(destination, key, document, expected_revision)

    async def delete(self, destination, key, expected_revision=None):
        return await self.inner.delete(destination, key, expected_revision)


@pytest.fixture
def credentials():
    return CREDENTIALS


@pytest.fixture
def resolver():
    """Resolver with every test model registered."""
    resolver = ConfigurationResolver()
    resolver.register(User, "users", CREDENTIALS, key_field="user_id")
    resolver.register(Profile, "profiles", CREDENTIALS, namespace="app", key_field="handle")
    resolver.register(Membership, "memberships", CREDENTIALS, key_field=("org_id", "user_id"))
    resolver.register(Note, "notes", CREDENTIALS)
    return resolver


@pytest.fixture
def sync_config():
    return SyncConfig(retry=fast_retry())


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def engine(memory_store, resolver, sync_config):
    """Engine over a fresh in-memory store, revision cache enabled."""
    return SyncEngine(memory_store, resolver, sync_config)


@pytest.fixture
def uncached_engine(memory_store, resolver):
    return SyncEngine(
        memory_store, resolver, SyncConfig(retry=fast_retry(), cache_enabled=False)
    )
