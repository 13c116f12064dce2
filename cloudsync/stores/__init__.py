"""
Document store backends.

All backends implement StoreClient:
- MemoryStore: process-local, supports every capability including watch
- LocalFileStore: one JSON file per document, for offline use
- CosmosStore: Azure Cosmos DB, revision tokens are item etags

Example:
    >>> from cloudsync.stores import CosmosStore, CosmosStoreConfig
    >>> store = CosmosStore(
    ...     CosmosStoreConfig(endpoint="https://example.documents.azure.com:443/")
    ... )
"""

from .base import StoreCapability, StoreClient, check_expected_revision
from .cosmos import CosmosStore, CosmosStoreConfig
from .local import LocalFileStore
from .memory import MemoryStore

__all__ = [
    "StoreCapability",
    "StoreClient",
    "check_expected_revision",
    "MemoryStore",
    "LocalFileStore",
    "CosmosStore",
    "CosmosStoreConfig",
]
