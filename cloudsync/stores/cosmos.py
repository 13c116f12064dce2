"""
Azure Cosmos DB document store.

Each destination collection is a Cosmos container partitioned on /id, and
each synced object is one item:

{
    "id": "{key}",
    "document": {...},      // the serialized object
    "_etag": "...",         // Cosmos-managed, used as the revision token
    ...                     // other Cosmos system properties
}

Wrapping the document keeps application fields named "id" or starting
with "_" from colliding with Cosmos properties.

Optimistic concurrency uses the item's _etag with
MatchConditions.IfNotModified; ABSENT maps to create_item.

Authentication, per CredentialsHandle:
- value is a str: account key
- value is a token credential: used as-is
- value is None: azure.identity DefaultAzureCredential
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from azure.core import MatchConditions
from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient
from azure.cosmos.exceptions import CosmosHttpResponseError

from ..config import env_bool
from ..exceptions import (
    ConfigurationError,
    DocumentNotFoundError,
    PermissionDeniedError,
    RevisionMismatchError,
    StoreError,
    TransientStoreError,
)
from ..identity import BASE_FORBIDDEN_KEY_CHARS
from ..logging_utils import get_sync_logger
from ..protocol import (
    ABSENT,
    CredentialsHandle,
    Destination,
    Document,
    ExpectedRevision,
    StoredDocument,
    WriteResult,
)
from .base import StoreCapability, StoreClient, check_expected_revision

logger = get_sync_logger(__name__)

DOCUMENT_FIELD = "document"
PARTITION_KEY_PATH = "/id"

# Status codes Cosmos documents as safe to retry
TRANSIENT_STATUS_CODES = frozenset({408, 429, 449, 500, 502, 503, 504})


@dataclass
class CosmosStoreConfig:
    """Configuration for the Cosmos DB store.

    Attributes:
        endpoint: Cosmos DB account endpoint URL
        database: Database used when a destination has no namespace
        create_containers: Create missing databases / containers on first use
    """

    endpoint: str
    database: str = "cloudsync"
    create_containers: bool = True

    @classmethod
    def from_environment(cls) -> CosmosStoreConfig:
        """Create config from environment variables.

        Expected environment variables:
        - CLOUDSYNC_COSMOS_ENDPOINT: Cosmos DB account endpoint (required)
        - CLOUDSYNC_COSMOS_DATABASE: Default database (default: cloudsync)
        - CLOUDSYNC_COSMOS_CREATE_CONTAINERS: set false to disable
          container auto-creation (true/false, 1/0, yes/no, on/off)

        Raises:
            ConfigurationError: If the endpoint is not set or a flag is malformed
        """
        endpoint = os.environ.get("CLOUDSYNC_COSMOS_ENDPOINT")
        if not endpoint:
            raise ConfigurationError("CLOUDSYNC_COSMOS_ENDPOINT environment variable not set")
        return cls(
            endpoint=endpoint,
            database=os.environ.get("CLOUDSYNC_COSMOS_DATABASE", "cloudsync"),
            create_containers=env_bool("CLOUDSYNC_COSMOS_CREATE_CONTAINERS", True),
        )


def _retry_after_seconds(error: CosmosHttpResponseError) -> float | None:
    """Extract the server-suggested backoff from a throttled response."""
    headers = getattr(error, "headers", None)
    if headers is None:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
    if not headers:
        return None

    raw_ms = headers.get("x-ms-retry-after-ms")
    if raw_ms is not None:
        try:
            return float(raw_ms) / 1000.0
        except (TypeError, ValueError):
            return None
    raw = headers.get("Retry-After") or headers.get("retry-after")
    if raw is not None:
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None
    return None


def translate_error(error: Exception, operation: str, collection: str, key: str) -> Exception:
    """Map a Cosmos SDK / transport exception to the cloudsync taxonomy."""
    if isinstance(error, CosmosHttpResponseError):
        status = error.status_code
        if status in (401, 403):
            return PermissionDeniedError(operation, str(error.message or error))
        if status == 404:
            return DocumentNotFoundError(collection, key)
        if status in (409, 412):
            return RevisionMismatchError(key)
        if status in TRANSIENT_STATUS_CODES:
            return TransientStoreError(
                operation,
                cause=error,
                retry_after=_retry_after_seconds(error),
                status_code=status,
            )
        return StoreError(
            f"Cosmos DB error during {operation}: {status}",
            {"operation": operation, "status_code": status, "cause": str(error)},
        )
    if isinstance(error, (ServiceRequestError, ServiceResponseError, asyncio.TimeoutError)):
        return TransientStoreError(operation, cause=error)
    return StoreError(
        f"Cosmos DB error during {operation}",
        {"operation": operation, "cause": str(error)},
    )


class CosmosStore(StoreClient):
    """Store client backed by Azure Cosmos DB.

    One CosmosClient is opened per credentials handle name; containers are
    resolved lazily and cached per (database, collection).
    """

    capabilities = frozenset(
        {
            StoreCapability.READ,
            StoreCapability.WRITE,
            StoreCapability.DELETE,
            StoreCapability.SCAN,
        }
    )
    forbidden_key_chars = BASE_FORBIDDEN_KEY_CHARS | frozenset({"\\", "?", "#"})

    def __init__(self, config: CosmosStoreConfig):
        if not config.endpoint:
            raise ConfigurationError("Cosmos endpoint is required")

        self.config = config
        self._clients: dict[str, CosmosClient] = {}
        self._credentials: dict[str, Any] = {}
        self._containers: dict[tuple[str, str, str], ContainerProxy] = {}
        self._init_lock = asyncio.Lock()

    def _credential_for(self, handle: CredentialsHandle) -> Any:
        if handle.value is not None:
            return handle.value

        try:
            from azure.identity.aio import DefaultAzureCredential
        except ImportError as e:
            raise ConfigurationError(
                "azure-identity package required for Azure AD authentication. "
                "Install with: pip install azure-identity"
            ) from e
        return DefaultAzureCredential()

    def _client_for(self, handle: CredentialsHandle) -> CosmosClient:
        client = self._clients.get(handle.name)
        if client is None:
            credential = self._credential_for(handle)
            if handle.value is None:
                self._credentials[handle.name] = credential
            client = CosmosClient(self.config.endpoint, credential=credential)
            self._clients[handle.name] = client
        return client

    async def _container(self, destination: Destination) -> ContainerProxy:
        database_name = destination.namespace or self.config.database
        cache_key = (destination.credentials.name, database_name, destination.collection)
        container = self._containers.get(cache_key)
        if container is not None:
            return container

        async with self._init_lock:
            container = self._containers.get(cache_key)
            if container is not None:
                return container

            client = self._client_for(destination.credentials)
            try:
                if self.config.create_containers:
                    database = await client.create_database_if_not_exists(id=database_name)
                    container = await database.create_container_if_not_exists(
                        id=destination.collection,
                        partition_key=PartitionKey(path=PARTITION_KEY_PATH),
                    )
                else:
                    container = client.get_database_client(database_name).get_container_client(
                        destination.collection
                    )
            except Exception as e:
                raise translate_error(e, "open_container", destination.collection, "") from e

            self._containers[cache_key] = container
            logger.info(
                f"Connected to Cosmos DB: {self.config.endpoint} "
                f"(database={database_name}, container={destination.collection})"
            )
            return container

    @staticmethod
    def _item(key: str, document: Document) -> dict[str, Any]:
        return {"id": key, DOCUMENT_FIELD: document}

    @staticmethod
    def _stored(item: dict[str, Any]) -> StoredDocument:
        document = item.get(DOCUMENT_FIELD)
        if not isinstance(document, dict):
            raise StoreError(
                f"Cosmos item {item.get('id')!r} has no document body",
                {"key": item.get("id")},
            )
        return StoredDocument(document=document, revision=item["_etag"])

    async def get(self, destination: Destination, key: str) -> StoredDocument | None:
        container = await self._container(destination)
        try:
            item = await container.read_item(item=key, partition_key=key)
        except Exception as e:
            error = translate_error(e, "read", destination.collection, key)
            if isinstance(error, DocumentNotFoundError):
                return None
            raise error from e
        return self._stored(item)

    async def put(
        self,
        destination: Destination,
        key: str,
        document: Document,
        expected_revision: ExpectedRevision = None,
    ) -> WriteResult:
        container = await self._container(destination)
        body = self._item(key, document)

        try:
            if expected_revision is ABSENT:
                item = await container.create_item(body=body)
                return WriteResult(revision=item["_etag"], created=True)

            if expected_revision is not None:
                item = await container.replace_item(
                    item=key,
                    body=body,
                    etag=expected_revision,
                    match_condition=MatchConditions.IfNotModified,
                )
                return WriteResult(revision=item["_etag"], created=False)
        except Exception as e:
            error = translate_error(e, "write", destination.collection, key)
            if isinstance(error, DocumentNotFoundError):
                # The expected revision refers to a document that is gone
                raise RevisionMismatchError(key, str(expected_revision)) from e
            raise error from e

        # Unconditional write: create first so the caller learns whether the
        # document is new, fall back to replace when it already exists.
        try:
            item = await container.create_item(body=body)
            return WriteResult(revision=item["_etag"], created=True)
        except Exception as e:
            error = translate_error(e, "write", destination.collection, key)
            if not isinstance(error, RevisionMismatchError):
                raise error from e

        try:
            item = await container.upsert_item(body=body)
        except Exception as e:
            raise translate_error(e, "write", destination.collection, key) from e
        return WriteResult(revision=item["_etag"], created=False)

    async def delete(
        self,
        destination: Destination,
        key: str,
        expected_revision: ExpectedRevision = None,
    ) -> None:
        if expected_revision is ABSENT:
            # ABSENT never matches a stored document, so this always raises
            current = await self.get(destination, key)
            if current is None:
                raise DocumentNotFoundError(destination.collection, key)
            check_expected_revision(key, current, ABSENT)

        container = await self._container(destination)
        kwargs: dict[str, Any] = {}
        if expected_revision is not None:
            kwargs["etag"] = expected_revision
            kwargs["match_condition"] = MatchConditions.IfNotModified

        try:
            await container.delete_item(item=key, partition_key=key, **kwargs)
        except Exception as e:
            raise translate_error(e, "delete", destination.collection, key) from e

    async def scan(self, destination: Destination) -> AsyncIterator[tuple[str, StoredDocument]]:
        container = await self._container(destination)
        try:
            async for item in container.read_all_items():
                yield item["id"], self._stored(item)
        except StoreError:
            raise
        except Exception as e:
            raise translate_error(e, "scan", destination.collection, "") from e

    async def close(self) -> None:
        """Close every Cosmos client and the credentials this store created."""
        for client in self._clients.values():
            await client.close()
        self._clients = {}
        self._containers = {}

        for credential in self._credentials.values():
            if hasattr(credential, "close"):
                await credential.close()
        self._credentials = {}
