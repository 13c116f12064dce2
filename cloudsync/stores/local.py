"""
Local file-based document store.

Stores each document as a JSON file:

{base_path}/
  {namespace or "default"}/
    {collection}/
      {key}.json      {"revision": "...", "document": {...}}

Writes are atomic (temp file + rename). Revision checks are serialized by an
in-process lock, so the store is safe for concurrent tasks in one process
but not for several processes sharing a directory.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import uuid
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import (
    DocumentNotFoundError,
    PermissionDeniedError,
    StoreError,
)
from ..identity import BASE_FORBIDDEN_KEY_CHARS
from ..protocol import (
    Destination,
    Document,
    ExpectedRevision,
    StoredDocument,
    WriteResult,
)
from .base import StoreCapability, StoreClient, check_expected_revision

FILE_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"


def _io_error(operation: str, path: Path, error: OSError) -> StoreError:
    if isinstance(error, PermissionError):
        return PermissionDeniedError(operation, f"{path}: {error}")
    return StoreError(
        f"Storage I/O error during {operation}: {path}",
        {"operation": operation, "path": str(path), "cause": str(error)},
    )


class LocalFileStore(StoreClient):
    """One JSON file per document under a base directory."""

    capabilities = frozenset(
        {
            StoreCapability.READ,
            StoreCapability.WRITE,
            StoreCapability.DELETE,
            StoreCapability.SCAN,
        }
    )
    forbidden_key_chars = BASE_FORBIDDEN_KEY_CHARS | frozenset({"\\"})

    def __init__(self, base_path: str | Path | None = None) -> None:
        """Initialize local storage.

        Args:
            base_path: Root directory. Defaults to ~/.cloudsync/documents
        """
        if base_path is not None:
            self.base_path = Path(base_path)
        else:
            self.base_path = Path.home() / ".cloudsync" / "documents"
        self._lock = asyncio.Lock()

    def _collection_dir(self, destination: Destination) -> Path:
        return self.base_path / (destination.namespace or "default") / destination.collection

    def _document_file(self, destination: Destination, key: str) -> Path:
        return self._collection_dir(destination) / f"{key}{FILE_SUFFIX}"

    async def _read(self, path: Path) -> StoredDocument | None:
        try:
            if not await aiofiles.os.path.exists(path):
                return None
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            raise _io_error("read", path, e) from e

        try:
            data = json.loads(content)
            return StoredDocument(document=data["document"], revision=data["revision"])
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise StoreError(
                f"Corrupt document file: {path}",
                {"operation": "parse", "path": str(path), "cause": str(e)},
            ) from e

    async def _write_atomic(self, path: Path, data: dict[str, Any]) -> None:
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
        except OSError as e:
            raise _io_error("create_directory", path.parent, e) from e

        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=TEMP_SUFFIX)
        try:
            os.close(fd)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2))
                await f.flush()
                os.fsync(f.fileno())

            await aiofiles.os.replace(temp_path, path)
        except OSError as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise _io_error("write", path, e) from e

    async def get(self, destination: Destination, key: str) -> StoredDocument | None:
        return await self._read(self._document_file(destination, key))

    async def put(
        self,
        destination: Destination,
        key: str,
        document: Document,
        expected_revision: ExpectedRevision = None,
    ) -> WriteResult:
        path = self._document_file(destination, key)
        async with self._lock:
            current = await self._read(path)
            check_expected_revision(key, current, expected_revision)

            revision = uuid.uuid4().hex
            await self._write_atomic(path, {"revision": revision, "document": document})
            return WriteResult(revision=revision, created=current is None)

    async def delete(
        self,
        destination: Destination,
        key: str,
        expected_revision: ExpectedRevision = None,
    ) -> None:
        path = self._document_file(destination, key)
        async with self._lock:
            current = await self._read(path)
            if current is None:
                raise DocumentNotFoundError(destination.collection, key)
            check_expected_revision(key, current, expected_revision)

            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError as e:
                raise DocumentNotFoundError(destination.collection, key) from e
            except OSError as e:
                raise _io_error("delete", path, e) from e

    async def scan(self, destination: Destination) -> AsyncIterator[tuple[str, StoredDocument]]:
        directory = self._collection_dir(destination)
        try:
            if not await aiofiles.os.path.isdir(directory):
                return
            names = sorted(await aiofiles.os.listdir(directory))
        except OSError as e:
            raise _io_error("list", directory, e) from e

        for name in names:
            if not name.endswith(FILE_SUFFIX):
                continue
            stored = await self._read(directory / name)
            if stored is not None:
                yield name[: -len(FILE_SUFFIX)], stored
