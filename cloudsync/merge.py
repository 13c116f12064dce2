"""
Merge policies for update().

A policy combines the local object's document with the document currently
stored remotely and returns the document to write:

- Overwrite: the local document replaces the remote one
- FieldUnion: union of both, local values winning on overlap, applied
  recursively to nested documents
- CallerSuppliedMerge: an application function decides
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from .protocol import Document

MergeFunction = Callable[[Document, "Document | None"], Document]


class MergePolicy(ABC):
    """Combines a local document with the current remote document."""

    @abstractmethod
    def merge(self, local: Document, remote: Document | None) -> Document:
        """Return the document to write.

        Args:
            local: Document serialized from the local object
            remote: Document currently stored, or None if there is none
        """
        ...


class Overwrite(MergePolicy):
    """Local document wins entirely."""

    def merge(self, local: Document, remote: Document | None) -> Document:
        return copy.deepcopy(local)

    def __repr__(self) -> str:
        return "Overwrite()"


@dataclass
class FieldUnion(MergePolicy):
    """Keep remote fields the local document lacks.

    Attributes:
        deep: Merge nested documents field by field instead of replacing them
    """

    deep: bool = True

    def merge(self, local: Document, remote: Document | None) -> Document:
        if remote is None:
            return copy.deepcopy(local)
        return self._union(local, remote)

    def _union(self, local: Document, remote: Document) -> Document:
        merged: Document = copy.deepcopy(remote)
        for key, local_val in local.items():
            remote_val = merged.get(key)
            if self.deep and isinstance(local_val, dict) and isinstance(remote_val, dict):
                merged[key] = self._union(local_val, remote_val)
            else:
                merged[key] = copy.deepcopy(local_val)
        return merged


@dataclass
class CallerSuppliedMerge(MergePolicy):
    """Delegate the merge to an application function.

    The function receives copies, so it may mutate its arguments.
    """

    fn: MergeFunction

    def merge(self, local: Document, remote: Document | None) -> Document:
        merged = self.fn(copy.deepcopy(local), copy.deepcopy(remote))
        if not isinstance(merged, dict):
            raise TypeError(
                f"merge function must return a document, got {type(merged).__name__}"
            )
        return merged
