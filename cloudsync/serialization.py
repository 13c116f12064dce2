"""
Object <-> document conversion.

Converts application objects to the schema-less document alphabet
(None, bool, int, float, str, nested dict, list) and back.

Supported inputs:
- Types that define ``to_document()`` / classmethod ``from_document()``
- Dataclasses, converted field by field and rebuilt from their type hints

Extended field types are stored in alphabet form and restored from hints:
- Enum members as their value
- datetime / date as ISO-8601 strings
- tuple / set / frozenset as lists
"""

from __future__ import annotations

import copy
import dataclasses
import functools
import math
import types
import typing
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any, TypeVar, Union, get_args, get_origin

from .exceptions import SchemaMismatchError, UnsupportedFieldTypeError
from .logging_utils import get_sync_logger
from .protocol import Document, DocumentConvertible

logger = get_sync_logger(__name__)

T = TypeVar("T")

_NONE_TYPE = type(None)
_SEQUENCE_ORIGINS = (list, tuple, set, frozenset)


def _join(path: str, part: str | int) -> str:
    if isinstance(part, int):
        return f"{path}[{part}]"
    return f"{path}.{part}" if path else part


@functools.lru_cache(maxsize=256)
def _type_hints(cls: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(cls)
    except (NameError, TypeError) as e:
        # Unresolvable forward references fall back to untyped fields
        logger.debug(f"Could not resolve type hints for {cls.__name__}: {e}")
        return {}


def _has_custom_codec(obj_or_type: Any) -> bool:
    return isinstance(obj_or_type, DocumentConvertible)


def _field_names(hint: Any) -> frozenset[str] | None:
    """Init field names of a dataclass type, None for anything else."""
    if not (isinstance(hint, type) and dataclasses.is_dataclass(hint)):
        return None
    return frozenset(f.name for f in dataclasses.fields(hint) if f.init)


@functools.lru_cache(maxsize=256)
def _ambiguous_union(hint: Any) -> str | None:
    """Name the first union inside ``hint`` whose dataclass variants share a field set.

    Documents carry no type tag, so such variants cannot be told apart on decode.
    """
    origin = get_origin(hint)
    args = get_args(hint)
    if origin is Union or origin is types.UnionType:
        seen: dict[frozenset[str], Any] = {}
        for arg in args:
            names = _field_names(arg)
            if names is None:
                continue
            if names in seen:
                return f"ambiguous union of {seen[names].__name__} and {arg.__name__}"
            seen[names] = arg
    for arg in args:
        try:
            found = _ambiguous_union(arg)
        except TypeError:
            # Unhashable typing arguments (Literal of lists, ...)
            continue
        if found:
            return found
    return None


class DocumentAdapter:
    """Serialization adapter between objects and documents."""

    # ------------------------------------------------------------------
    # Object -> Document
    # ------------------------------------------------------------------

    def to_document(self, obj: Any) -> Document:
        """Convert an object to a document.

        Raises:
            UnsupportedFieldTypeError: If any field is outside the alphabet
        """
        if _has_custom_codec(obj):
            return self.normalize(obj.to_document())

        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return self._encode_dataclass(obj, "")

        raise UnsupportedFieldTypeError("", type(obj).__name__)

    def normalize(self, document: Any) -> Document:
        """Validate a raw document against the alphabet, converting where possible.

        Raises:
            UnsupportedFieldTypeError: If a value cannot be represented
        """
        if not isinstance(document, Mapping):
            raise UnsupportedFieldTypeError("", type(document).__name__)
        return self._encode_mapping(document, "")

    def _encode_dataclass(self, obj: Any, path: str) -> Document:
        hints = _type_hints(type(obj))
        result: Document = {}
        for f in dataclasses.fields(obj):
            if not f.init:
                continue
            field_path = _join(path, f.name)
            try:
                ambiguous = _ambiguous_union(hints.get(f.name, Any))
            except TypeError:
                ambiguous = None
            if ambiguous:
                raise UnsupportedFieldTypeError(field_path, ambiguous)
            result[f.name] = self._encode(getattr(obj, f.name), field_path)
        return result

    def _encode_mapping(self, value: Mapping, path: str) -> Document:
        result: Document = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise UnsupportedFieldTypeError(
                    _join(path, str(key)), f"mapping key of type {type(key).__name__}"
                )
            result[key] = self._encode(item, _join(path, key))
        return result

    def _encode(self, value: Any, path: str) -> Any:
        # Enum first: IntEnum / StrEnum members are also int / str
        if isinstance(value, Enum):
            return self._encode(value.value, path)
        if value is None or isinstance(value, (bool, str)):
            return value
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if not math.isfinite(value):
                raise UnsupportedFieldTypeError(path, f"non-finite float {value!r}")
            return value
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, date):
            return value.isoformat()
        if _has_custom_codec(value) and not isinstance(value, type):
            return self._encode_mapping(value.to_document(), path)
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return self._encode_dataclass(value, path)
        if isinstance(value, Mapping):
            return self._encode_mapping(value, path)
        if isinstance(value, (list, tuple)):
            return [self._encode(item, _join(path, i)) for i, item in enumerate(value)]
        if isinstance(value, (set, frozenset)):
            items = [self._encode(item, _join(path, i)) for i, item in enumerate(value)]
            try:
                return sorted(items)
            except TypeError:
                return items
        raise UnsupportedFieldTypeError(path, type(value).__name__)

    # ------------------------------------------------------------------
    # Document -> Object
    # ------------------------------------------------------------------

    def from_document(self, cls: type[T], document: Any) -> T:
        """Rebuild an object of ``cls`` from a document.

        Raises:
            SchemaMismatchError: If the document is missing required fields
                or holds values of an incompatible type
            UnsupportedFieldTypeError: If ``cls`` is neither a dataclass nor
                defines ``from_document``
        """
        return self._decode_object(cls, document, "")

    def _decode_object(self, cls: type[T], document: Any, path: str) -> T:
        target = cls.__name__
        if not isinstance(document, dict):
            raise SchemaMismatchError(
                target, path, f"expected a document, got {type(document).__name__}"
            )

        if _has_custom_codec(cls):
            try:
                return cls.from_document(copy.deepcopy(document))  # type: ignore[attr-defined]
            except (KeyError, TypeError, ValueError) as e:
                raise SchemaMismatchError(target, path, str(e)) from e

        if not dataclasses.is_dataclass(cls):
            raise UnsupportedFieldTypeError(path, target)

        hints = _type_hints(cls)
        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            if not f.init:
                continue
            field_path = _join(path, f.name)
            if f.name not in document:
                if (
                    f.default is dataclasses.MISSING
                    and f.default_factory is dataclasses.MISSING
                ):
                    raise SchemaMismatchError(target, field_path, "missing required field")
                continue
            kwargs[f.name] = self._decode(document[f.name], hints.get(f.name, Any), field_path)

        try:
            return cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise SchemaMismatchError(target, path, str(e)) from e

    def _decode(self, value: Any, hint: Any, path: str) -> Any:
        if hint is Any or hint is object:
            return copy.deepcopy(value)

        origin = get_origin(hint)
        args = get_args(hint)

        if origin is Union or origin is types.UnionType:
            return self._decode_union(value, args, path)
        if hint is _NONE_TYPE:
            if value is not None:
                self._mismatch(hint, value, path)
            return None
        if origin is typing.Literal:
            if value not in args:
                raise SchemaMismatchError("Literal", path, f"{value!r} not in {args!r}")
            return value
        if origin is typing.Annotated:
            return self._decode(value, args[0], path)

        if origin in _SEQUENCE_ORIGINS:
            return self._decode_sequence(value, origin, args, path)
        if origin in (dict, Mapping) or hint in (dict, Mapping):
            if not isinstance(value, dict):
                self._mismatch(hint, value, path)
            value_hint = args[1] if len(args) == 2 else Any
            return {k: self._decode(v, value_hint, _join(path, k)) for k, v in value.items()}
        if hint in _SEQUENCE_ORIGINS:
            return self._decode_sequence(value, hint, (), path)

        if not isinstance(hint, type):
            # TypeVars, NewTypes and other typing constructs pass through
            return copy.deepcopy(value)

        if issubclass(hint, Enum):
            try:
                return hint(value)
            except ValueError as e:
                raise SchemaMismatchError(hint.__name__, path, str(e)) from e
        if hint is bool:
            if not isinstance(value, bool):
                self._mismatch(hint, value, path)
            return value
        if hint is int:
            if isinstance(value, bool) or not isinstance(value, int):
                self._mismatch(hint, value, path)
            return value
        if hint is float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                self._mismatch(hint, value, path)
            return float(value)
        if hint is str:
            if not isinstance(value, str):
                self._mismatch(hint, value, path)
            return value
        if hint is datetime or hint is date:
            if not isinstance(value, str):
                self._mismatch(hint, value, path)
            try:
                return hint.fromisoformat(value)
            except ValueError as e:
                raise SchemaMismatchError(hint.__name__, path, str(e)) from e
        if _has_custom_codec(hint) or dataclasses.is_dataclass(hint):
            return self._decode_object(hint, value, path)

        if isinstance(value, hint):
            return value
        raise UnsupportedFieldTypeError(path, hint.__name__)

    def _decode_union(self, value: Any, args: tuple[Any, ...], path: str) -> Any:
        if value is None and _NONE_TYPE in args:
            return None
        # Without a type tag, prefer the dataclass whose fields match the
        # document keys exactly, then one that has room for every key.
        variants = [arg for arg in args if arg is not _NONE_TYPE]
        if isinstance(value, dict):
            keys = set(value)

            def fit(arg: Any) -> int:
                names = _field_names(arg)
                if names is None:
                    return 2
                if names == keys:
                    return 0
                return 1 if keys <= names else 2

            variants.sort(key=fit)

        last_error: SchemaMismatchError | None = None
        for arg in variants:
            try:
                return self._decode(value, arg, path)
            except SchemaMismatchError as e:
                last_error = e
        names = " | ".join(getattr(a, "__name__", repr(a)) for a in args)
        raise SchemaMismatchError(
            names, path, last_error.reason if last_error else f"no variant accepts {value!r}"
        )

    def _decode_sequence(
        self, value: Any, origin: type, args: tuple[Any, ...], path: str
    ) -> Any:
        if not isinstance(value, list):
            self._mismatch(origin, value, path)

        if origin is tuple and args and not (len(args) == 2 and args[1] is Ellipsis):
            if len(args) != len(value):
                raise SchemaMismatchError(
                    "tuple", path, f"expected {len(args)} items, got {len(value)}"
                )
            return tuple(
                self._decode(item, arg, _join(path, i))
                for i, (item, arg) in enumerate(zip(value, args, strict=True))
            )

        item_hint = args[0] if args else Any
        items = [self._decode(item, item_hint, _join(path, i)) for i, item in enumerate(value)]
        if origin is list:
            return items
        return origin(items)

    @staticmethod
    def _mismatch(hint: Any, value: Any, path: str) -> typing.NoReturn:
        name = getattr(hint, "__name__", repr(hint))
        raise SchemaMismatchError(name, path, f"expected {name}, got {type(value).__name__}")


_default_adapter = DocumentAdapter()


def to_document(obj: Any) -> Document:
    """Convert an object with the default adapter."""
    return _default_adapter.to_document(obj)


def from_document(cls: type[T], document: Document) -> T:
    """Rebuild an object with the default adapter."""
    return _default_adapter.from_document(cls, document)
