"""Identity derivation for syncable objects.

Keys come from a registered key field (or tuple of fields for composite
keys) or from the object's own ``sync_key()``. Composite parts are joined
with ``:``.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from .exceptions import InvalidIdentityError
from .protocol import HasSyncKey

COMPOSITE_SEPARATOR = ":"

# Characters no store accepts in a key.
BASE_FORBIDDEN_KEY_CHARS = frozenset({"/", "\x00"})

KeyField = str | tuple[str, ...]


class IdentityProvider:
    """Derives and validates document keys."""

    def __init__(self, forbidden_chars: Iterable[str] = ()):
        self.forbidden_chars = BASE_FORBIDDEN_KEY_CHARS | frozenset(forbidden_chars)

    def identity_of(self, obj: Any, key_field: KeyField | None = None) -> str:
        """Derive the key for an object.

        Args:
            obj: Object to identify
            key_field: Field name, or tuple of field names, registered for
                the object's type. Falls back to ``obj.sync_key()``.

        Raises:
            InvalidIdentityError: If no key can be derived or it is invalid
        """
        if key_field is not None:
            fields = (key_field,) if isinstance(key_field, str) else key_field
            try:
                raw = tuple(getattr(obj, name) for name in fields)
            except AttributeError as e:
                raise InvalidIdentityError("", f"missing key field: {e}") from e
            if len(raw) == 1:
                raw = raw[0]
        elif isinstance(obj, HasSyncKey):
            raw = obj.sync_key()
        else:
            raise InvalidIdentityError(
                "", f"{type(obj).__name__} has no key field and no sync_key()"
            )

        return self.validate_key(self._render(raw))

    def validate_key(self, key: Any) -> str:
        """Check a raw key against the key grammar and return it."""
        if not isinstance(key, str):
            raise InvalidIdentityError(repr(key), "key must be a string")
        if not key or not key.strip():
            raise InvalidIdentityError(key, "key is empty")
        bad = sorted(c for c in set(key) if c in self.forbidden_chars)
        if bad:
            raise InvalidIdentityError(key, f"key contains forbidden characters {bad!r}")
        return key

    def _render(self, raw: Any) -> str:
        if isinstance(raw, (tuple, list)):
            if not raw:
                raise InvalidIdentityError("", "composite key has no parts")
            parts = [self._render_part(part) for part in raw]
            for part in parts:
                if COMPOSITE_SEPARATOR in part:
                    raise InvalidIdentityError(
                        part, f"composite key part contains {COMPOSITE_SEPARATOR!r}"
                    )
            return COMPOSITE_SEPARATOR.join(parts)
        return self._render_part(raw)

    @staticmethod
    def _render_part(part: Any) -> str:
        if part is None:
            raise InvalidIdentityError("", "key part is None")
        if isinstance(part, bool):
            raise InvalidIdentityError(repr(part), "key part must not be a bool")
        return str(part)


def composite_key(*parts: Any) -> str:
    """Build a composite key string from parts."""
    return IdentityProvider()._render(parts)
