"""
Sync configuration.

- SyncConfig: engine tunables (retry, conflict attempts, cache), with
  environment variable overrides
- ConfigurationResolver: maps application types to their Destination and
  key field

Environment Variables:
    CLOUDSYNC_MAX_ATTEMPTS: Attempts per store call (default: 4)
    CLOUDSYNC_BACKOFF_BASE: First backoff delay in seconds (default: 0.2)
    CLOUDSYNC_BACKOFF_MAX: Largest single delay in seconds (default: 5.0)
    CLOUDSYNC_MAX_ELAPSED: Time bound per retried call in seconds (default: 30)
    CLOUDSYNC_CONFLICT_ATTEMPTS: Read-merge-write cycles per update (default: 3)
    CLOUDSYNC_CACHE_ENABLED: "true" / "false" (default: true)
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import yaml

from .exceptions import ConfigurationError, MissingConfigurationError
from .identity import KeyField
from .logging_utils import get_sync_logger
from .protocol import CredentialsHandle, Destination, HasSyncConfig
from .retry import RetryConfig

logger = get_sync_logger(__name__)

T = TypeVar("T", bound=type)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def env_bool(name: str, default: bool) -> bool:
    """Read a boolean flag: true/false, 1/0, yes/no or on/off, any case."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


@dataclass
class SyncConfig:
    """Configuration for the sync engine.

    Attributes:
        retry: Backoff policy for transient store failures
        conflict_attempts: Read-merge-write cycles before update reports CONFLICT
        cache_enabled: Whether the engine keeps a revision cache
        cache_max_entries: Size bound of that cache
    """

    retry: RetryConfig = field(default_factory=RetryConfig)
    conflict_attempts: int = 3
    cache_enabled: bool = True
    cache_max_entries: int = 1024

    def __post_init__(self) -> None:
        if self.conflict_attempts < 1:
            raise ConfigurationError(
                f"conflict_attempts must be >= 1, got {self.conflict_attempts}"
            )

    @classmethod
    def from_environment(cls) -> SyncConfig:
        """Create configuration from environment variables."""
        defaults = RetryConfig()
        try:
            retry = RetryConfig(
                max_attempts=_env_int("CLOUDSYNC_MAX_ATTEMPTS", defaults.max_attempts),
                backoff_base=_env_float("CLOUDSYNC_BACKOFF_BASE", defaults.backoff_base),
                backoff_max=_env_float("CLOUDSYNC_BACKOFF_MAX", defaults.backoff_max),
                max_elapsed=_env_float("CLOUDSYNC_MAX_ELAPSED", defaults.max_elapsed),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid retry settings: {e}") from e
        return cls(
            retry=retry,
            conflict_attempts=_env_int("CLOUDSYNC_CONFLICT_ATTEMPTS", 3),
            cache_enabled=env_bool("CLOUDSYNC_CACHE_ENABLED", True),
        )


@dataclass(frozen=True)
class TypeRegistration:
    """Everything the engine needs to know about one syncable type."""

    destination: Destination
    key_field: KeyField | None = None


class ConfigurationResolver:
    """Resolves the Destination for each syncable type.

    Registration is explicit (``register`` / ``syncable``) or, failing that,
    through a ``sync_config()`` classmethod on the type. Once a type has been
    resolved its destination is fixed for the life of the resolver.
    """

    def __init__(self) -> None:
        self._registrations: dict[type, TypeRegistration] = {}
        self._resolved: set[type] = set()

    def register(
        self,
        cls: type,
        collection: str,
        credentials: CredentialsHandle,
        namespace: str | None = None,
        key_field: KeyField | None = None,
    ) -> TypeRegistration:
        """Register a type's destination.

        Raises:
            ConfigurationError: If the collection is empty, or the type was
                already resolved to a different destination
        """
        if not collection:
            raise ConfigurationError(f"Empty collection name for {cls.__name__}")

        registration = TypeRegistration(
            destination=Destination(collection, credentials, namespace),
            key_field=key_field,
        )
        existing = self._registrations.get(cls)
        if existing is not None and cls in self._resolved and existing != registration:
            raise ConfigurationError(
                f"{cls.__name__} is already bound to collection "
                f"{existing.destination.collection!r}",
                {"type": cls.__name__},
            )

        self._registrations[cls] = registration
        logger.debug(f"Registered {cls.__name__} -> {collection}")
        return registration

    def syncable(
        self,
        collection: str,
        credentials: CredentialsHandle,
        namespace: str | None = None,
        key_field: KeyField | None = None,
    ) -> Callable[[T], T]:
        """Class decorator form of ``register``."""

        def decorator(cls: T) -> T:
            self.register(cls, collection, credentials, namespace, key_field)
            return cls

        return decorator

    def registration_for(self, cls: type) -> TypeRegistration:
        """Resolve the full registration of a type.

        Raises:
            MissingConfigurationError: If the type has no destination
        """
        registration = self._registrations.get(cls)
        if registration is None:
            if not isinstance(cls, HasSyncConfig):
                raise MissingConfigurationError(cls.__name__)
            destination = cls.sync_config()
            if not isinstance(destination, Destination):
                raise ConfigurationError(
                    f"{cls.__name__}.sync_config() must return a Destination, "
                    f"got {type(destination).__name__}"
                )
            registration = TypeRegistration(destination=destination)
            self._registrations[cls] = registration

        self._resolved.add(cls)
        return registration

    def config_for(self, cls: type) -> Destination:
        """Resolve the Destination of a type."""
        return self.registration_for(cls).destination

    def key_field_for(self, cls: type) -> KeyField | None:
        return self.registration_for(cls).key_field

    def is_registered(self, cls: type) -> bool:
        return cls in self._registrations or isinstance(cls, HasSyncConfig)

    @classmethod
    def from_yaml(
        cls,
        path: str | Path,
        types: Mapping[str, type],
        credentials: Mapping[str, CredentialsHandle],
    ) -> ConfigurationResolver:
        """Build a resolver from a YAML registration file.

        Format:

        ```yaml
        types:
          User:
            collection: users
            credentials: primary
            namespace: app-db   # optional
            key: user_id        # optional, list for composite keys
        ```

        Credentials are looked up by name in ``credentials``; the file never
        contains secrets.

        Raises:
            ConfigurationError: If the file is malformed or names an unknown
                type or credentials handle
        """
        config_path = Path(path)
        try:
            content = yaml.safe_load(config_path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read sync config {config_path}: {e}") from e

        entries: Any = content.get("types", {}) if isinstance(content, dict) else None
        if not isinstance(entries, dict):
            raise ConfigurationError(f"{config_path}: 'types' must be a mapping")

        resolver = cls()
        for type_name, entry in entries.items():
            if type_name not in types:
                raise ConfigurationError(f"{config_path}: unknown type {type_name!r}")
            if not isinstance(entry, dict) or "collection" not in entry:
                raise ConfigurationError(f"{config_path}: {type_name} needs a collection")

            handle_name = entry.get("credentials", "default")
            if handle_name not in credentials:
                raise ConfigurationError(
                    f"{config_path}: unknown credentials {handle_name!r} for {type_name}"
                )

            key = entry.get("key")
            if isinstance(key, list):
                key = tuple(key)

            resolver.register(
                types[type_name],
                collection=entry["collection"],
                credentials=credentials[handle_name],
                namespace=entry.get("namespace"),
                key_field=key,
            )

        return resolver
