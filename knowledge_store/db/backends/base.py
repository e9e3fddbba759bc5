"""Base storage backend interface.

Defines the key/value/TTL contract every storage technology implements.
Backends own no business logic: values are opaque strings, keys are plain
strings scoped to the backend's namespace.
"""

from abc import ABC, abstractmethod

from knowledge_store.core.errors import StoreNotInitializedError
from knowledge_store.core.schemas_state import StateFilter


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    TTLs are in seconds; ``0`` means the key never expires and ``None`` means
    "use the backend default".
    """

    kind: str = "base"

    def __init__(self, namespace: str = "persistent-state", default_ttl: int = 0):
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (connect, create directories). Idempotent."""
        pass

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value, or None if absent or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """Store a value, replacing any previous one."""
        pass

    @abstractmethod
    async def has(self, key: str) -> bool:
        """Check whether a non-expired value exists for the key."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Deleting an absent key is not an error."""
        pass

    @abstractmethod
    async def list_keys(self, filter: StateFilter | None = None) -> list[str]:
        """List non-expired keys in this namespace, sorted."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key in this namespace."""
        pass

    async def dispose(self) -> None:
        """Release connections or handles."""
        self._initialized = False

    def effective_ttl(self, ttl: int | None) -> int:
        """Resolve a per-call TTL against the backend default."""
        return self.default_ttl if ttl is None else ttl

    def ensure_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise StoreNotInitializedError(
                f"{type(self).__name__} is not initialized. Call initialize() first.",
                operation=operation,
            )


def apply_filter(keys: list[str], filter: StateFilter | None) -> list[str]:
    """Apply prefix and pagination to an unsorted key list."""
    keys = sorted(keys)
    if filter is None:
        return keys

    if filter.key_prefix:
        keys = [k for k in keys if k.startswith(filter.key_prefix)]

    end = None if filter.limit is None else filter.offset + filter.limit
    return keys[filter.offset:end]
