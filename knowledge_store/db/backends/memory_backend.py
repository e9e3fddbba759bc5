"""In-process storage backend.

Values live in a dict for the lifetime of the backend instance. Expired
entries are evicted lazily whenever they are touched or listed.
"""

import time
from typing import Callable

from knowledge_store.core.logging import get_logger
from knowledge_store.core.schemas_state import StateFilter
from knowledge_store.db.backends.base import StorageBackend, apply_filter

logger = get_logger(__name__)


class MemoryBackend(StorageBackend):
    """Dict-backed storage with TTL support."""

    kind = "memory"

    def __init__(
        self,
        namespace: str = "persistent-state",
        default_ttl: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(namespace=namespace, default_ttl=default_ttl)
        self._clock = clock
        # key -> (value, expires_at or None)
        self._entries: dict[str, tuple[str, float | None]] = {}

    async def initialize(self) -> None:
        self._initialized = True
        logger.debug(f"MemoryBackend initialized with namespace: {self.namespace}")

    def _is_expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def _live_entry(self, key: str) -> tuple[str, float | None] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry[1]):
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> str | None:
        self.ensure_initialized("get")
        entry = self._live_entry(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self.ensure_initialized("set")
        ttl_seconds = self.effective_ttl(ttl)
        expires_at = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        self._entries[key] = (value, expires_at)

    async def has(self, key: str) -> bool:
        self.ensure_initialized("has")
        return self._live_entry(key) is not None

    async def delete(self, key: str) -> None:
        self.ensure_initialized("delete")
        self._entries.pop(key, None)

    async def list_keys(self, filter: StateFilter | None = None) -> list[str]:
        self.ensure_initialized("list_keys")
        expired = [k for k, (_, exp) in self._entries.items() if self._is_expired(exp)]
        for key in expired:
            del self._entries[key]
        return apply_filter(list(self._entries), filter)

    async def clear(self) -> None:
        self.ensure_initialized("clear")
        count = len(self._entries)
        self._entries.clear()
        logger.debug(f"Cleared {count} keys from namespace '{self.namespace}'")
