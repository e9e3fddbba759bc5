"""Redis storage backend.

Keys are written as ``<namespace>:<key>``. TTLs map to ``SET ... EX`` and
listing walks ``SCAN MATCH <namespace>:<prefix>*`` so it never blocks the
server the way ``KEYS`` would.
"""

import re

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from knowledge_store.core.errors import BackendError
from knowledge_store.core.logging import get_logger
from knowledge_store.core.schemas_state import StateFilter
from knowledge_store.db.backends.base import StorageBackend, apply_filter

logger = get_logger(__name__)

_GLOB_SPECIALS = re.compile(r"([*?\[\]\\])")


def escape_glob(text: str) -> str:
    """Escape Redis glob metacharacters so text matches literally."""
    return _GLOB_SPECIALS.sub(r"\\\1", text)


class RedisBackend(StorageBackend):
    """Stores values in Redis under a namespace prefix."""

    kind = "redis"

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        namespace: str = "persistent-state",
        default_ttl: int = 0,
        client: aioredis.Redis | None = None,
        scan_count: int = 500,
    ):
        super().__init__(namespace=namespace, default_ttl=default_ttl)
        self.url = url
        self.scan_count = scan_count
        self._client = client

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _strip_namespace(self, full_key: str) -> str:
        prefix = f"{self.namespace}:"
        return full_key[len(prefix):] if full_key.startswith(prefix) else full_key

    async def initialize(self) -> None:
        if self._initialized:
            return
        try:
            if self._client is None:
                self._client = aioredis.from_url(self.url, decode_responses=True)
            await self._client.ping()
        except RedisError as e:
            logger.error(f"Failed to initialize RedisBackend: {e}")
            raise BackendError(
                f"Failed to initialize Redis storage: {e}", operation="initialize"
            ) from e
        self._initialized = True
        logger.debug(f"RedisBackend initialized with namespace: {self.namespace}")

    async def get(self, key: str) -> str | None:
        self.ensure_initialized("get")
        try:
            value = await self._client.get(self._full_key(key))
        except RedisError as e:
            raise BackendError(f"Redis get failed: {e}", operation="get", key=key) from e
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self.ensure_initialized("set")
        ttl_seconds = self.effective_ttl(ttl)
        try:
            if ttl_seconds > 0:
                await self._client.set(self._full_key(key), value, ex=ttl_seconds)
            else:
                await self._client.set(self._full_key(key), value)
        except RedisError as e:
            raise BackendError(f"Redis set failed: {e}", operation="set", key=key) from e

    async def has(self, key: str) -> bool:
        self.ensure_initialized("has")
        try:
            return bool(await self._client.exists(self._full_key(key)))
        except RedisError as e:
            raise BackendError(f"Redis exists failed: {e}", operation="has", key=key) from e

    async def delete(self, key: str) -> None:
        self.ensure_initialized("delete")
        try:
            await self._client.delete(self._full_key(key))
        except RedisError as e:
            raise BackendError(f"Redis delete failed: {e}", operation="delete", key=key) from e

    async def _scan_full_keys(self, key_prefix: str = "") -> list[str]:
        pattern = f"{escape_glob(self.namespace)}:{escape_glob(key_prefix)}*"
        keys = []
        async for full_key in self._client.scan_iter(match=pattern, count=self.scan_count):
            if isinstance(full_key, bytes):
                full_key = full_key.decode("utf-8")
            keys.append(full_key)
        return keys

    async def list_keys(self, filter: StateFilter | None = None) -> list[str]:
        self.ensure_initialized("list_keys")
        key_prefix = filter.key_prefix if filter and filter.key_prefix else ""
        try:
            full_keys = await self._scan_full_keys(key_prefix)
        except RedisError as e:
            raise BackendError(f"Redis scan failed: {e}", operation="list_keys") from e
        keys = [self._strip_namespace(k) for k in full_keys]
        logger.debug(f"Listed {len(keys)} keys with prefix '{key_prefix}'")
        return apply_filter(keys, filter)

    async def clear(self) -> None:
        self.ensure_initialized("clear")
        try:
            full_keys = await self._scan_full_keys()
            if full_keys:
                await self._client.delete(*full_keys)
        except RedisError as e:
            raise BackendError(f"Redis clear failed: {e}", operation="clear") from e
        logger.debug(f"Cleared {len(full_keys)} keys from namespace '{self.namespace}'")

    async def dispose(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
        await super().dispose()
