"""Backend selection from configuration."""

from knowledge_store.core.config import Settings, get_settings
from knowledge_store.db.backends.base import StorageBackend
from knowledge_store.db.backends.file_backend import FileBackend
from knowledge_store.db.backends.memory_backend import MemoryBackend
from knowledge_store.db.backends.redis_backend import RedisBackend


def create_backend(settings: Settings | None = None) -> StorageBackend:
    """
    Build the storage backend named by STATE_BACKEND.

    Args:
        settings: Settings to use (defaults to cached application settings)

    Returns:
        An uninitialized backend instance

    Raises:
        ValueError: If STATE_BACKEND names an unknown backend
    """
    settings = settings or get_settings()
    namespace = settings.STATE_NAMESPACE
    ttl = settings.STATE_DEFAULT_TTL_SECONDS

    if settings.STATE_BACKEND == "memory":
        return MemoryBackend(namespace=namespace, default_ttl=ttl)
    if settings.STATE_BACKEND == "file":
        return FileBackend(settings.STATE_FILE_DIR, namespace=namespace, default_ttl=ttl)
    if settings.STATE_BACKEND == "redis":
        return RedisBackend(settings.REDIS_URL, namespace=namespace, default_ttl=ttl)

    raise ValueError(f"Unknown storage backend: {settings.STATE_BACKEND}")
