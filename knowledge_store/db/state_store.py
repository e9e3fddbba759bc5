"""Versioned state store.

All persistence flows through this module. Each document is kept under
``state:<id>`` in the backend as a single JSON value holding the payload and
its version metadata:

    {"data": <payload>, "metadata": {"id", "version", "created_at",
     "updated_at", "updated_by", "history": [...]}}

``save`` always writes version 1 with a fresh history. ``update`` reads the
current document, deep-merges the partial payload, bumps the version by one
and rewrites the whole document. The read and the write are separate backend
calls, so two concurrent updates to the same id can interleave and the later
write wins.
"""

from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Iterator

from pydantic import ValidationError

from knowledge_store.core.config import Settings, get_settings
from knowledge_store.core.deep_merge import deep_merge
from knowledge_store.core.errors import (
    CorruptStateError,
    StateStoreError,
    StoreNotInitializedError,
)
from knowledge_store.core.logging import get_logger
from knowledge_store.core.schemas_state import (
    HistoryEntry,
    MetadataEnvelope,
    StateFilter,
    StoredDocument,
    VersionMetadata,
)
from knowledge_store.db.backends.base import StorageBackend
from knowledge_store.db.backends.factory import create_backend

logger = get_logger(__name__)

STATE_PREFIX = "state:"


def encode_document(document: StoredDocument) -> str:
    """Serialize a document to its stored JSON form."""
    return document.model_dump_json()


def decode_document(raw: str, state_id: str) -> StoredDocument:
    """
    Decode a stored value.

    Raises:
        CorruptStateError: If the value is not a valid document
    """
    try:
        return StoredDocument.model_validate_json(raw)
    except ValidationError as e:
        raise CorruptStateError(
            f"Stored value is not a valid document: {e.error_count()} validation error(s)",
            state_id=state_id,
            operation="decode",
        ) from e


class VersionedStateStore:
    """Versioned, TTL-aware document store over a pluggable backend."""

    def __init__(self, backend: StorageBackend, default_ttl: int | None = None):
        """
        Args:
            backend: Storage backend (initialized by ``initialize()``)
            default_ttl: TTL in seconds for writes that don't pass one;
                None defers to the backend default
        """
        self.backend = backend
        self.default_ttl = default_ttl
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize the backend. Safe to call more than once."""
        if self._initialized:
            return
        with self._operation("initialize"):
            await self.backend.initialize()
        self._initialized = True
        logger.debug(f"VersionedStateStore initialized on {self.backend.kind} backend")

    async def dispose(self) -> None:
        """Release backend resources."""
        await self.backend.dispose()
        self._initialized = False

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def state_key(state_id: str) -> str:
        return f"{STATE_PREFIX}{state_id}"

    @staticmethod
    def state_id_from_key(key: str) -> str:
        return key[len(STATE_PREFIX):] if key.startswith(STATE_PREFIX) else key

    def _ensure_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise StoreNotInitializedError(
                "VersionedStateStore is not initialized. Call initialize() first.",
                operation=operation,
            )

    def _ttl(self, ttl: int | None) -> int | None:
        return self.default_ttl if ttl is None else ttl

    @contextmanager
    def _operation(self, operation: str, state_id: str | None = None) -> Iterator[None]:
        """Attach the state id and store operation to any store/backend error."""
        try:
            yield
        except StateStoreError as e:
            if state_id is not None and e.state_id is None:
                e.state_id = state_id
            e.operation = operation
            logger.error(f"State store {operation} failed: {e}")
            raise

    async def _read(self, state_id: str) -> StoredDocument | None:
        raw = await self.backend.get(self.state_key(state_id))
        if raw is None:
            return None
        return decode_document(raw, state_id)

    # =========================================================================
    # Writes
    # =========================================================================

    async def save(
        self,
        state_id: str,
        data: Any,
        *,
        ttl: int | None = None,
        updated_by: str | None = None,
        description: str | None = None,
    ) -> VersionMetadata:
        """
        Write a document as version 1, replacing any prior value and history.

        Args:
            state_id: Document id
            data: Payload (any JSON-serializable value)
            ttl: Seconds until expiry (0 = never, None = store default)
            updated_by: Writer id recorded in metadata
            description: History description

        Returns:
            Metadata of the written document
        """
        self._ensure_initialized("save")
        now = datetime.now(UTC)
        metadata = VersionMetadata(
            id=state_id,
            version=1,
            created_at=now,
            updated_at=now,
            updated_by=updated_by,
            history=[
                HistoryEntry(
                    version=1,
                    timestamp=now,
                    updated_by=updated_by,
                    description=description or "Initial state creation",
                )
            ],
        )
        document = StoredDocument(data=data, metadata=metadata)

        with self._operation("save", state_id):
            await self.backend.set(
                self.state_key(state_id), encode_document(document), self._ttl(ttl)
            )

        logger.debug(f"Saved state {state_id} (version 1)")
        return metadata

    async def update(
        self,
        state_id: str,
        partial: Any,
        *,
        ttl: int | None = None,
        updated_by: str | None = None,
        description: str | None = None,
    ) -> VersionMetadata:
        """
        Deep-merge a partial payload into an existing document.

        Behaves as ``save`` when the id is absent. Nested dicts merge key by
        key; lists and scalars are replaced. Bumps the version by exactly one
        and appends one history entry.

        Returns:
            Metadata of the written document
        """
        self._ensure_initialized("update")

        with self._operation("update", state_id):
            current = await self._read(state_id)

        if current is None:
            return await self.save(
                state_id, partial, ttl=ttl, updated_by=updated_by, description=description
            )

        now = datetime.now(UTC)
        previous = current.metadata
        version = previous.version + 1
        metadata = VersionMetadata(
            id=state_id,
            version=version,
            created_at=previous.created_at,
            updated_at=now,
            updated_by=updated_by or previous.updated_by,
            history=[
                *previous.history,
                HistoryEntry(
                    version=version,
                    timestamp=now,
                    updated_by=updated_by,
                    description=description or "State update",
                ),
            ],
        )
        document = StoredDocument(data=deep_merge(current.data, partial), metadata=metadata)

        with self._operation("update", state_id):
            await self.backend.set(
                self.state_key(state_id), encode_document(document), self._ttl(ttl)
            )

        logger.debug(f"Updated state {state_id} (new version: {version})")
        return metadata

    async def delete(self, state_id: str) -> None:
        """Delete a document. Deleting an absent id is a no-op."""
        self._ensure_initialized("delete")
        with self._operation("delete", state_id):
            await self.backend.delete(self.state_key(state_id))
        logger.debug(f"Deleted state {state_id}")

    async def clear_all(self) -> int:
        """
        Delete every document this store owns.

        Only ``state:`` keys are removed; other keys sharing the backend
        namespace are left alone.

        Returns:
            Number of documents deleted
        """
        self._ensure_initialized("clear_all")
        with self._operation("clear_all"):
            keys = await self.backend.list_keys(StateFilter(key_prefix=STATE_PREFIX))
            for key in keys:
                await self.backend.delete(key)
        logger.debug(f"Cleared {len(keys)} states")
        return len(keys)

    # =========================================================================
    # Reads
    # =========================================================================

    async def load(self, state_id: str) -> Any | None:
        """
        Load a document's payload.

        Returns:
            The payload, or None if the id is absent. Empty payloads are
            returned as stored.

        Raises:
            CorruptStateError: If the stored value cannot be decoded
        """
        self._ensure_initialized("load")
        with self._operation("load", state_id):
            document = await self._read(state_id)
        return document.data if document else None

    async def load_with_metadata(self, state_id: str) -> StoredDocument | None:
        """Load payload and metadata, or None if the id is absent."""
        self._ensure_initialized("load_with_metadata")
        with self._operation("load_with_metadata", state_id):
            return await self._read(state_id)

    async def has(self, state_id: str) -> bool:
        """Check whether a document exists."""
        self._ensure_initialized("has")
        with self._operation("has", state_id):
            return await self.backend.has(self.state_key(state_id))

    async def get_metadata(self, state_id: str) -> VersionMetadata | None:
        """
        Get version metadata without materializing the payload.

        Existence is checked with the backend's ``has`` first, and only the
        metadata half of the stored value is validated.
        """
        self._ensure_initialized("get_metadata")
        key = self.state_key(state_id)
        with self._operation("get_metadata", state_id):
            if not await self.backend.has(key):
                return None
            raw = await self.backend.get(key)
            if raw is None:
                # Expired or deleted between the two calls
                return None
            try:
                return MetadataEnvelope.model_validate_json(raw).metadata
            except ValidationError as e:
                raise CorruptStateError(
                    "Stored value has no valid metadata", state_id=state_id
                ) from e

    async def get_history(self, state_id: str) -> list[HistoryEntry] | None:
        """Version history for a document, oldest first."""
        metadata = await self.get_metadata(state_id)
        return list(metadata.history) if metadata else None

    async def list_states(self, filter: StateFilter | None = None) -> list[str]:
        """
        List document ids, sorted, without the internal ``state:`` prefix.

        Args:
            filter: Optional id prefix and pagination
        """
        self._ensure_initialized("list_states")
        filter = filter or StateFilter()
        backend_filter = StateFilter(
            key_prefix=f"{STATE_PREFIX}{filter.key_prefix or ''}",
            limit=filter.limit,
            offset=filter.offset,
        )
        with self._operation("list_states"):
            keys = await self.backend.list_keys(backend_filter)
        return [self.state_id_from_key(k) for k in keys]


def create_state_store(settings: Settings | None = None) -> VersionedStateStore:
    """Build a state store on the configured backend."""
    settings = settings or get_settings()
    return VersionedStateStore(
        create_backend(settings), default_ttl=settings.STATE_DEFAULT_TTL_SECONDS
    )
