"""Raw versioned state API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from knowledge_store.api.deps import get_state_store, http_error
from knowledge_store.core.errors import StateStoreError
from knowledge_store.core.schemas_state import (
    HistoryEntry,
    SaveStateRequest,
    StateFilter,
    StateListResponse,
    StoredDocument,
    VersionMetadata,
)
from knowledge_store.db.state_store import VersionedStateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/state", tags=["state"])


@router.get("", response_model=StateListResponse)
async def list_states(
    prefix: str | None = Query(None, description="Only ids starting with this prefix"),
    limit: int | None = Query(None, ge=0),
    offset: int = Query(0, ge=0),
    store: VersionedStateStore = Depends(get_state_store),  # noqa: B008
) -> StateListResponse:
    """List state ids, sorted."""
    try:
        ids = await store.list_states(StateFilter(key_prefix=prefix, limit=limit, offset=offset))
    except StateStoreError as e:
        logger.exception(f"Failed to list states: {e}")
        raise http_error(e, "Failed to list states") from e

    return StateListResponse(ids=ids, count=len(ids))


@router.get("/{state_id}", response_model=StoredDocument)
async def get_state(
    state_id: str,
    store: VersionedStateStore = Depends(get_state_store),  # noqa: B008
) -> StoredDocument:
    """Get a document's payload and version metadata."""
    try:
        document = await store.load_with_metadata(state_id)
    except StateStoreError as e:
        logger.exception(f"Failed to load state {state_id}: {e}")
        raise http_error(e, "Failed to load state") from e

    if document is None:
        raise HTTPException(status_code=404, detail="State not found")
    return document


@router.put("/{state_id}", response_model=VersionMetadata)
async def save_state(
    state_id: str,
    request: SaveStateRequest,
    store: VersionedStateStore = Depends(get_state_store),  # noqa: B008
) -> VersionMetadata:
    """Replace a document, resetting it to version 1."""
    try:
        return await store.save(
            state_id,
            request.data,
            ttl=request.ttl,
            updated_by=request.updated_by,
            description=request.description,
        )
    except StateStoreError as e:
        logger.exception(f"Failed to save state {state_id}: {e}")
        raise http_error(e, "Failed to save state") from e


@router.patch("/{state_id}", response_model=VersionMetadata)
async def update_state(
    state_id: str,
    request: SaveStateRequest,
    store: VersionedStateStore = Depends(get_state_store),  # noqa: B008
) -> VersionMetadata:
    """Deep-merge a partial payload into a document (creates it if absent)."""
    try:
        return await store.update(
            state_id,
            request.data,
            ttl=request.ttl,
            updated_by=request.updated_by,
            description=request.description,
        )
    except StateStoreError as e:
        logger.exception(f"Failed to update state {state_id}: {e}")
        raise http_error(e, "Failed to update state") from e


@router.delete("/{state_id}", status_code=204)
async def delete_state(
    state_id: str,
    store: VersionedStateStore = Depends(get_state_store),  # noqa: B008
) -> None:
    """Delete a document. Deleting an absent id succeeds."""
    try:
        await store.delete(state_id)
    except StateStoreError as e:
        logger.exception(f"Failed to delete state {state_id}: {e}")
        raise http_error(e, "Failed to delete state") from e


@router.get("/{state_id}/metadata", response_model=VersionMetadata)
async def get_state_metadata(
    state_id: str,
    store: VersionedStateStore = Depends(get_state_store),  # noqa: B008
) -> VersionMetadata:
    """Get version metadata without the payload."""
    try:
        metadata = await store.get_metadata(state_id)
    except StateStoreError as e:
        logger.exception(f"Failed to load metadata for {state_id}: {e}")
        raise http_error(e, "Failed to load state metadata") from e

    if metadata is None:
        raise HTTPException(status_code=404, detail="State not found")
    return metadata


@router.get("/{state_id}/history", response_model=list[HistoryEntry])
async def get_state_history(
    state_id: str,
    store: VersionedStateStore = Depends(get_state_store),  # noqa: B008
) -> list[HistoryEntry]:
    """Version history, oldest first."""
    try:
        history = await store.get_history(state_id)
    except StateStoreError as e:
        logger.exception(f"Failed to load history for {state_id}: {e}")
        raise http_error(e, "Failed to load state history") from e

    if history is None:
        raise HTTPException(status_code=404, detail="State not found")
    return history
