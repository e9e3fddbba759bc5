"""Shared API dependencies and error mapping."""

from fastapi import HTTPException, Request

from knowledge_store.core.errors import (
    BackendError,
    CorruptStateError,
    IndexRebuildError,
    StateStoreError,
    StoreNotInitializedError,
)
from knowledge_store.core.meeting_index import MeetingIndexEngine
from knowledge_store.db.state_store import VersionedStateStore


def get_meeting_index(request: Request) -> MeetingIndexEngine:
    """The engine built by the application lifespan."""
    engine = getattr(request.app.state, "meeting_index", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Meeting index is not initialized")
    return engine


def get_state_store(request: Request) -> VersionedStateStore:
    return get_meeting_index(request).store


def http_error(e: StateStoreError, detail: str) -> HTTPException:
    """
    Map a store error to an HTTP error.

    Corrupt records are server errors; unavailable storage and failed
    rebuilds are retryable (503).
    """
    if isinstance(e, CorruptStateError):
        return HTTPException(status_code=500, detail=f"{detail}: stored record is corrupt")
    if isinstance(e, (BackendError, IndexRebuildError, StoreNotInitializedError)):
        return HTTPException(status_code=503, detail=f"{detail}: storage unavailable")
    return HTTPException(status_code=500, detail=detail)
