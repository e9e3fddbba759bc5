"""Pydantic schemas for versioned state documents."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# =======================
# Persisted envelope
# =======================


class HistoryEntry(BaseModel):
    """One entry in a document's change history."""

    version: int = Field(..., ge=1, description="Version this entry produced")
    timestamp: datetime = Field(..., description="When the change was written")
    updated_by: str | None = Field(None, description="Who made the change")
    description: str | None = Field(None, description="What the change was")


class VersionMetadata(BaseModel):
    """Version tracking for a stored document."""

    id: str = Field(..., description="State id (without namespace prefix)")
    version: int = Field(..., ge=1, description="Current version, starts at 1")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
    updated_by: str | None = Field(None, description="Last writer")
    history: list[HistoryEntry] = Field(default_factory=list, description="Append-only history")


class StoredDocument(BaseModel):
    """Payload plus version metadata, serialized as one JSON value per key."""

    data: Any = Field(..., description="Opaque payload")
    metadata: VersionMetadata


class MetadataEnvelope(BaseModel):
    """Decodes only the metadata half of a stored document."""

    model_config = ConfigDict(extra="ignore")

    metadata: VersionMetadata


# =======================
# Listing
# =======================


class StateFilter(BaseModel):
    """Filter for key / state listing."""

    key_prefix: str | None = Field(None, description="Only keys starting with this prefix")
    limit: int | None = Field(None, ge=0, description="Max keys to return")
    offset: int = Field(default=0, ge=0, description="Keys to skip before returning")


# =======================
# API request/response models
# =======================


class SaveStateRequest(BaseModel):
    """Request body for a full state save or a partial update."""

    data: Any = Field(..., description="Payload (full for save, partial for update)")
    ttl: int | None = Field(None, ge=0, description="TTL override in seconds")
    updated_by: str | None = Field(None, description="Writer id")
    description: str | None = Field(None, description="Change description")


class StateListResponse(BaseModel):
    """Response body for state listing."""

    ids: list[str]
    count: int
