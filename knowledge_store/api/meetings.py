"""Meeting result API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from knowledge_store.api.deps import get_meeting_index, http_error
from knowledge_store.core.errors import StateStoreError
from knowledge_store.core.meeting_index import MeetingIndexEngine
from knowledge_store.core.schemas_meetings import (
    CommonTopicsRequest,
    IndexStats,
    MeetingResult,
    ParticipantHistory,
    RelatedMeeting,
    RelationCriteria,
    TimeRange,
    TopicFrequency,
)
from knowledge_store.core.schemas_state import VersionMetadata

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/meetings", tags=["meetings"])
participants_router = APIRouter(prefix="/participants", tags=["participants"])


# ============================================================================
# Schemas
# ============================================================================


class MeetingListResponse(BaseModel):
    """Meeting ids in a time window, oldest first."""
    meeting_ids: list[str]
    count: int


class RebuildResponse(BaseModel):
    """Outcome of an index rebuild."""
    rebuilt: bool
    stats: IndexStats


# ============================================================================
# Index management
# ============================================================================


@router.post("/indices/rebuild", response_model=RebuildResponse)
async def rebuild_indices(
    engine: MeetingIndexEngine = Depends(get_meeting_index),  # noqa: B008
) -> RebuildResponse:
    """Rebuild the in-memory indices from storage."""
    try:
        await engine.rebuild_indices()
    except StateStoreError as e:
        logger.exception(f"Index rebuild failed: {e}")
        raise http_error(e, "Index rebuild failed") from e

    return RebuildResponse(rebuilt=engine.index_enabled, stats=engine.index_stats())


@router.get("/indices/stats", response_model=IndexStats)
async def get_index_stats(
    engine: MeetingIndexEngine = Depends(get_meeting_index),  # noqa: B008
) -> IndexStats:
    """Index sizes and freshness."""
    return engine.index_stats()


@router.post("/topics/common", response_model=list[TopicFrequency])
async def get_common_topics(
    request: CommonTopicsRequest,
    engine: MeetingIndexEngine = Depends(get_meeting_index),  # noqa: B008
) -> list[TopicFrequency]:
    """Topics shared across a set of meetings, most frequent first."""
    try:
        return await engine.get_common_topics(request.meeting_ids)
    except StateStoreError as e:
        logger.exception(f"Failed to aggregate common topics: {e}")
        raise http_error(e, "Failed to aggregate common topics") from e


# ============================================================================
# Meetings
# ============================================================================


@router.post("", response_model=VersionMetadata, status_code=201)
async def store_meeting(
    meeting: MeetingResult,
    engine: MeetingIndexEngine = Depends(get_meeting_index),  # noqa: B008
) -> VersionMetadata:
    """Store (or replace) a meeting result and index it."""
    try:
        return await engine.store_meeting_result(meeting)
    except StateStoreError as e:
        logger.exception(f"Failed to store meeting {meeting.id}: {e}")
        raise http_error(e, "Failed to store meeting") from e


@router.get("", response_model=MeetingListResponse)
async def list_meetings(
    start: int | None = Query(None, description="Window start, epoch ms (inclusive)"),
    end: int | None = Query(None, description="Window end, epoch ms (inclusive)"),
    engine: MeetingIndexEngine = Depends(get_meeting_index),  # noqa: B008
) -> MeetingListResponse:
    """List meeting ids in a time window."""
    try:
        ids = await engine.list_meetings_in_range(start, end)
    except StateStoreError as e:
        logger.exception(f"Failed to list meetings: {e}")
        raise http_error(e, "Failed to list meetings") from e

    return MeetingListResponse(meeting_ids=ids, count=len(ids))


@router.get("/{meeting_id}", response_model=MeetingResult)
async def get_meeting(
    meeting_id: str,
    engine: MeetingIndexEngine = Depends(get_meeting_index),  # noqa: B008
) -> MeetingResult:
    """Get a single meeting result by ID."""
    try:
        meeting = await engine.get_meeting_result(meeting_id)
    except StateStoreError as e:
        logger.exception(f"Failed to load meeting {meeting_id}: {e}")
        raise http_error(e, "Failed to load meeting") from e

    if meeting is None:
        raise HTTPException(status_code=404, detail="Meeting not found")
    return meeting


@router.delete("/{meeting_id}", status_code=204)
async def delete_meeting(
    meeting_id: str,
    engine: MeetingIndexEngine = Depends(get_meeting_index),  # noqa: B008
) -> None:
    """Delete a meeting result from storage and the indices."""
    try:
        existed = await engine.delete_meeting_result(meeting_id)
    except StateStoreError as e:
        logger.exception(f"Failed to delete meeting {meeting_id}: {e}")
        raise http_error(e, "Failed to delete meeting") from e

    if not existed:
        raise HTTPException(status_code=404, detail="Meeting not found")


@router.get("/{meeting_id}/related", response_model=list[RelatedMeeting])
async def find_related_meetings(
    meeting_id: str,
    participants: list[str] = Query(default=[]),  # noqa: B008
    topics: list[str] = Query(default=[]),  # noqa: B008
    tags: list[str] = Query(default=[]),  # noqa: B008
    start: int | None = Query(None, description="Only meetings at or after (epoch ms)"),
    end: int | None = Query(None, description="Only meetings at or before (epoch ms)"),
    min_similarity: float | None = Query(None, ge=0.0, le=1.0),
    limit: int | None = Query(None, ge=0),
    engine: MeetingIndexEngine = Depends(get_meeting_index),  # noqa: B008
) -> list[RelatedMeeting]:
    """Meetings related to a reference meeting, most related first."""
    criteria = RelationCriteria(
        participants=participants,
        topics=topics,
        tags=tags,
        time_range=TimeRange(start=start, end=end) if start is not None or end is not None else None,
        min_similarity=min_similarity,
        limit=limit,
    )

    try:
        return await engine.find_related_meetings_scored(meeting_id, criteria)
    except StateStoreError as e:
        logger.exception(f"Failed to find meetings related to {meeting_id}: {e}")
        raise http_error(e, "Failed to find related meetings") from e


# ============================================================================
# Participants
# ============================================================================


@participants_router.get("/{participant_id}/history", response_model=ParticipantHistory)
async def get_participant_history(
    participant_id: str,
    engine: MeetingIndexEngine = Depends(get_meeting_index),  # noqa: B008
) -> ParticipantHistory:
    """A participant's meetings, topics, action items and collaborators."""
    try:
        history = await engine.get_participant_history(participant_id)
    except StateStoreError as e:
        logger.exception(f"Failed to build history for {participant_id}: {e}")
        raise http_error(e, "Failed to build participant history") from e

    if history is None:
        raise HTTPException(status_code=404, detail="Participant not found")
    return history
