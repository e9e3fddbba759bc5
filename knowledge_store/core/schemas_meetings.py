"""Pydantic schemas for meeting results and cross-meeting queries."""

from typing import Any

from pydantic import BaseModel, Field

# =======================
# Meeting result
# =======================


class MeetingParticipant(BaseModel):
    """A participant in an analyzed meeting."""

    id: str = Field(..., description="Stable participant id")
    name: str = Field(default="", description="Display name")
    role: str | None = Field(None, description="Role in the meeting")
    speaking_time: float | None = Field(None, ge=0, description="Seconds spoken")
    contributions: int | None = Field(None, ge=0, description="Number of contributions")


class MeetingTopic(BaseModel):
    """A topic discussed in a meeting."""

    id: str
    name: str
    relevance: float = Field(..., ge=0.0, le=1.0, description="Relevance 0..1")
    keywords: list[str] = Field(default_factory=list)


class ActionItem(BaseModel):
    """An action item produced by a meeting."""

    id: str
    description: str
    assignees: list[str] = Field(default_factory=list, description="Participant ids")
    due_date: str | None = None
    status: str | None = None


class Decision(BaseModel):
    """A decision recorded in a meeting."""

    id: str
    description: str
    stakeholders: list[str] = Field(default_factory=list)


class MeetingSummary(BaseModel):
    """Short and detailed meeting summaries."""

    short: str
    detailed: str | None = None


class MeetingResult(BaseModel):
    """One analyzed meeting: the only entity the meeting index understands."""

    id: str = Field(..., min_length=1, description="Meeting id")
    title: str | None = None
    timestamp: int = Field(..., description="Meeting start, epoch milliseconds")
    duration: float | None = Field(None, ge=0, description="Duration in seconds")
    participants: list[MeetingParticipant] = Field(default_factory=list)
    topics: list[MeetingTopic] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    decisions: list[Decision] = Field(default_factory=list)
    summary: MeetingSummary | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


# =======================
# Query inputs
# =======================


class TimeRange(BaseModel):
    """Inclusive epoch-millisecond window; either bound may be open."""

    start: int | None = None
    end: int | None = None

    def contains(self, timestamp: int) -> bool:
        if self.start is not None and timestamp < self.start:
            return False
        if self.end is not None and timestamp > self.end:
            return False
        return True


class RelationCriteria(BaseModel):
    """Criteria for finding related meetings.

    Empty participant/topic/tag lists fall back to the reference meeting's own
    values for that dimension.
    """

    participants: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    time_range: TimeRange | None = None
    min_similarity: float | None = Field(None, ge=0.0, le=1.0)
    limit: int | None = Field(None, ge=0)


class CommonTopicsRequest(BaseModel):
    """Request body for common-topic aggregation."""

    meeting_ids: list[str] = Field(..., description="Meetings to aggregate over")


# =======================
# Query outputs
# =======================


class RelatedMeeting(BaseModel):
    """A related meeting with its raw and max-normalized score."""

    meeting_id: str
    score: float
    similarity: float = Field(..., description="score / max score among candidates")


class TopicFrequency(BaseModel):
    """How often a normalized topic appears across a set of meetings."""

    id: str
    name: str
    frequency: int = Field(..., description="Distinct meetings containing the topic")
    average_relevance: float
    meeting_ids: list[str]
    keywords: list[str] = Field(default_factory=list)


class ParticipantMeeting(BaseModel):
    """One meeting in a participant's history."""

    meeting_id: str
    title: str | None = None
    timestamp: int
    speaking_time: float | None = None
    contributions: int | None = None
    role: str | None = None


class ParticipantTopic(BaseModel):
    """A topic the participant's meetings covered."""

    id: str
    name: str
    frequency: int
    relevance: float


class AssignedActionItem(BaseModel):
    """An action item assigned to the participant."""

    id: str
    meeting_id: str
    description: str
    due_date: str | None = None
    status: str | None = None


class Collaborator(BaseModel):
    """Another participant who shared meetings with the target participant."""

    id: str
    name: str
    score: float = Field(..., description="Shared meetings / meetings attended")


class ParticipantHistory(BaseModel):
    """A participant's activity across all stored meetings."""

    id: str
    name: str
    meetings: list[ParticipantMeeting]
    frequent_topics: list[ParticipantTopic] = Field(default_factory=list)
    action_items: list[AssignedActionItem] = Field(default_factory=list)
    collaborators: list[Collaborator] = Field(default_factory=list)


class IndexStats(BaseModel):
    """Sizes and freshness of the in-memory indices."""

    enabled: bool
    meetings: int
    participants: int
    topics: int
    tags: int
    last_rebuild_age_seconds: float | None
    stale: bool
    rebuild_in_progress: bool
