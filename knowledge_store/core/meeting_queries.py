"""Cross-meeting query logic: relatedness scoring and aggregations.

Everything here is pure. The engine decides which meetings to feed in (index
candidates or a full scan); these functions only look at the meetings given.
"""

from dataclasses import dataclass, field
from typing import Iterable

from knowledge_store.core.meeting_indices import normalize_topic_name
from knowledge_store.core.schemas_meetings import (
    AssignedActionItem,
    Collaborator,
    MeetingResult,
    ParticipantHistory,
    ParticipantMeeting,
    ParticipantTopic,
    RelatedMeeting,
    RelationCriteria,
    TopicFrequency,
)

# Weights for values taken from the reference meeting
SHARED_PARTICIPANT_WEIGHT = 1.0
SHARED_TOPIC_WEIGHT = 3.0  # multiplied by the reference topic's relevance
SHARED_TAG_WEIGHT = 1.5

# Weights for values named explicitly in the criteria
CRITERIA_PARTICIPANT_WEIGHT = 2.0
CRITERIA_TOPIC_WEIGHT = 3.0
CRITERIA_TAG_WEIGHT = 2.0


# =======================
# Relatedness
# =======================


@dataclass
class RelationWeights:
    """What a candidate is scored against: value -> points awarded on match."""

    participants: dict[str, float] = field(default_factory=dict)
    topics: dict[str, float] = field(default_factory=dict)
    tags: dict[str, float] = field(default_factory=dict)


def build_relation_weights(
    reference: MeetingResult, criteria: RelationCriteria
) -> RelationWeights:
    """
    Resolve the values and weights used to score candidates.

    Each dimension independently uses the criteria values when given, else the
    reference meeting's own values.
    """
    weights = RelationWeights()

    if criteria.participants:
        for participant_id in criteria.participants:
            weights.participants[participant_id] = CRITERIA_PARTICIPANT_WEIGHT
    else:
        for participant in reference.participants:
            weights.participants[participant.id] = SHARED_PARTICIPANT_WEIGHT

    if criteria.topics:
        for topic_name in criteria.topics:
            weights.topics[normalize_topic_name(topic_name)] = CRITERIA_TOPIC_WEIGHT
    else:
        for topic in reference.topics:
            name = normalize_topic_name(topic.name)
            weight = topic.relevance * SHARED_TOPIC_WEIGHT
            weights.topics[name] = max(weight, weights.topics.get(name, 0.0))

    if criteria.tags:
        for tag in criteria.tags:
            weights.tags[tag] = CRITERIA_TAG_WEIGHT
    else:
        for tag in reference.tags:
            weights.tags[tag] = SHARED_TAG_WEIGHT

    return weights


def score_meeting(weights: RelationWeights, candidate: MeetingResult) -> float:
    """Sum of the weights for every participant, topic and tag the candidate has."""
    participant_ids = {p.id for p in candidate.participants}
    topic_names = {normalize_topic_name(t.name) for t in candidate.topics}
    tags = set(candidate.tags)

    score = 0.0
    score += sum(w for pid, w in weights.participants.items() if pid in participant_ids)
    score += sum(w for name, w in weights.topics.items() if name in topic_names)
    score += sum(w for tag, w in weights.tags.items() if tag in tags)
    return score


def rank_related(
    reference: MeetingResult,
    candidates: Iterable[MeetingResult],
    criteria: RelationCriteria | None = None,
) -> list[RelatedMeeting]:
    """
    Score, filter and order candidate meetings against a reference meeting.

    Args:
        reference: Meeting to find relatives of (never returned)
        candidates: Meetings to consider
        criteria: Optional overrides, time window, threshold and limit

    Returns:
        Related meetings sorted by score desc, then meeting id asc
    """
    criteria = criteria or RelationCriteria()
    weights = build_relation_weights(reference, criteria)

    scores: dict[str, float] = {}
    for candidate in candidates:
        if candidate.id == reference.id or candidate.id in scores:
            continue
        if criteria.time_range and not criteria.time_range.contains(candidate.timestamp):
            continue
        score = score_meeting(weights, candidate)
        if score > 0:
            scores[candidate.id] = score

    if not scores:
        return []

    max_score = max(scores.values())
    related = [
        RelatedMeeting(meeting_id=meeting_id, score=score, similarity=score / max_score)
        for meeting_id, score in scores.items()
    ]

    if criteria.min_similarity is not None:
        related = [r for r in related if r.similarity >= criteria.min_similarity]

    related.sort(key=lambda r: (-r.score, r.meeting_id))

    if criteria.limit:
        related = related[: criteria.limit]

    return related


# =======================
# Common topics
# =======================


def _normalize_keywords(keywords: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for keyword in keywords:
        normalized = keyword.strip().lower()
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)


def aggregate_common_topics(meetings: Iterable[MeetingResult]) -> list[TopicFrequency]:
    """
    Group topics across meetings by normalized name.

    A topic counts once per meeting even if the meeting lists it twice; its
    relevance for that meeting is the highest listed. The first occurrence
    provides the reported id and name.

    Returns:
        Topics sorted by frequency desc, then average relevance desc
    """
    groups: dict[str, dict] = {}

    for meeting in meetings:
        # normalized name -> (topic, relevance, keywords) for this meeting only
        per_meeting: dict[str, tuple] = {}
        for topic in meeting.topics:
            name = normalize_topic_name(topic.name)
            if name in per_meeting:
                first, relevance, keywords = per_meeting[name]
                per_meeting[name] = (first, max(relevance, topic.relevance), keywords + topic.keywords)
            else:
                per_meeting[name] = (topic, topic.relevance, list(topic.keywords))

        for name, (topic, relevance, keywords) in per_meeting.items():
            group = groups.get(name)
            if group is None:
                group = groups[name] = {
                    "id": topic.id,
                    "name": topic.name,
                    "meeting_ids": [],
                    "relevances": [],
                    "keywords": [],
                }
            if meeting.id in group["meeting_ids"]:
                continue
            group["meeting_ids"].append(meeting.id)
            group["relevances"].append(relevance)
            group["keywords"].extend(keywords)

    topics = [
        TopicFrequency(
            id=group["id"],
            name=group["name"],
            frequency=len(group["meeting_ids"]),
            average_relevance=sum(group["relevances"]) / len(group["relevances"]),
            meeting_ids=group["meeting_ids"],
            keywords=_normalize_keywords(group["keywords"]),
        )
        for group in groups.values()
    ]
    topics.sort(key=lambda t: (-t.frequency, -t.average_relevance))
    return topics


# =======================
# Participant history
# =======================


def build_participant_history(
    participant_id: str, meetings: Iterable[MeetingResult]
) -> ParticipantHistory | None:
    """
    Summarize one participant's activity across the given meetings.

    Meetings the participant did not attend are ignored. Collaborator scores
    are shared meetings divided by the meetings the participant attended.

    Returns:
        The history, or None if the participant attended none of the meetings
    """
    attended = []
    seen_ids: set[str] = set()
    for meeting in meetings:
        if meeting.id in seen_ids:
            continue
        participant = next((p for p in meeting.participants if p.id == participant_id), None)
        if participant is not None:
            seen_ids.add(meeting.id)
            attended.append((meeting, participant))

    if not attended:
        return None

    # Oldest first for name resolution and first-seen ordering
    attended.sort(key=lambda pair: (pair[0].timestamp, pair[0].id))

    display_name = next((p.name for _, p in attended if p.name), participant_id)

    entries: list[ParticipantMeeting] = []
    action_items: list[AssignedActionItem] = []
    topic_stats: dict[str, dict] = {}
    collaborator_stats: dict[str, dict] = {}

    for meeting, participant in attended:
        entries.append(
            ParticipantMeeting(
                meeting_id=meeting.id,
                title=meeting.title,
                timestamp=meeting.timestamp,
                speaking_time=participant.speaking_time,
                contributions=participant.contributions,
                role=participant.role,
            )
        )

        for item in meeting.action_items:
            if participant_id in item.assignees:
                action_items.append(
                    AssignedActionItem(
                        id=item.id,
                        meeting_id=meeting.id,
                        description=item.description,
                        due_date=item.due_date,
                        status=item.status,
                    )
                )

        meeting_topics: dict[str, tuple] = {}
        for topic in meeting.topics:
            name = normalize_topic_name(topic.name)
            if name not in meeting_topics or topic.relevance > meeting_topics[name][1]:
                meeting_topics[name] = (topic, topic.relevance)
        for name, (topic, relevance) in meeting_topics.items():
            stats = topic_stats.setdefault(
                name, {"id": topic.id, "name": topic.name, "frequency": 0, "relevance_sum": 0.0}
            )
            stats["frequency"] += 1
            stats["relevance_sum"] += relevance

        for other in meeting.participants:
            if other.id == participant_id:
                continue
            stats = collaborator_stats.setdefault(other.id, {"name": "", "meetings": set()})
            if other.name and not stats["name"]:
                stats["name"] = other.name
            stats["meetings"].add(meeting.id)

    entries.sort(key=lambda m: (-m.timestamp, m.meeting_id))

    frequent_topics = [
        ParticipantTopic(
            id=stats["id"],
            name=stats["name"],
            frequency=stats["frequency"],
            relevance=stats["relevance_sum"] / stats["frequency"],
        )
        for stats in topic_stats.values()
    ]
    frequent_topics.sort(key=lambda t: (-t.frequency, -t.relevance))

    collaborators = [
        Collaborator(
            id=other_id,
            name=stats["name"] or other_id,
            score=len(stats["meetings"]) / len(attended),
        )
        for other_id, stats in collaborator_stats.items()
    ]
    collaborators.sort(key=lambda c: (-c.score, c.id))

    return ParticipantHistory(
        id=participant_id,
        name=display_name,
        meetings=entries,
        frequent_topics=frequent_topics,
        action_items=action_items,
        collaborators=collaborators,
    )
