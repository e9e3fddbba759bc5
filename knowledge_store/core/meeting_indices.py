"""In-memory secondary indices over meeting results.

The indices are a projection of whatever meetings are in the state store and
can always be rebuilt from it. They are never the source of truth.
"""

import bisect
from dataclasses import dataclass, field
from typing import Iterable

from knowledge_store.core.schemas_meetings import MeetingResult


def normalize_topic_name(name: str) -> str:
    """Case- and whitespace-insensitive topic key ("  Q3  Budget" -> "q3 budget")."""
    return " ".join(name.split()).lower()


def _discard(index: dict[str, set[str]], key: str, meeting_id: str) -> None:
    ids = index.get(key)
    if ids is None:
        return
    ids.discard(meeting_id)
    if not ids:
        del index[key]


@dataclass
class MeetingIndices:
    """Meeting cache plus participant, topic, tag and time indices."""

    meetings: dict[str, MeetingResult] = field(default_factory=dict)
    by_participant: dict[str, set[str]] = field(default_factory=dict)
    by_topic: dict[str, set[str]] = field(default_factory=dict)
    by_tag: dict[str, set[str]] = field(default_factory=dict)
    # (timestamp, meeting_id), ascending
    by_time: list[tuple[int, str]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.meetings)

    def __contains__(self, meeting_id: str) -> bool:
        return meeting_id in self.meetings

    def add(self, meeting: MeetingResult, keep_sorted: bool = True) -> None:
        """
        Index a meeting, replacing any previous entry for the same id.

        The meeting is stored as given; callers pass a private copy.

        Args:
            meeting: Meeting to index
            keep_sorted: Insert into the time index in order. Bulk loads pass
                False and call ``sort_time_index()`` once at the end.
        """
        self.remove(meeting.id)

        self.meetings[meeting.id] = meeting

        for participant in meeting.participants:
            self.by_participant.setdefault(participant.id, set()).add(meeting.id)

        for topic in meeting.topics:
            self.by_topic.setdefault(normalize_topic_name(topic.name), set()).add(meeting.id)

        for tag in meeting.tags:
            self.by_tag.setdefault(tag, set()).add(meeting.id)

        entry = (meeting.timestamp, meeting.id)
        if keep_sorted:
            bisect.insort(self.by_time, entry)
        else:
            self.by_time.append(entry)

    def remove(self, meeting_id: str) -> MeetingResult | None:
        """Drop a meeting from every index. Returns the removed meeting, if any."""
        meeting = self.meetings.pop(meeting_id, None)
        if meeting is None:
            return None

        for participant in meeting.participants:
            _discard(self.by_participant, participant.id, meeting_id)
        for topic in meeting.topics:
            _discard(self.by_topic, normalize_topic_name(topic.name), meeting_id)
        for tag in meeting.tags:
            _discard(self.by_tag, tag, meeting_id)

        entry = (meeting.timestamp, meeting_id)
        position = bisect.bisect_left(self.by_time, entry)
        if position < len(self.by_time) and self.by_time[position] == entry:
            del self.by_time[position]
        elif entry in self.by_time:
            self.by_time.remove(entry)

        return meeting

    def sort_time_index(self) -> None:
        self.by_time.sort()

    def ids_for(
        self,
        participants: Iterable[str] = (),
        topics: Iterable[str] = (),
        tags: Iterable[str] = (),
    ) -> set[str]:
        """Union of meeting ids matching any participant, normalized topic or tag."""
        ids: set[str] = set()
        for participant_id in participants:
            ids |= self.by_participant.get(participant_id, set())
        for topic_name in topics:
            ids |= self.by_topic.get(topic_name, set())
        for tag in tags:
            ids |= self.by_tag.get(tag, set())
        return ids

    def ids_in_range(self, start: int | None = None, end: int | None = None) -> list[str]:
        """Meeting ids with start <= timestamp <= end, oldest first."""
        low = 0 if start is None else bisect.bisect_left(self.by_time, (start,))
        if end is None:
            high = len(self.by_time)
        else:
            # Every (end, id) tuple sorts before (end + 1,)
            high = bisect.bisect_left(self.by_time, (end + 1,))
        return [meeting_id for _, meeting_id in self.by_time[low:high]]
