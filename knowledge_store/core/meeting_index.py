"""Meeting index engine.

Stores meeting results in the versioned state store under ``meeting:<id>``
and keeps in-memory participant, topic, tag and time indices over them to
answer cross-meeting queries.

The indices are a cache. Writes update them incrementally; a full rebuild
reloads every stored meeting and runs when the indices are empty, when they
are older than the rebuild interval, or on request. Meetings that expire in
the backend stay indexed until the next rebuild.
"""

import asyncio
import logging
import time
from typing import Any, Callable

from pydantic import ValidationError

from knowledge_store.core.config import Settings, get_settings
from knowledge_store.core.errors import (
    CorruptStateError,
    IndexRebuildError,
    StoreNotInitializedError,
)
from knowledge_store.core.logging import get_logger, log_with_context
from knowledge_store.core.meeting_indices import MeetingIndices
from knowledge_store.core.meeting_queries import (
    aggregate_common_topics,
    build_participant_history,
    build_relation_weights,
    rank_related,
)
from knowledge_store.core.schemas_meetings import (
    IndexStats,
    MeetingResult,
    ParticipantHistory,
    RelatedMeeting,
    RelationCriteria,
    TopicFrequency,
)
from knowledge_store.core.schemas_state import StateFilter, VersionMetadata
from knowledge_store.db.state_store import VersionedStateStore, create_state_store

logger = get_logger(__name__)

MEETING_PREFIX = "meeting:"


def meeting_state_id(meeting_id: str) -> str:
    return f"{MEETING_PREFIX}{meeting_id}"


class MeetingIndexEngine:
    """Cross-meeting queries over meeting results kept in a state store."""

    def __init__(
        self,
        store: VersionedStateStore,
        *,
        index_enabled: bool = True,
        rebuild_interval: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            store: State store holding the meeting results
            index_enabled: Maintain in-memory indices (False = scan storage per query)
            rebuild_interval: Seconds after a rebuild before indices are stale
            clock: Monotonic time source in seconds
        """
        self.store = store
        self.index_enabled = index_enabled
        self.rebuild_interval = rebuild_interval
        self._clock = clock

        self._indices = MeetingIndices()
        self._last_rebuild: float | None = None
        self._rebuild_task: asyncio.Task | None = None
        # meeting id -> latest write (None = deleted) seen while a rebuild runs
        self._pending_writes: dict[str, MeetingResult | None] | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def rebuild_in_progress(self) -> bool:
        return self._rebuild_task is not None and not self._rebuild_task.done()

    async def initialize(self) -> None:
        """Initialize the store and, when indexing is enabled, build the indices."""
        if self._initialized:
            return
        await self.store.initialize()
        if self.index_enabled:
            await self._join_rebuild()
        self._initialized = True
        logger.info(
            f"MeetingIndexEngine initialized (indexing={'on' if self.index_enabled else 'off'}, "
            f"meetings={len(self._indices)})"
        )

    async def dispose(self) -> None:
        """Cancel any running rebuild and release the store."""
        task = self._rebuild_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, IndexRebuildError):
                pass
        await self.store.dispose()
        self._indices = MeetingIndices()
        self._last_rebuild = None
        self._initialized = False

    def _ensure_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise StoreNotInitializedError(
                "MeetingIndexEngine is not initialized. Call initialize() first.",
                operation=operation,
            )

    # =========================================================================
    # Loading
    # =========================================================================

    @staticmethod
    def _parse(payload: Any, meeting_id: str) -> MeetingResult:
        try:
            return MeetingResult.model_validate(payload)
        except ValidationError as e:
            raise CorruptStateError(
                f"Stored payload is not a meeting result: {e.error_count()} validation error(s)",
                state_id=meeting_state_id(meeting_id),
                operation="load_meeting",
            ) from e

    async def _load_meeting(self, meeting_id: str) -> MeetingResult | None:
        payload = await self.store.load(meeting_state_id(meeting_id))
        if payload is None:
            return None
        return self._parse(payload, meeting_id)

    async def _get_meeting(self, meeting_id: str) -> MeetingResult | None:
        """Cached meeting when indexed, otherwise read through to storage."""
        if self.index_enabled:
            cached = self._indices.meetings.get(meeting_id)
            if cached is not None:
                return cached
        return await self._load_meeting(meeting_id)

    async def list_meeting_ids(self) -> list[str]:
        """Ids of every meeting currently in storage, sorted."""
        self._ensure_initialized("list_meeting_ids")
        return await self._stored_meeting_ids()

    async def _stored_meeting_ids(self) -> list[str]:
        state_ids = await self.store.list_states(StateFilter(key_prefix=MEETING_PREFIX))
        return [state_id[len(MEETING_PREFIX):] for state_id in state_ids]

    async def _scan_meetings(self) -> list[MeetingResult]:
        """
        Load every stored meeting.

        Records that fail to decode or no longer parse as a meeting result are
        skipped with a warning. Backend failures propagate.
        """
        meetings = []
        for meeting_id in await self._stored_meeting_ids():
            try:
                meeting = await self._load_meeting(meeting_id)
            except CorruptStateError as e:
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Skipping unreadable meeting record",
                    state_id=meeting_state_id(meeting_id),
                    error=str(e),
                )
                continue
            if meeting is not None:
                meetings.append(meeting)
        return meetings

    # =========================================================================
    # Writes
    # =========================================================================

    async def store_meeting_result(
        self,
        result: MeetingResult | dict[str, Any],
        *,
        updated_by: str | None = None,
    ) -> VersionMetadata:
        """
        Persist a meeting result and (re)index it.

        The meeting is always written as a fresh version 1 document. Any
        previous index entries for the same id are removed first.

        Args:
            result: Meeting result (model or raw dict)
            updated_by: Writer id recorded in the version metadata

        Returns:
            Version metadata of the stored document
        """
        self._ensure_initialized("store_meeting_result")

        if isinstance(result, MeetingResult):
            meeting = result.model_copy(deep=True)
        else:
            meeting = MeetingResult.model_validate(result).model_copy(deep=True)

        metadata = await self.store.save(
            meeting_state_id(meeting.id),
            meeting.model_dump(mode="json"),
            updated_by=updated_by,
            description="Store meeting result",
        )

        if self.index_enabled:
            self._index(meeting)

        log_with_context(
            logger,
            logging.DEBUG,
            "Stored meeting result",
            operation="store_meeting_result",
            state_id=meeting_state_id(meeting.id),
            participants=len(meeting.participants),
            topics=len(meeting.topics),
        )
        return metadata

    def _index(self, meeting: MeetingResult) -> None:
        try:
            self._indices.add(meeting)
        except Exception:
            # Leave no partial entries for this id and force the next query to rebuild
            self._indices.remove(meeting.id)
            self._last_rebuild = None
            logger.exception(f"Failed to index meeting {meeting.id}")
            raise
        if self._pending_writes is not None:
            self._pending_writes[meeting.id] = meeting

    async def delete_meeting_result(self, meeting_id: str) -> bool:
        """
        Delete a meeting from storage and the indices.

        Returns:
            True if the meeting existed
        """
        self._ensure_initialized("delete_meeting_result")
        state_id = meeting_state_id(meeting_id)
        existed = await self.store.has(state_id)
        await self.store.delete(state_id)

        if self.index_enabled:
            existed = self._indices.remove(meeting_id) is not None or existed
            if self._pending_writes is not None:
                self._pending_writes[meeting_id] = None

        logger.debug(f"Deleted meeting {meeting_id}")
        return existed

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_meeting_result(self, meeting_id: str) -> MeetingResult | None:
        """
        Get a meeting result by id.

        Returns:
            A copy of the meeting, or None if it is not stored

        Raises:
            CorruptStateError: If the stored record is not a meeting result
        """
        self._ensure_initialized("get_meeting_result")
        meeting = await self._get_meeting(meeting_id)
        return meeting.model_copy(deep=True) if meeting else None

    async def find_related_meetings(
        self, meeting_id: str, criteria: RelationCriteria | None = None
    ) -> list[str]:
        """Ids of meetings related to ``meeting_id``, most related first."""
        related = await self.find_related_meetings_scored(meeting_id, criteria)
        return [r.meeting_id for r in related]

    async def find_related_meetings_scored(
        self, meeting_id: str, criteria: RelationCriteria | None = None
    ) -> list[RelatedMeeting]:
        """
        Score meetings by shared participants, topics and tags.

        Args:
            meeting_id: Reference meeting (never part of the result)
            criteria: Optional overrides, time window, threshold and limit

        Returns:
            Related meetings with raw and normalized scores, or [] if the
            reference meeting does not exist
        """
        self._ensure_initialized("find_related_meetings")

        reference = await self._get_meeting(meeting_id)
        if reference is None:
            return []

        await self._refresh_if_stale()
        criteria = criteria or RelationCriteria()

        if self.index_enabled:
            candidates = self._index_candidates(reference, criteria)
        else:
            candidates = await self._scan_meetings()

        related = rank_related(reference, candidates, criteria)
        logger.debug(f"Found {len(related)} meetings related to {meeting_id}")
        return related

    def _index_candidates(
        self, reference: MeetingResult, criteria: RelationCriteria
    ) -> list[MeetingResult]:
        weights = build_relation_weights(reference, criteria)
        ids = self._indices.ids_for(weights.participants, weights.topics, weights.tags)
        return [self._indices.meetings[i] for i in sorted(ids) if i in self._indices.meetings]

    async def get_common_topics(self, meeting_ids: list[str]) -> list[TopicFrequency]:
        """
        Topics shared across the given meetings.

        Unknown ids are ignored; duplicate ids count once.
        """
        self._ensure_initialized("get_common_topics")
        await self._refresh_if_stale()

        meetings = []
        for meeting_id in dict.fromkeys(meeting_ids):
            meeting = await self._get_meeting(meeting_id)
            if meeting is not None:
                meetings.append(meeting)

        return aggregate_common_topics(meetings)

    async def get_participant_history(self, participant_id: str) -> ParticipantHistory | None:
        """
        A participant's meetings (newest first), topics, action items and collaborators.

        Returns:
            The history, or None if the participant attended no stored meeting
        """
        self._ensure_initialized("get_participant_history")
        await self._refresh_if_stale()

        if self.index_enabled:
            ids = self._indices.by_participant.get(participant_id, set())
            meetings = [self._indices.meetings[i] for i in ids]
        else:
            meetings = await self._scan_meetings()

        return build_participant_history(participant_id, meetings)

    async def list_meetings_in_range(
        self, start: int | None = None, end: int | None = None
    ) -> list[str]:
        """Ids of meetings with start <= timestamp <= end (epoch ms), oldest first."""
        self._ensure_initialized("list_meetings_in_range")
        await self._refresh_if_stale()

        if self.index_enabled:
            return self._indices.ids_in_range(start, end)

        meetings = await self._scan_meetings()
        in_range = [
            m
            for m in meetings
            if (start is None or m.timestamp >= start) and (end is None or m.timestamp <= end)
        ]
        in_range.sort(key=lambda m: (m.timestamp, m.id))
        return [m.id for m in in_range]

    # =========================================================================
    # Staleness and rebuild
    # =========================================================================

    def is_stale(self) -> bool:
        """Indices are stale when empty or older than the rebuild interval."""
        if not self._indices.meetings or self._last_rebuild is None:
            return True
        return self._clock() - self._last_rebuild > self.rebuild_interval

    def index_stats(self) -> IndexStats:
        """Current index sizes and freshness."""
        age = None if self._last_rebuild is None else self._clock() - self._last_rebuild
        return IndexStats(
            enabled=self.index_enabled,
            meetings=len(self._indices.meetings),
            participants=len(self._indices.by_participant),
            topics=len(self._indices.by_topic),
            tags=len(self._indices.by_tag),
            last_rebuild_age_seconds=age,
            stale=self.index_enabled and self.is_stale(),
            rebuild_in_progress=self.rebuild_in_progress,
        )

    async def _refresh_if_stale(self) -> None:
        if self.index_enabled and self.is_stale():
            await self._join_rebuild()

    async def rebuild_indices(self) -> None:
        """
        Rebuild every index from storage.

        Concurrent callers share one in-flight rebuild and see the same
        outcome. No-op when indexing is disabled.

        Raises:
            IndexRebuildError: If the rebuild failed; previous indices are kept
        """
        self._ensure_initialized("rebuild_indices")
        if not self.index_enabled:
            return
        await self._join_rebuild()

    async def _join_rebuild(self) -> None:
        task = self._rebuild_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._rebuild())
            task.add_done_callback(self._rebuild_finished)
            self._rebuild_task = task
        # A cancelled caller must not cancel the rebuild other callers wait on
        await asyncio.shield(task)

    def _rebuild_finished(self, task: asyncio.Task) -> None:
        if self._rebuild_task is task:
            self._rebuild_task = None
        if not task.cancelled():
            # Mark the exception retrieved; awaiters still receive it
            task.exception()

    async def _rebuild(self) -> None:
        started = self._clock()
        self._pending_writes = {}
        logger.debug("Rebuilding meeting indices")

        try:
            fresh = MeetingIndices()
            for meeting in await self._scan_meetings():
                fresh.add(meeting, keep_sorted=False)
            fresh.sort_time_index()

            for meeting_id, meeting in self._pending_writes.items():
                if meeting is None:
                    fresh.remove(meeting_id)
                else:
                    fresh.add(meeting)
        except Exception as e:
            logger.error(f"Meeting index rebuild failed: {e}")
            raise IndexRebuildError(
                f"Failed to rebuild meeting indices: {e}", operation="rebuild_indices"
            ) from e
        finally:
            self._pending_writes = None

        self._indices = fresh
        self._last_rebuild = self._clock()

        log_with_context(
            logger,
            logging.INFO,
            "Meeting indices rebuilt",
            operation="rebuild_indices",
            meetings=len(fresh.meetings),
            participants=len(fresh.by_participant),
            topics=len(fresh.by_topic),
            tags=len(fresh.by_tag),
            duration_seconds=round(self._last_rebuild - started, 3),
        )


def create_meeting_index(settings: Settings | None = None) -> MeetingIndexEngine:
    """Build an (uninitialized) engine on the configured state store."""
    settings = settings or get_settings()
    return MeetingIndexEngine(
        create_state_store(settings),
        index_enabled=settings.MEETING_INDEX_ENABLED,
        rebuild_interval=settings.MEETING_INDEX_REBUILD_INTERVAL_SECONDS,
    )
