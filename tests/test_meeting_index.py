"""Tests for the meeting index engine: storage, relatedness, staleness and rebuild."""

import asyncio
from unittest.mock import patch

import pytest

from knowledge_store.core.config import Settings
from knowledge_store.core.errors import (
    IndexRebuildError,
    StoreNotInitializedError,
)
from knowledge_store.core.meeting_index import (
    MeetingIndexEngine,
    create_meeting_index,
    meeting_state_id,
)
from knowledge_store.core.meeting_indices import MeetingIndices
from knowledge_store.core.schemas_meetings import RelationCriteria, TimeRange
from knowledge_store.db.backends.memory_backend import MemoryBackend
from knowledge_store.db.state_store import VersionedStateStore
from tests.fakes.counting_backend import CountingBackend
from tests.fixtures_meetings import T0, make_meeting


async def _engine(clock, backend=None, **kwargs) -> MeetingIndexEngine:
    engine = MeetingIndexEngine(
        VersionedStateStore(backend or MemoryBackend()), clock=clock, **kwargs
    )
    await engine.initialize()
    return engine


async def _seed_related(engine: MeetingIndexEngine) -> None:
    """Reference R plus candidates sharing a topic (A), a participant (B) or nothing (C)."""
    await engine.store_meeting_result(
        make_meeting("R", participants=["alice"], topics=[("Budget", 0.9)])
    )
    await engine.store_meeting_result(
        make_meeting("A", participants=["dave"], topics=[(" budget ", 0.2)])
    )
    await engine.store_meeting_result(
        make_meeting("B", participants=["alice", "erin"], topics=[("Hiring", 0.5)])
    )
    await engine.store_meeting_result(
        make_meeting("C", participants=["frank"], topics=[("Roadmap", 0.7)])
    )


class TestStoreAndRead:
    @pytest.mark.asyncio
    async def test_store_persists_under_meeting_prefix(self, clock):
        """Meetings are stored as version 1 documents under meeting:<id>."""
        engine = await _engine(clock)

        metadata = await engine.store_meeting_result(make_meeting("m1"))
        await engine.store_meeting_result(make_meeting("m1", tags=["again"]))

        assert metadata.version == 1
        assert await engine.store.has(meeting_state_id("m1"))
        stored = await engine.store.get_metadata("meeting:m1")
        assert stored.version == 1
        assert await engine.list_meeting_ids() == ["m1"]

    @pytest.mark.asyncio
    async def test_get_meeting_result_round_trip(self, clock):
        """A stored meeting reads back equal."""
        engine = await _engine(clock)
        meeting = make_meeting("m1", participants=["alice"], topics=[("Budget", 0.5)])

        await engine.store_meeting_result(meeting)

        assert await engine.get_meeting_result("m1") == meeting
        assert await engine.get_meeting_result("missing") is None

    @pytest.mark.asyncio
    async def test_accepts_raw_dict(self, clock):
        """Raw dict payloads are validated into meeting results."""
        engine = await _engine(clock)

        await engine.store_meeting_result({"id": "m1", "timestamp": T0})

        result = await engine.get_meeting_result("m1")
        assert result.timestamp == T0

    @pytest.mark.asyncio
    async def test_caller_mutations_do_not_leak_into_the_index(self, clock):
        """The engine keeps its own copy of stored and returned meetings."""
        engine = await _engine(clock)
        meeting = make_meeting("m1", tags=["original"])

        await engine.store_meeting_result(meeting)
        meeting.tags.append("mutated-after-store")
        returned = await engine.get_meeting_result("m1")
        returned.tags.append("mutated-after-read")

        assert (await engine.get_meeting_result("m1")).tags == ["original"]

    @pytest.mark.asyncio
    async def test_raw_dict_mutations_do_not_leak_into_the_index(self, clock):
        """Nested values of a raw dict payload are copied, not shared."""
        engine = await _engine(clock)
        payload = {
            "id": "m1",
            "timestamp": T0,
            "metadata": {"source": {"kind": "zoom"}, "labels": ["a"]},
        }

        await engine.store_meeting_result(payload)
        payload["metadata"]["source"]["kind"] = "mutated"
        payload["metadata"]["labels"].append("b")

        expected = {"source": {"kind": "zoom"}, "labels": ["a"]}
        assert (await engine.get_meeting_result("m1")).metadata == expected
        assert (await engine.store.load("meeting:m1"))["metadata"] == expected

    @pytest.mark.asyncio
    async def test_failed_index_update_leaves_no_partial_entries(self, clock):
        """A meeting that fails to index is fully removed and the indices go stale."""
        engine = await _engine(clock)
        await _seed_related(engine)
        original_add = MeetingIndices.add

        def flaky_add(indices, meeting, keep_sorted=True):
            if meeting.id != "bad":
                return original_add(indices, meeting, keep_sorted)
            indices.meetings[meeting.id] = meeting
            indices.by_participant.setdefault("zed", set()).add(meeting.id)
            indices.by_tag.setdefault("broken", set()).add(meeting.id)
            raise RuntimeError("index update failed")

        with patch.object(MeetingIndices, "add", autospec=True, side_effect=flaky_add):
            with pytest.raises(RuntimeError):
                await engine.store_meeting_result(
                    make_meeting("bad", participants=["zed"], tags=["broken"])
                )

            indices = engine._indices
            assert "bad" not in indices.meetings
            for postings in (indices.by_participant, indices.by_topic, indices.by_tag):
                assert all("bad" not in ids for ids in postings.values())
            assert "zed" not in indices.by_participant
            assert all(meeting_id != "bad" for _, meeting_id in indices.by_time)
            assert engine.is_stale() is True

        # The stored document survives; the next query rebuilds and picks it up
        assert await engine.find_related_meetings("R") == ["A", "B"]
        assert engine.is_stale() is False
        assert "bad" in engine._indices.meetings

    @pytest.mark.asyncio
    async def test_restore_replaces_index_entries(self, clock):
        """Re-storing a meeting removes its previous index entries."""
        engine = await _engine(clock)
        await engine.store_meeting_result(make_meeting("ref", tags=["x", "y"]))
        await engine.store_meeting_result(make_meeting("m1", tags=["x"]))
        await engine.store_meeting_result(make_meeting("m1", tags=["y"]))

        assert await engine.find_related_meetings("ref", RelationCriteria(tags=["x"])) == []
        assert await engine.find_related_meetings("ref", RelationCriteria(tags=["y"])) == ["m1"]

    @pytest.mark.asyncio
    async def test_delete_removes_from_store_and_indices(self, clock):
        """Deleted meetings are no longer stored or related."""
        engine = await _engine(clock)
        await _seed_related(engine)

        assert await engine.delete_meeting_result("A") is True
        assert await engine.delete_meeting_result("A") is False

        assert await engine.get_meeting_result("A") is None
        assert await engine.find_related_meetings("R") == ["B"]

    @pytest.mark.asyncio
    async def test_operations_require_initialize(self, clock):
        """Public calls before initialize raise StoreNotInitializedError."""
        engine = MeetingIndexEngine(VersionedStateStore(MemoryBackend()), clock=clock)

        with pytest.raises(StoreNotInitializedError):
            await engine.store_meeting_result(make_meeting("m1"))
        with pytest.raises(StoreNotInitializedError):
            await engine.find_related_meetings("m1")
        with pytest.raises(StoreNotInitializedError):
            await engine.rebuild_indices()


class TestFindRelatedMeetings:
    @pytest.mark.asyncio
    async def test_topic_relevance_outranks_shared_participant(self, clock):
        """A shared 0.9-relevance topic scores 2.7, above one shared participant (1.0)."""
        engine = await _engine(clock)
        await _seed_related(engine)

        scored = await engine.find_related_meetings_scored("R")

        assert [r.meeting_id for r in scored] == ["A", "B"]
        assert scored[0].score == pytest.approx(2.7)
        assert scored[0].similarity == pytest.approx(1.0)
        assert scored[1].score == pytest.approx(1.0)
        assert scored[1].similarity == pytest.approx(1.0 / 2.7)

    @pytest.mark.asyncio
    async def test_reference_is_never_returned(self, clock):
        """The reference meeting is excluded even though it matches itself best."""
        engine = await _engine(clock)
        await _seed_related(engine)

        related = await engine.find_related_meetings("R")

        assert "R" not in related

    @pytest.mark.asyncio
    async def test_unknown_reference_returns_empty(self, clock):
        """A missing reference meeting yields no results."""
        engine = await _engine(clock)
        await _seed_related(engine)

        assert await engine.find_related_meetings("nope") == []

    @pytest.mark.asyncio
    async def test_criteria_participants_override_reference(self, clock):
        """Criteria participants score +2 each and replace the reference's participants."""
        engine = await _engine(clock)
        await _seed_related(engine)

        scored = await engine.find_related_meetings_scored(
            "R", RelationCriteria(participants=["frank"])
        )

        # Topics still come from the reference: A keeps its 2.7
        assert [(r.meeting_id, round(r.score, 2)) for r in scored] == [("A", 2.7), ("C", 2.0)]

    @pytest.mark.asyncio
    async def test_criteria_topics_match_normalized_names(self, clock):
        """Criteria topics score a flat +3 and ignore case and whitespace."""
        engine = await _engine(clock)
        await _seed_related(engine)

        scored = await engine.find_related_meetings_scored(
            "R", RelationCriteria(topics=["  HIRING "])
        )

        assert [(r.meeting_id, r.score) for r in scored] == [("B", 4.0)]

    @pytest.mark.asyncio
    async def test_tags(self, clock):
        """Shared tags score 1.5; criteria tags score 2."""
        engine = await _engine(clock)
        await engine.store_meeting_result(make_meeting("R", tags=["q3", "finance"]))
        await engine.store_meeting_result(make_meeting("m1", tags=["q3"]))
        await engine.store_meeting_result(make_meeting("m2", tags=["q3", "finance"]))

        shared = await engine.find_related_meetings_scored("R")
        explicit = await engine.find_related_meetings_scored("R", RelationCriteria(tags=["q3"]))

        assert [(r.meeting_id, r.score) for r in shared] == [("m2", 3.0), ("m1", 1.5)]
        assert [(r.meeting_id, r.score) for r in explicit] == [("m1", 2.0), ("m2", 2.0)]

    @pytest.mark.asyncio
    async def test_time_range_filters_candidates(self, clock):
        """Candidates outside the inclusive time range are excluded."""
        engine = await _engine(clock)
        await engine.store_meeting_result(make_meeting("R", tags=["t"], timestamp=T0))
        await engine.store_meeting_result(make_meeting("early", tags=["t"], timestamp=T0 - 10))
        await engine.store_meeting_result(make_meeting("edge", tags=["t"], timestamp=T0 + 10))
        await engine.store_meeting_result(make_meeting("late", tags=["t"], timestamp=T0 + 11))

        related = await engine.find_related_meetings(
            "R", RelationCriteria(time_range=TimeRange(start=T0 - 5, end=T0 + 10))
        )

        assert related == ["edge"]

    @pytest.mark.asyncio
    async def test_min_similarity_and_limit(self, clock):
        """min_similarity drops weak matches; limit truncates."""
        engine = await _engine(clock)
        await _seed_related(engine)

        strong_only = await engine.find_related_meetings(
            "R", RelationCriteria(min_similarity=0.5)
        )
        top_one = await engine.find_related_meetings("R", RelationCriteria(limit=1))
        unlimited = await engine.find_related_meetings("R", RelationCriteria(limit=0))

        assert strong_only == ["A"]
        assert top_one == ["A"]
        assert unlimited == ["A", "B"]

    @pytest.mark.asyncio
    async def test_ties_break_by_meeting_id(self, clock):
        """Equal scores are ordered by meeting id."""
        engine = await _engine(clock)
        await engine.store_meeting_result(make_meeting("R", participants=["p"]))
        for meeting_id in ["z", "a", "m"]:
            await engine.store_meeting_result(make_meeting(meeting_id, participants=["p"]))

        assert await engine.find_related_meetings("R") == ["a", "m", "z"]

    @pytest.mark.asyncio
    async def test_scan_path_matches_index_path(self, clock):
        """With indexing disabled, results come from a storage scan and agree."""
        backend = MemoryBackend()
        indexed = await _engine(clock, backend)
        await _seed_related(indexed)

        scanning = await _engine(clock, backend, index_enabled=False)

        assert await scanning.find_related_meetings_scored("R") == (
            await indexed.find_related_meetings_scored("R")
        )
        assert scanning.index_stats().meetings == 0


class TestListMeetingsInRange:
    @pytest.mark.asyncio
    async def test_inclusive_bounds_oldest_first(self, clock):
        """Range queries are inclusive and ordered by timestamp."""
        engine = await _engine(clock)
        for meeting_id, offset in [("c", 30), ("a", 10), ("b", 20), ("d", 40)]:
            await engine.store_meeting_result(make_meeting(meeting_id, timestamp=T0 + offset))

        assert await engine.list_meetings_in_range(T0 + 10, T0 + 30) == ["a", "b", "c"]
        assert await engine.list_meetings_in_range(start=T0 + 25) == ["c", "d"]
        assert await engine.list_meetings_in_range() == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_restore_moves_meeting_in_time_index(self, clock):
        """Re-storing with a new timestamp updates the time index."""
        engine = await _engine(clock)
        await engine.store_meeting_result(make_meeting("a", timestamp=T0))
        await engine.store_meeting_result(make_meeting("b", timestamp=T0 + 5))
        await engine.store_meeting_result(make_meeting("a", timestamp=T0 + 10))

        assert await engine.list_meetings_in_range() == ["b", "a"]

    @pytest.mark.asyncio
    async def test_scan_path(self, clock):
        """Without indices the range comes from a storage scan."""
        engine = await _engine(clock, index_enabled=False)
        await engine.store_meeting_result(make_meeting("late", timestamp=T0 + 1))
        await engine.store_meeting_result(make_meeting("early", timestamp=T0))

        assert await engine.list_meetings_in_range(end=T0 + 1) == ["early", "late"]


class TestStalenessAndRebuild:
    @pytest.mark.asyncio
    async def test_staleness_follows_clock(self, clock):
        """Indices go stale after the rebuild interval."""
        engine = await _engine(clock, rebuild_interval=60)
        await engine.store_meeting_result(make_meeting("m1"))
        await engine.rebuild_indices()

        assert engine.is_stale() is False
        clock.advance(60)
        assert engine.is_stale() is False
        clock.advance(1)
        assert engine.is_stale() is True

    @pytest.mark.asyncio
    async def test_empty_cache_is_stale(self, clock):
        """An empty index is always stale."""
        engine = await _engine(clock)
        assert engine.is_stale() is True

    @pytest.mark.asyncio
    async def test_initialize_loads_existing_meetings(self, clock):
        """A new engine over populated storage rebuilds eagerly."""
        backend = MemoryBackend()
        first = await _engine(clock, backend)
        await _seed_related(first)

        second = await _engine(clock, backend)

        stats = second.index_stats()
        assert stats.meetings == 4
        assert stats.participants == 4
        assert stats.stale is False

    @pytest.mark.asyncio
    async def test_concurrent_stale_queries_share_one_rebuild(self, clock):
        """Concurrent callers on stale indices trigger a single storage scan."""
        backend = CountingBackend(scan_delay=0.01)
        engine = await _engine(clock, backend)
        await _seed_related(engine)
        await engine.rebuild_indices()
        clock.advance(3601)
        backend.list_keys_calls = 0

        results = await asyncio.gather(
            *(engine.get_participant_history("alice") for _ in range(5)),
            engine.get_common_topics(["R", "A"]),
            engine.find_related_meetings("R"),
        )

        assert backend.list_keys_calls == 1
        assert all(history.id == "alice" for history in results[:5])
        assert results[-1] == ["A", "B"]
        assert engine.is_stale() is False

    @pytest.mark.asyncio
    async def test_failed_rebuild_keeps_previous_indices(self, clock):
        """Every awaiter sees IndexRebuildError and old indices stay usable."""
        backend = CountingBackend(scan_delay=0.01)
        engine = await _engine(clock, backend)
        await _seed_related(engine)
        backend.list_keys_calls = 0
        backend.fail_on.add("list_keys")

        results = await asyncio.gather(
            engine.rebuild_indices(), engine.rebuild_indices(), return_exceptions=True
        )

        assert all(isinstance(r, IndexRebuildError) for r in results)
        assert backend.list_keys_calls == 1
        assert engine.index_stats().meetings == 4
        assert engine.rebuild_in_progress is False

        backend.fail_on.clear()
        await engine.rebuild_indices()
        assert engine.index_stats().meetings == 4

    @pytest.mark.asyncio
    async def test_writes_during_rebuild_are_kept(self, clock):
        """Meetings stored or deleted while a rebuild runs survive the swap."""
        backend = CountingBackend(scan_delay=0.05)
        engine = await _engine(clock, backend)
        await engine.store_meeting_result(make_meeting("old", tags=["t"]))
        await engine.store_meeting_result(make_meeting("doomed", tags=["t"]))

        rebuild = asyncio.create_task(engine.rebuild_indices())
        await asyncio.sleep(0.01)
        assert engine.rebuild_in_progress is True

        await engine.store_meeting_result(make_meeting("new", tags=["t"]))
        await engine.delete_meeting_result("doomed")
        await rebuild

        assert await engine.find_related_meetings("old") == ["new"]

    @pytest.mark.asyncio
    async def test_rebuild_skips_unreadable_meetings(self, clock):
        """Corrupt records and non-meeting payloads are skipped, not fatal."""
        backend = MemoryBackend()
        engine = await _engine(clock, backend)
        await engine.store_meeting_result(make_meeting("good"))
        await backend.set("state:meeting:garbled", "{not json")
        await engine.store.save("meeting:not-a-meeting", {"unexpected": True})

        await engine.rebuild_indices()

        assert engine.index_stats().meetings == 1

    @pytest.mark.asyncio
    async def test_rebuild_drops_meetings_removed_from_storage(self, clock):
        """After a rebuild the indices hold no id absent from storage."""
        backend = MemoryBackend()
        engine = await _engine(clock, backend)
        await engine.store_meeting_result(make_meeting("m1"))
        await engine.store_meeting_result(make_meeting("m2"))
        await engine.store.delete("meeting:m2")

        await engine.rebuild_indices()

        assert await engine.list_meetings_in_range() == ["m1"]

    @pytest.mark.asyncio
    async def test_rebuild_is_noop_when_indexing_disabled(self, clock):
        """rebuild_indices does nothing without indices."""
        backend = CountingBackend()
        engine = await _engine(clock, backend, index_enabled=False)

        await engine.rebuild_indices()

        assert backend.list_keys_calls == 0
        assert engine.index_stats().enabled is False


class TestFactory:
    def test_create_meeting_index_from_settings(self):
        """Settings drive the index flags and backend choice."""
        settings = Settings(
            STATE_BACKEND="memory",
            MEETING_INDEX_ENABLED=False,
            MEETING_INDEX_REBUILD_INTERVAL_SECONDS=120,
        )

        engine = create_meeting_index(settings)

        assert engine.index_enabled is False
        assert engine.rebuild_interval == 120
        assert isinstance(engine.store.backend, MemoryBackend)
