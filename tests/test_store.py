"""Tests for MemoryStore – the in-memory store and its policies."""

from __future__ import annotations

import json
import threading
import time
from datetime import timedelta

import pytest

from conftest import START, FakeClock
from memstash.config import StoreConfig
from memstash.errors import MemoryNotFoundError
from memstash.intelligence import vectorize
from memstash.store import MemoryStore


def _iso(dt) -> str:
    return dt.isoformat()


class TestAdd:
    def test_add_returns_sequential_ids(self, store: MemoryStore):
        assert store.add("apple banana") == "mem_1"
        assert store.add("car truck") == "mem_2"
        assert store.count() == 2
        assert len(store) == 2

    def test_added_record_is_stamped_and_vectorized(self, store: MemoryStore):
        memory_id = store.add("The user likes pizza", {"tags": ["food"], "source": "chat"})
        record = store.get(memory_id)
        assert record.content == "The user likes pizza"
        assert record.timestamp == START
        assert record.metadata.last_updated is None
        assert record.tags == ["food"]
        assert record.metadata.extra == {"source": "chat"}
        assert record.vector == vectorize("The user likes pizza")

    def test_distinct_content_grows_count_by_one(self, store: MemoryStore):
        store.add("apple banana")
        before = store.count()
        store.add("car truck")
        assert store.count() == before + 1

    def test_identical_content_is_merged(self, store: MemoryStore):
        first = store.add("The capital of France is Paris.")
        second = store.add("The capital of France is Paris.")
        assert first == second
        assert store.count() == 1

    def test_near_duplicate_merges_into_existing(self, store: MemoryStore):
        first = store.add("the user likes pizza", {"tags": ["food"]})
        second = store.add("the user loves pizza", {"tags": ["food", "italian"]})

        assert second == first
        assert store.count() == 1
        record = store.get(first)
        assert record.content == "the user loves pizza"
        assert record.vector == vectorize("the user loves pizza")
        # Tags are merged like any other metadata key: the new list wins.
        assert record.tags == ["food", "italian"]
        assert record.timestamp == START
        assert record.metadata.last_updated is not None
        assert record.metadata.last_updated > START

    def test_merge_shallow_merges_metadata(self, store: MemoryStore):
        first = store.add("the user likes pizza", {"category": "food", "source": "chat"})
        store.add("the user loves pizza", {"source": "email", "mood": "happy"})
        record = store.get(first)
        assert record.metadata.category == "food"
        assert record.metadata.extra == {"source": "email", "mood": "happy"}

    def test_merge_does_not_consume_an_id(self, store: MemoryStore):
        store.add("the user likes pizza")
        store.add("the user loves pizza")
        assert store.add("car truck") == "mem_2"

    def test_similarity_equal_to_threshold_does_not_merge(self, make_store):
        # Cosine similarity of these two texts is exactly 0.75.
        store = make_store(similarity_threshold=0.75)
        first = store.add("the user likes pizza")
        second = store.add("the user loves pizza")
        assert first != second
        assert store.count() == 2

    def test_merge_picks_the_most_similar_memory(self, store: MemoryStore):
        store.add("red apple pie")
        target = store.add("the user likes pizza")
        assert store.add("the user loves pizza") == target

    def test_empty_content_never_merges(self, store: MemoryStore):
        first = store.add("")
        second = store.add("   ")
        assert first != second
        assert store.count() == 2
        assert store.get(first).vector == {}


class TestEviction:
    def test_oldest_memory_is_evicted_at_capacity(self, make_store):
        store = make_store(max_memories=2)
        a = store.add("apple banana")
        b = store.add("car truck")
        assert store.count() == 2

        c = store.add("airplane rocket")

        assert store.count() == 2
        assert store.get(a) is None
        assert store.get(b) is not None
        assert store.get(c) is not None

    def test_count_never_exceeds_capacity(self, make_store):
        store = make_store(max_memories=3)
        for i in range(10):
            store.add(f"unique{i} token{i}")
            assert store.count() <= 3
        assert [r.id for r in store.get_all()] == ["mem_10", "mem_9", "mem_8"]

    def test_eviction_uses_timestamp_not_insertion_order(self, make_store):
        store = make_store(max_memories=2)
        a = store.add("apple banana")
        old = store.add("car truck", {"timestamp": "2000-01-01T00:00:00Z"})
        store.add("airplane rocket")
        assert store.get(old) is None
        assert store.get(a) is not None

    def test_equal_timestamps_evict_earliest_inserted(self):
        clock = FakeClock(step=timedelta(0))
        with MemoryStore(StoreConfig(max_memories=2), clock=clock) as store:
            a = store.add("apple banana")
            b = store.add("car truck")
            store.add("airplane rocket")
            assert store.get(a) is None
            assert store.get(b) is not None

    def test_merge_never_evicts(self, make_store):
        store = make_store(max_memories=2)
        a = store.add("the user likes pizza")
        b = store.add("car truck")
        assert store.add("the user loves pizza") == a
        assert store.get(a) is not None
        assert store.get(b) is not None


class TestUpdate:
    def test_update_replaces_content_and_merges_metadata(self, store: MemoryStore):
        memory_id = store.add("The user likes pizza", {"category": "preferences", "tags": ["food"]})
        record = store.update(
            memory_id,
            "The user loves pizza, pasta, and all Italian cuisine",
            {"tags": ["food", "preferences", "italian"]},
        )
        assert record is store.get(memory_id)
        assert record.content == "The user loves pizza, pasta, and all Italian cuisine"
        assert record.tags == ["food", "preferences", "italian"]
        assert record.metadata.category == "preferences"
        assert record.metadata.last_updated is not None
        assert record.timestamp == START
        assert record.vector == vectorize(record.content)

    def test_update_does_not_deduplicate(self, store: MemoryStore):
        a = store.add("apple banana")
        b = store.add("car truck")
        store.update(b, "apple banana")
        assert store.count() == 2
        assert store.get(a).content == store.get(b).content

    def test_search_uses_updated_content(self, store: MemoryStore):
        memory_id = store.add("apple banana")
        store.update(memory_id, "car truck")
        assert store.search("apple") == []
        assert [r.id for r in store.search("truck")] == [memory_id]

    def test_update_unknown_id_raises(self, store: MemoryStore):
        with pytest.raises(MemoryNotFoundError) as excinfo:
            store.update("mem_404", "anything")
        assert excinfo.value.memory_id == "mem_404"
        assert isinstance(excinfo.value, KeyError)
        assert "mem_404" in str(excinfo.value)


class TestDeleteAndClear:
    def test_delete_then_get_returns_none(self, store: MemoryStore):
        memory_id = store.add("To be removed.")
        assert store.delete(memory_id) is True
        assert store.get(memory_id) is None
        assert memory_id not in store

    def test_delete_missing_returns_false(self, store: MemoryStore):
        assert store.delete("mem_404") is False

    def test_get_missing_returns_none(self, store: MemoryStore):
        assert store.get("mem_404") is None

    def test_clear_resets_records_and_ids(self, store: MemoryStore):
        store.add("apple banana")
        store.add("car truck")
        store.clear()
        assert store.count() == 0
        assert store.next_id == 1
        assert store.add("airplane rocket") == "mem_1"

    def test_clear_is_idempotent(self, store: MemoryStore):
        store.clear()
        store.clear()
        assert store.count() == 0
        assert store.next_id == 1


class TestSearch:
    def test_results_are_ranked_by_similarity(self, store: MemoryStore):
        both = store.add("pizza pasta wine")
        exact = store.add("pizza")
        store.add("car truck")

        results = store.search("pizza")

        assert [r.id for r in results] == [exact, both]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[1].similarity == pytest.approx(3 ** -0.5)

    def test_zero_similarity_is_excluded(self, store: MemoryStore):
        store.add("apple banana")
        assert store.search("car truck") == []

    def test_empty_store_returns_empty(self, store: MemoryStore):
        assert store.search("anything") == []

    def test_empty_query_returns_empty(self, store: MemoryStore):
        store.add("apple banana")
        assert store.search("") == []

    def test_ties_keep_insertion_order(self, store: MemoryStore):
        red = store.add("red apple")
        green = store.add("green apple")
        results = store.search("apple")
        assert [r.id for r in results] == [red, green]
        assert results[0].similarity == results[1].similarity

    def test_limit_truncates(self, store: MemoryStore):
        for i in range(7):
            store.add(f"common item{i}")
        assert len(store.search("common")) == 7
        assert len(store.search("common", limit=3)) == 3
        assert store.search("common", limit=0) == []

    def test_find_similar_defaults_to_five(self, store: MemoryStore):
        for i in range(7):
            store.add(f"common item{i}")
        assert len(store.find_similar("common")) == 5

    def test_search_result_views(self, store: MemoryStore):
        memory_id = store.add("pizza", {"tags": ["food"]})
        result = store.search("pizza")[0]
        assert result.id == memory_id
        data = result.to_dict()
        assert data["id"] == memory_id
        assert data["content"] == "pizza"
        assert data["metadata"]["tags"] == ["food"]
        assert data["similarity"] == pytest.approx(1.0)


class TestSearchByTags:
    @pytest.fixture()
    def tagged(self, store: MemoryStore):
        a = store.add("the user enjoys Italian dishes", {"tags": ["food", "italian"]})
        b = store.add("burgers on fridays", {"tags": ["food"]})
        c = store.add("learning python", {"tags": ["programming"]})
        return store, a, b, c

    def test_match_all(self, tagged):
        store, a, b, _ = tagged
        assert [r.id for r in store.search_by_tags(["food"], match_all=True)] == [a, b]

    def test_match_all_with_missing_tag_returns_none(self, tagged):
        store, *_ = tagged
        assert store.search_by_tags(["food", "drinks"], match_all=True) == []

    def test_match_any(self, tagged):
        store, a, _, c = tagged
        assert [r.id for r in store.search_by_tags(["italian", "programming"])] == [a, c]

    def test_no_tags(self, tagged):
        store, *_ = tagged
        assert store.search_by_tags([]) == []
        assert len(store.search_by_tags([], match_all=True)) == 3


class TestDateQueries:
    def test_get_by_date_range_is_inclusive_and_newest_first(self, store: MemoryStore):
        a = store.add("apple banana")  # START
        b = store.add("car truck")  # START + 1s
        store.add("airplane rocket")  # START + 2s

        results = store.get_by_date_range(START, START + timedelta(seconds=1))

        assert [r.id for r in results] == [b, a]

    def test_get_by_date_range_accepts_iso_strings(self, store: MemoryStore):
        a = store.add("apple banana")
        results = store.get_by_date_range("2024-01-01T12:00:00Z", "2024-01-01T12:00:00.500000Z")
        assert [r.id for r in results] == [a]

    def test_get_by_date_range_accepts_dates(self, store: MemoryStore):
        store.add("apple banana")
        assert store.get_by_date_range("2024-01-02", "2024-01-03") == []
        assert len(store.get_by_date_range("2024-01-01", "2024-01-02")) == 1

    def test_get_all_newest_first(self, store: MemoryStore):
        a = store.add("apple banana")
        b = store.add("car truck")
        c = store.add("airplane rocket")
        assert [r.id for r in store.get_all()] == [c, b, a]


class TestStats:
    def test_empty_store(self, make_store):
        stats = make_store(max_memories=50).get_stats()
        assert stats.count == 0
        assert stats.limit == 50
        assert stats.oldest_timestamp is None
        assert stats.newest_timestamp is None
        assert stats.distinct_tag_count == 0
        assert stats.average_content_length == 0

    def test_populated_store(self, store: MemoryStore):
        store.add("abcd", {"tags": ["x", "y"]})
        store.add("car truck", {"tags": ["y", "z"]})
        stats = store.get_stats()
        assert stats.count == 2
        assert stats.limit == 1000
        assert stats.oldest_timestamp == START
        assert stats.newest_timestamp == START + timedelta(seconds=1)
        assert stats.distinct_tag_count == 3
        assert stats.average_content_length == pytest.approx((4 + 9) / 2)
        assert stats.to_dict()["oldest_timestamp"] == _iso(START)


class TestExpiry:
    def test_sweep_is_noop_when_disabled(self, store: MemoryStore):
        store.add("ancient", {"timestamp": "2000-01-01T00:00:00Z"})
        assert store.cleanup_expired() == 0
        assert store.count() == 1

    def test_sweep_removes_old_memories(self, make_store):
        store = make_store(auto_expire=True, expire_after_days=30)
        old = store.add("ancient history", {"timestamp": _iso(START - timedelta(days=40))})
        fresh = store.add("recent news")

        assert store.cleanup_expired() == 1
        assert store.get(old) is None
        assert store.get(fresh) is not None

    def test_sweep_cutoff_is_strict(self):
        clock = FakeClock(step=timedelta(0))
        config = StoreConfig(auto_expire=True, expire_after_days=30)
        with MemoryStore(config, clock=clock) as store:
            cutoff = START - timedelta(days=30)
            at_cutoff = store.add("exactly at cutoff", {"timestamp": _iso(cutoff)})
            before = store.add(
                "just before cutoff",
                {"timestamp": _iso(cutoff - timedelta(microseconds=1))},
            )
            assert store.cleanup_expired() == 1
            assert store.get(at_cutoff) is not None
            assert store.get(before) is None

    def test_scheduler_only_runs_with_auto_expire(self, make_store):
        assert make_store().scheduler is None
        store = make_store(auto_expire=True)
        assert store.scheduler is not None
        assert store.scheduler.is_running

    def test_close_stops_scheduler(self, make_store):
        store = make_store(auto_expire=True)
        scheduler = store.scheduler
        store.close()
        assert store.scheduler is None
        assert not scheduler.is_running

    def test_background_sweep_expires_memories(self, make_store):
        store = make_store(auto_expire=True, expire_after_days=1, sweep_interval=0.02)
        store.add("ancient history", {"timestamp": "2000-01-01T00:00:00Z"})

        deadline = time.monotonic() + 5
        while store.count() and time.monotonic() < deadline:
            time.sleep(0.01)

        assert store.count() == 0


class TestSnapshots:
    def _populated(self, store: MemoryStore) -> MemoryStore:
        store.add("The user likes pizza and Italian food", {"category": "preferences", "tags": ["food"]})
        store.add("User mentioned they are learning Python", {"tags": ["programming"], "source": "chat"})
        store.add("apple banana")
        store.delete("mem_3")
        return store

    def test_export_structure(self, store: MemoryStore):
        self._populated(store)
        data = json.loads(store.export_snapshot())
        assert set(data) == {"memories", "config", "nextId", "exportDate"}
        assert data["nextId"] == 4
        assert [pair[0] for pair in data["memories"]] == ["mem_1", "mem_2"]
        memory_id, memory = data["memories"][0]
        assert memory["id"] == memory_id
        assert memory["tags"] == ["food"]
        assert memory["metadata"]["category"] == "preferences"
        assert data["config"]["maxMemories"] == 1000

    def test_round_trip_restores_equivalent_store(self, store: MemoryStore, clock):
        self._populated(store)
        with MemoryStore(clock=clock) as fresh:
            assert fresh.import_snapshot(store.export_snapshot()) is True

            assert fresh.next_id == store.next_id
            assert fresh.config == store.config
            originals = {r.id: r for r in store.get_all()}
            restored = {r.id: r for r in fresh.get_all()}
            assert restored.keys() == originals.keys()
            for memory_id, record in originals.items():
                assert restored[memory_id].content == record.content
                assert restored[memory_id].tags == record.tags
                assert restored[memory_id].metadata == record.metadata
                assert restored[memory_id].vector == record.vector

            # Numbering continues where the exported store left off.
            assert fresh.add("airplane rocket") == "mem_4"

    def test_import_replaces_existing_memories(self, store: MemoryStore, clock):
        self._populated(store)
        with MemoryStore(clock=clock) as other:
            other.add("car truck")
            other.add("airplane rocket")
            other.add("boat ship")
            assert other.import_snapshot(store.export_snapshot())
            assert other.count() == 2
            assert [r.content for r in other.search("truck")] == []

    def test_import_accepts_decoded_mapping(self, store: MemoryStore, clock):
        self._populated(store)
        with MemoryStore(clock=clock) as fresh:
            assert fresh.import_snapshot(json.loads(store.export_snapshot()))
            assert fresh.count() == 2

    def test_import_applies_snapshot_config(self, store: MemoryStore):
        snapshot = json.loads(store.export_snapshot())
        snapshot["config"] = {"maxMemories": 5, "similarityThreshold": 0.9}
        assert store.import_snapshot(snapshot)
        assert store.config.max_memories == 5
        assert store.config.similarity_threshold == 0.9
        assert store.config.expire_after_days == 30

    def test_import_reference_format(self, store: MemoryStore):
        snapshot = {
            "memories": [
                [
                    "mem_1",
                    {
                        "id": "mem_1",
                        "content": "The user likes pizza",
                        "metadata": {
                            "timestamp": "2024-03-01T10:00:00.000Z",
                            "category": "preferences",
                            "tags": ["food"],
                        },
                        "embeddings": None,
                        "tags": ["food"],
                    },
                ]
            ],
            "config": {
                "maxMemories": 100,
                "similarityThreshold": 0.6,
                "autoExpire": False,
                "expireAfterDays": 30,
            },
            "nextId": 2,
            "exportDate": "2024-03-01T10:00:01.000Z",
        }
        assert store.import_snapshot(json.dumps(snapshot))
        [result] = store.search("pizza")
        assert result.id == "mem_1"
        assert result.record.metadata.category == "preferences"
        assert store.next_id == 2

    def test_import_bumps_next_id_past_existing_ids(self, store: MemoryStore):
        snapshot = json.loads(store.export_snapshot())
        snapshot["memories"] = [
            ["mem_7", {"id": "mem_7", "content": "car truck", "metadata": {"timestamp": "2024-01-01"}}]
        ]
        snapshot["nextId"] = 2
        assert store.import_snapshot(snapshot)
        assert store.next_id == 8
        assert store.add("apple banana") == "mem_8"

    def test_import_ignores_non_ascii_digit_ids_for_numbering(self, store: MemoryStore):
        snapshot = json.dumps(
            {
                "memories": [
                    ["mem_²", {"id": "mem_²", "content": "car truck", "metadata": {"timestamp": "2024-01-01"}}]
                ],
                "nextId": 3,
            }
        )
        assert store.import_snapshot(snapshot) is True
        assert store.next_id == 3
        assert store.get("mem_²").content == "car truck"
        assert store.add("apple banana") == "mem_3"

    def test_import_without_next_id_defaults_to_one(self, store: MemoryStore):
        assert store.import_snapshot({"memories": []})
        assert store.next_id == 1
        assert store.count() == 0

    @pytest.mark.parametrize(
        "snapshot",
        [
            "{not json",
            "[]",
            {"config": {}},
            {"memories": "nope"},
            {"memories": [["mem_1"]]},
            {"memories": [["mem_1", "not a record"]]},
            {"memories": [["mem_2", {"id": "mem_1", "content": "x", "metadata": {"timestamp": "2024-01-01"}}]]},
            {
                "memories": [
                    ["mem_1", {"id": "mem_1", "content": "x", "metadata": {"timestamp": "2024-01-01"}}],
                    ["mem_1", {"id": "mem_1", "content": "y", "metadata": {"timestamp": "2024-01-01"}}],
                ]
            },
            {"memories": [], "nextId": "three"},
            {"memories": [], "nextId": -4},
            {"memories": [], "config": {"maxMemories": 0}},
            {"memories": [], "config": "big"},
            {"memories": [], "config": {"autoExpire": "false"}},
            {"memories": [], "config": {"autoExpire": True, "expireAfterDays": 1e300}},
            {"memories": [], "config": {"sweepInterval": float("inf")}},
        ],
    )
    def test_malformed_snapshot_leaves_store_untouched(self, store: MemoryStore, snapshot):
        self._populated(store)
        before = store.export_snapshot()
        config = store.config

        assert store.import_snapshot(snapshot) is False

        assert store.config == config
        assert store.next_id == 4
        assert [r.id for r in store.get_all()] == ["mem_2", "mem_1"]
        after = json.loads(store.export_snapshot())
        expected = json.loads(before)
        after.pop("exportDate")
        expected.pop("exportDate")
        assert after == expected

    def test_import_can_enable_and_disable_expiry(self, store: MemoryStore):
        assert store.scheduler is None
        assert store.import_snapshot({"memories": [], "config": {"autoExpire": True}})
        assert store.scheduler is not None and store.scheduler.is_running
        scheduler = store.scheduler
        assert store.import_snapshot({"memories": [], "config": {"autoExpire": False}})
        assert store.scheduler is None
        scheduler.stop()
        assert not scheduler.is_running


class TestRecordIsolation:
    def test_editing_a_fetched_record_does_not_change_the_store(self, store: MemoryStore):
        memory_id = store.add("apple banana", {"tags": ["fruit"]})
        record = store.get(memory_id)
        record.content = "car truck"
        record.add_tag("vehicle")

        assert store.search("car") == []
        assert [r.id for r in store.search("apple")] == [memory_id]
        assert store.get(memory_id).content == "apple banana"
        assert store.get(memory_id).tags == ["fruit"]
        assert store.search_by_tags(["vehicle"]) == []

    def test_query_results_are_copies(self, store: MemoryStore):
        memory_id = store.add("apple banana", {"tags": ["fruit"]})

        store.search("apple")[0].record.content = "car truck"
        store.get_all()[0].remove_tag("fruit")
        store.search_by_tags(["fruit"])[0].metadata.category = "changed"
        store.get_by_date_range(START, START + timedelta(days=1))[0].vector.clear()

        record = store.get(memory_id)
        assert record.content == "apple banana"
        assert record.tags == ["fruit"]
        assert record.metadata.category is None
        assert record.vector == vectorize("apple banana")

    def test_update_returns_a_copy(self, store: MemoryStore):
        memory_id = store.add("apple banana")
        updated = store.update(memory_id, "car truck")
        updated.content = "airplane rocket"

        assert [r.id for r in store.search("truck")] == [memory_id]
        assert store.search("rocket") == []


class TestConcurrency:
    def test_concurrent_adds_keep_ids_unique(self, make_store):
        store = make_store(max_memories=10_000)

        def worker(n: int) -> None:
            for i in range(50):
                store.add(f"worker{n} item{i} payload{n}x{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        records = store.get_all()
        assert len(records) == 200
        assert len({r.id for r in records}) == 200
        assert store.next_id == 201
