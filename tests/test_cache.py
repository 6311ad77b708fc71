"""Tests for the TTL cache stores and the PublicationRecord payload model."""

from __future__ import annotations

import json
import threading
from pathlib import Path

from citesof.cache import DEFAULT_TTL_SECONDS, LOCK_STRIPES, JsonFileCacheStore, MemoryCacheStore
from citesof.models import CitingRecord, PublicationRecord

from conftest import FakeClock


class PausingReadStore(MemoryCacheStore):
    """Blocks the first raw read made by the thread named "reader" until resumed."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.stale_read = threading.Event()
        self.resume = threading.Event()

    def _read_raw(self, key: str):
        entry = super()._read_raw(key)
        if threading.current_thread().name == "reader" and not self.stale_read.is_set():
            self.stale_read.set()
            self.resume.wait(5)
        return entry


class TestMergeOnWrite:

    def test_second_write_keeps_first_fields(self, cache: MemoryCacheStore) -> None:
        cache.update("k", {"a": 1})
        cache.update("k", {"b": 2})
        assert cache.get("k") == {"a": 1, "b": 2}

    def test_later_value_wins_for_same_field(self, cache: MemoryCacheStore) -> None:
        cache.update("k", {"title": "Old", "doi": "10.1/x"})
        cache.update("k", {"title": "New"})
        assert cache.get("k") == {"title": "New", "doi": "10.1/x"}

    def test_put_receives_current_payload(self, cache: MemoryCacheStore) -> None:
        cache.update("k", {"n": 1})
        seen = []

        def bump(current):
            seen.append(current)
            return {**current, "n": current["n"] + 1}

        assert cache.put("k", bump) == {"n": 2}
        assert seen == [{"n": 1}]

    def test_merge_record_preserves_citations_when_title_arrives(self, cache: MemoryCacheStore) -> None:
        cache.merge_record("10.1/a", PublicationRecord(cited_by=[CitingRecord(citing="10.1/x")]))
        cache.merge_record("10.1/a", PublicationRecord(title="A paper"))
        record = cache.get_record("10.1/a")
        assert record.title == "A paper"
        assert [r.citing for r in record.cited_by] == ["10.1/x"]

    def test_concurrent_updates_are_not_lost(self, cache: MemoryCacheStore) -> None:
        def writer(i: int) -> None:
            cache.update("shared", {f"field{i}": i})

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert cache.get("shared") == {f"field{i}": i for i in range(20)}

    def test_get_returns_a_copy(self, cache: MemoryCacheStore) -> None:
        cache.update("k", {"a": 1})
        cache.get("k")["a"] = 99
        assert cache.get("k") == {"a": 1}


class TestExpiry:

    def test_hit_just_before_ttl(self, cache: MemoryCacheStore, clock: FakeClock) -> None:
        cache.update("k", {"a": 1})
        clock.advance(DEFAULT_TTL_SECONDS - 0.001)
        assert cache.get("k") == {"a": 1}

    def test_miss_just_after_ttl(self, cache: MemoryCacheStore, clock: FakeClock) -> None:
        cache.update("k", {"a": 1})
        clock.advance(DEFAULT_TTL_SECONDS + 0.001)
        assert cache.get("k") is None

    def test_expired_entry_is_evicted(self, cache: MemoryCacheStore, clock: FakeClock) -> None:
        cache.update("k", {"a": 1})
        clock.advance(DEFAULT_TTL_SECONDS + 1)
        cache.get("k")
        assert len(cache) == 0

    def test_write_after_expiry_starts_fresh(self, cache: MemoryCacheStore, clock: FakeClock) -> None:
        cache.update("k", {"a": 1})
        clock.advance(DEFAULT_TTL_SECONDS + 1)
        cache.update("k", {"b": 2})
        assert cache.get("k") == {"b": 2}

    def test_write_refreshes_timestamp(self, cache: MemoryCacheStore, clock: FakeClock) -> None:
        cache.update("k", {"a": 1})
        clock.advance(DEFAULT_TTL_SECONDS - 10)
        cache.update("k", {"b": 2})
        clock.advance(20)
        assert cache.get("k") == {"a": 1, "b": 2}

    def test_stale_reader_does_not_evict_a_fresh_write(self, clock: FakeClock) -> None:
        store = PausingReadStore(clock=clock)
        store.update("k", {"a": 1})
        clock.advance(DEFAULT_TTL_SECONDS + 1)

        seen = []
        reader = threading.Thread(target=lambda: seen.append(store.get("k")), name="reader")
        reader.start()
        assert store.stale_read.wait(5)

        # The reader holds the expired entry; a writer refreshes the key meanwhile
        store.update("k", {"b": 2})
        store.resume.set()
        reader.join(5)

        assert seen == [None]
        assert store.get("k") == {"b": 2}


class TestKeyLocks:

    def test_lock_pool_is_bounded(self, cache: MemoryCacheStore) -> None:
        locks = {id(cache._lock_for(f"10.1/paper{i}")) for i in range(1000)}
        assert len(locks) <= LOCK_STRIPES

    def test_same_key_same_lock(self, cache: MemoryCacheStore) -> None:
        assert cache._lock_for("10.1/a") is cache._lock_for("10.1/a")

    def test_writes_to_many_keys_do_not_grow_lock_table(self, cache: MemoryCacheStore) -> None:
        for i in range(500):
            cache.update(f"title:paper {i}", {"doi": f"10.1/{i}"})
        assert len(cache._key_locks) == LOCK_STRIPES


class TestUnexpectedShapes:

    def test_non_dict_entry_is_a_miss(self, cache: MemoryCacheStore) -> None:
        cache._entries["k"] = "10.1/x"
        assert cache.get("k") is None

    def test_entry_without_timestamp_is_a_miss(self, cache: MemoryCacheStore) -> None:
        cache._entries["k"] = {"data": {"a": 1}}
        assert cache.get("k") is None

    def test_record_ignores_wrongly_typed_fields(self) -> None:
        record = PublicationRecord.from_payload({
            "title": ["not", "a", "string"],
            "cited-by": [{"citing": "10.1/x"}, 42, {"no": "citing"}, "10.1/y"],
            "citationCount": "12",
            "publishedDate": 2020,
            "unknown": True,
        })
        assert record.title is None
        assert [r.citing for r in record.cited_by] == ["10.1/x", "10.1/y"]
        assert record.citation_count is None
        assert record.published_date == "2020"

    def test_record_from_non_dict_is_empty(self) -> None:
        assert PublicationRecord.from_payload(None) == PublicationRecord()

    def test_record_round_trip_uses_payload_key_names(self) -> None:
        payload = PublicationRecord(doi="10.1/a", published_date="2020", citation_count=3,
                                    cited_by=[]).to_payload()
        assert payload == {"doi": "10.1/a", "publishedDate": "2020", "citationCount": 3, "cited-by": []}


class TestJsonFileCacheStore:

    def test_persists_between_instances(self, tmp_path: Path, clock: FakeClock) -> None:
        path = tmp_path / "cache.json"
        store = JsonFileCacheStore(path, clock=clock)
        store.update("10.1/a", {"title": "T"})
        store.flush()
        assert JsonFileCacheStore(path, clock=clock).get("10.1/a") == {"title": "T"}

    def test_serialized_layout(self, tmp_path: Path, clock: FakeClock) -> None:
        path = tmp_path / "cache.json"
        store = JsonFileCacheStore(path, clock=clock)
        store.update("k", {"a": 1})
        store.flush()
        stored = json.loads(path.read_text(encoding="utf-8"))
        assert stored == {"k": {"data": {"a": 1}, "timestamp": round(clock.now * 1000)}}

    def test_writes_are_buffered_until_flush(self, tmp_path: Path, clock: FakeClock) -> None:
        path = tmp_path / "cache.json"
        store = JsonFileCacheStore(path, clock=clock)
        store.update("a", {"x": 1})
        store.update("b", {"x": 2})
        assert store.dirty
        assert not path.exists()
        store.flush()
        assert not store.dirty
        assert set(json.loads(path.read_text(encoding="utf-8"))) == {"a", "b"}

    def test_flush_without_changes_does_not_write(self, tmp_path: Path, clock: FakeClock) -> None:
        path = tmp_path / "cache.json"
        store = JsonFileCacheStore(path, clock=clock)
        store.get("k")
        store.flush()
        assert not path.exists()

    def test_corrupt_file_is_treated_as_empty(self, tmp_path: Path, clock: FakeClock) -> None:
        path = tmp_path / "cache.json"
        path.write_text("{not json", encoding="utf-8")
        store = JsonFileCacheStore(path, clock=clock)
        assert store.get("k") is None
        store.update("k", {"a": 1})
        assert store.get("k") == {"a": 1}

    def test_write_failure_is_not_fatal(self, tmp_path: Path, clock: FakeClock) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        store = JsonFileCacheStore(blocker / "cache.json", clock=clock)
        assert store.update("k", {"a": 1}) == {"a": 1}
        store.flush()
        assert store.dirty
        assert store.get("k") == {"a": 1}

    def test_clear_and_evict(self, tmp_path: Path, clock: FakeClock) -> None:
        path = tmp_path / "cache.json"
        store = JsonFileCacheStore(path, clock=clock)
        store.update("a", {"x": 1})
        store.update("b", {"x": 2})
        store.evict("a")
        assert store.get("a") is None
        assert store.get("b") == {"x": 2}
        store.clear()
        assert store.get("b") is None
        store.flush()
        assert json.loads(path.read_text(encoding="utf-8")) == {}
