"""
Unit tests for openf1_replay/data/cache.py
"""
from openf1_replay.data.cache import ChunkCache, ChunkKey, FileKeyValueStore, PersistentMirror
from openf1_replay.data.models import PositionRecord, ResourceKind

from conftest import MemoryStore, SESSION_KEY, SESSION_START


def key(index, kind=ResourceKind.POSITION, session=SESSION_KEY, span=300.0):
    return ChunkKey(kind, session, index, span)


def records(index, count=2):
    base = SESSION_START + index * 300
    return [PositionRecord(driver_number=d, timestamp=base + d, position=1) for d in range(1, count + 1)]


class TestChunkKey:

    def test_signature(self):
        assert ChunkKey(ResourceKind.LOCATION, 9161, 3, 300.0).signature == "location/9161/3@300"
        assert ChunkKey(ResourceKind.LAPS, 9161, 0, 10).signature == "laps/9161/0@10"

    def test_keys_with_different_span_differ(self):
        assert key(1, span=300.0) != key(1, span=120.0)


class TestChunkCache:

    def test_put_and_get(self, chunk_cache):
        chunk_cache.put(key(0), records(0))
        assert chunk_cache.has(key(0))
        assert chunk_cache.get(key(0)) == records(0)
        assert not chunk_cache.has(key(1))
        assert chunk_cache.get(key(1)) == []

    def test_put_is_idempotent(self, chunk_cache):
        chunk_cache.put(key(0), records(0))
        chunk_cache.put(key(0), records(0))
        assert len(chunk_cache) == 1
        assert len(chunk_cache.combined_view(ResourceKind.POSITION)) == 2

    def test_combined_view_ignores_arrival_order(self, chunk_cache):
        for index in (2, 0, 1):
            chunk_cache.put(key(index), records(index))
        combined = chunk_cache.combined_view(ResourceKind.POSITION, SESSION_KEY)
        assert list(combined) == records(0) + records(1) + records(2)

    def test_combined_view_filters_kind_and_session(self, chunk_cache):
        chunk_cache.put(key(0), records(0))
        chunk_cache.put(key(0, session=1), records(5))
        chunk_cache.put(key(0, kind=ResourceKind.LOCATION), ["loc"])
        assert list(chunk_cache.combined_view(ResourceKind.POSITION, SESSION_KEY)) == records(0)
        assert list(chunk_cache.combined_view(ResourceKind.LOCATION)) == ["loc"]

    def test_keys_sorted(self, chunk_cache):
        for index in (3, 1, 2):
            chunk_cache.put(key(index), [])
        assert [k.index for k in chunk_cache.keys(ResourceKind.POSITION, SESSION_KEY)] == [1, 2, 3]
        assert chunk_cache.keys(ResourceKind.LOCATION) == []

    def test_stored_chunks_are_not_aliased(self, chunk_cache):
        original = records(0)
        chunk_cache.put(key(0), original)
        original.append("mutated")
        fetched = chunk_cache.get(key(0))
        fetched.append("again")
        assert chunk_cache.get(key(0)) == records(0)

    def test_clear(self, chunk_cache):
        chunk_cache.put(key(0), records(0))
        chunk_cache.clear()
        assert len(chunk_cache) == 0
        assert not chunk_cache.has(key(0))


class TestPersistence:

    def test_chunks_survive_a_new_cache(self, memory_store):
        ChunkCache(memory_store).put(key(0), records(0))

        fresh = ChunkCache(memory_store)
        assert len(fresh) == 0
        assert fresh.has(key(0))
        assert fresh.get(key(0)) == records(0)
        # promoted into memory
        assert len(fresh) == 1

    def test_memory_clear_keeps_disk_copy(self, memory_store):
        cache = ChunkCache(memory_store)
        cache.put(key(0), records(0))
        cache.clear()
        assert cache.has(key(0))

    def test_persistent_clear(self, memory_store):
        cache = ChunkCache(memory_store)
        cache.put(key(0), records(0))
        cache.clear(persistent=True)
        assert not cache.has(key(0))

    def test_store_failures_are_swallowed(self):
        store = MemoryStore()
        store.broken = True
        cache = ChunkCache(store)
        cache.put(key(0), records(0))
        assert cache.get(key(0)) == records(0)
        assert not cache.has(key(1))
        cache.clear(persistent=True)

    def test_corrupt_entry_is_a_miss(self, memory_store):
        mirror = PersistentMirror(memory_store, "chunk_cache")
        memory_store.put("chunk_cache", "broken", b"not a pickle")
        assert mirror.load("broken") is None


class TestFileKeyValueStore:

    def test_round_trip_and_clear(self, tmp_path):
        store = FileKeyValueStore(str(tmp_path))
        assert store.get("chunks", "location/9161/0@300") is None
        store.put("chunks", "location/9161/0@300", b"payload")
        assert store.get("chunks", "location/9161/0@300") == b"payload"
        # keys are flattened into one directory per store
        assert len(list((tmp_path / "chunks").iterdir())) == 1

        store.clear("chunks")
        assert store.get("chunks", "location/9161/0@300") is None

    def test_overwrite(self, tmp_path):
        store = FileKeyValueStore(str(tmp_path))
        store.put("s", "k", b"one")
        store.put("s", "k", b"two")
        assert store.get("s", "k") == b"two"

    def test_clear_missing_store(self, tmp_path):
        FileKeyValueStore(str(tmp_path)).clear("never-written")

    def test_backs_a_chunk_cache(self, tmp_path):
        store = FileKeyValueStore(str(tmp_path))
        ChunkCache(store).put(key(4), records(4))
        assert ChunkCache(store).get(key(4)) == records(4)
