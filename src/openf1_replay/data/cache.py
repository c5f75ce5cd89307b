import logging
import os
import pickle
import tempfile
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple
from urllib.parse import quote

from .models import ResourceKind

logger = logging.getLogger(__name__)

CHUNK_STORE = "chunk_cache"
API_STORE = "api_cache"


class KeyValueStore(Protocol):
    """Persistent byte store the caches mirror into."""

    def get(self, store: str, key: str) -> Optional[bytes]: ...

    def put(self, store: str, key: str, value: bytes) -> None: ...

    def clear(self, store: str) -> None: ...


class FileKeyValueStore:
    """
    One directory per store, one file per key.

    Args:
        directory: Root folder. Defaults to '.openf1-cache'.
    """

    def __init__(self, directory: str = ".openf1-cache"):
        self.directory = directory

    def _store_dir(self, store: str) -> str:
        return os.path.join(self.directory, store)

    def _path(self, store: str, key: str) -> str:
        return os.path.join(self._store_dir(store), quote(key, safe="") + ".pkl")

    def get(self, store, key):
        path = self._path(store, key)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    def put(self, store, key, value):
        store_dir = self._store_dir(store)
        if not os.path.exists(store_dir):
            os.makedirs(store_dir, exist_ok=True)

        # write then rename so a crash never leaves half a file behind
        fd, tmp_path = tempfile.mkstemp(dir=store_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(value)
            os.replace(tmp_path, self._path(store, key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def clear(self, store):
        store_dir = self._store_dir(store)
        if not os.path.exists(store_dir):
            return
        for filename in os.listdir(store_dir):
            os.remove(os.path.join(store_dir, filename))


class PersistentMirror:
    """
    Fire-and-forget pickled view onto a KeyValueStore.

    Write failures are logged and swallowed; read failures count as misses.
    """

    def __init__(self, store: Optional[KeyValueStore], name: str):
        self.store = store
        self.name = name

    def load(self, key: str):
        if self.store is None:
            return None
        try:
            raw = self.store.get(self.name, key)
            if raw is None:
                return None
            return pickle.loads(raw)
        except Exception as e:
            logger.warning("Cache read failed for %s/%s: %s", self.name, key, e)
            return None

    def save(self, key: str, value):
        if self.store is None:
            return
        try:
            self.store.put(self.name, key, pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL))
        except Exception as e:
            logger.warning("Cache write failed for %s/%s: %s", self.name, key, e)

    def clear(self):
        if self.store is None:
            return
        try:
            self.store.clear(self.name)
        except Exception as e:
            logger.warning("Cache clear failed for %s: %s", self.name, e)


@dataclass(frozen=True)
class ChunkKey:
    """
    Identifies one chunk: resource, session, chunk index and chunk width.

    ``span`` is seconds for time-indexed resources and laps for lap chunks,
    so the key pins down the exact request range.
    """
    kind: ResourceKind
    session_id: int
    index: int
    span: float

    @property
    def signature(self) -> str:
        return f"{ResourceKind(self.kind).value}/{self.session_id}/{self.index}@{self.span:g}"


class ChunkCache:
    """
    Already-fetched chunks keyed by ChunkKey.

    Chunks are stored as tuples and never mutated. ``put`` overwrites, so a
    chunk fetched twice is still counted once in ``combined_view``.
    """

    def __init__(self, store: Optional[KeyValueStore] = None, store_name: str = CHUNK_STORE):
        self._chunks: Dict[ChunkKey, Tuple] = {}
        self._lock = threading.RLock()
        self._mirror = PersistentMirror(store, store_name)

    def __len__(self):
        with self._lock:
            return len(self._chunks)

    def has(self, key: ChunkKey) -> bool:
        with self._lock:
            if key in self._chunks:
                return True
        return self._promote(key) is not None

    def get(self, key: ChunkKey) -> List:
        with self._lock:
            chunk = self._chunks.get(key)
        if chunk is None:
            chunk = self._promote(key)
        return list(chunk) if chunk is not None else []

    def put(self, key: ChunkKey, samples) -> None:
        chunk = tuple(samples)
        with self._lock:
            self._chunks[key] = chunk
        self._mirror.save(key.signature, chunk)

    def _promote(self, key: ChunkKey) -> Optional[Tuple]:
        """Pull a chunk from the persistent store into memory."""
        stored = self._mirror.load(key.signature)
        if stored is None:
            return None
        chunk = tuple(stored)
        with self._lock:
            # a concurrent put wins over the stored copy
            return self._chunks.setdefault(key, chunk)

    def keys(self, kind: Optional[ResourceKind] = None, session_id: Optional[int] = None) -> List[ChunkKey]:
        with self._lock:
            keys = list(self._chunks)
        if kind is not None:
            keys = [k for k in keys if k.kind == kind]
        if session_id is not None:
            keys = [k for k in keys if k.session_id == session_id]
        return sorted(keys, key=lambda k: (k.session_id, k.index))

    def combined_view(self, kind: ResourceKind, session_id: Optional[int] = None) -> Tuple:
        """
        Snapshot of every loaded chunk for ``kind`` concatenated in ascending
        chunk index order, whatever order the chunks arrived in.
        """
        with self._lock:
            items = [(k, v) for k, v in self._chunks.items()
                     if k.kind == kind and (session_id is None or k.session_id == session_id)]
        items.sort(key=lambda item: (item[0].session_id, item[0].index))
        combined = []
        for _, chunk in items:
            combined.extend(chunk)
        return tuple(combined)

    def clear(self, persistent: bool = False) -> None:
        with self._lock:
            self._chunks.clear()
        if persistent:
            self._mirror.clear()
