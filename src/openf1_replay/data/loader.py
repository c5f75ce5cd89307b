"""
Progressive, chunked loading of session telemetry.

A session is cut into fixed-width chunks (minutes of session time for the
time-indexed resources, lap-number ranges for laps). Chunk 0 is loaded up
front; later chunks are fetched in the background once playback gets close
to the end of the current one. Concurrent requests for the same chunk share
one in-flight Future, and results that arrive after a session change are
discarded.
"""
import logging
import math
import threading
from concurrent.futures import Future
from typing import Dict, List, Optional, Set, Tuple

from ..errors import ConfigError, ReplayError, SessionMismatchError
from ..events import ChunkFailed, ChunkLoaded, EventBus, LoadingTracker
from .api import OpenF1Client
from .cache import ChunkCache, ChunkKey
from .models import LapRecord, ResourceKind

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_DURATION = 300.0
DEFAULT_PREFETCH_THRESHOLD = 0.8
DEFAULT_LAP_CHUNK_SIZE = 10
DEFAULT_LAP_PREFETCH_THRESHOLD = 0.7


class SessionEpoch:
    """Counter bumped on every session change; async results carry the value they started with."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> int:
        with self._lock:
            return self._value

    def advance(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def is_current(self, epoch: int) -> bool:
        return epoch == self.current


class ChunkLoader:
    """
    Shared chunk bookkeeping: cache short-circuit, in-flight sharing,
    stale-result rejection and failure tracking. Subclasses decide how a
    chunk index turns into a request.
    """

    def __init__(self, api: OpenF1Client, cache: ChunkCache, kind: ResourceKind, epoch: SessionEpoch,
                 span: float, prefetch_threshold: float, bus: Optional[EventBus] = None,
                 loading: Optional[LoadingTracker] = None):
        if span <= 0:
            raise ConfigError("chunk span must be positive")
        if not 0 < prefetch_threshold <= 1:
            raise ConfigError("prefetch threshold must be in (0, 1]")
        self.api = api
        self.cache = cache
        self.kind = ResourceKind(kind)
        self.epoch = epoch
        self.span = span
        self.prefetch_threshold = prefetch_threshold
        self.bus = bus
        self.loading = loading
        self.session_id: Optional[int] = None
        self._in_flight: Dict[int, Future] = {}
        self._failed: Set[int] = set()
        self._lock = threading.RLock()

    def __repr__(self):
        return f"<{type(self).__name__} {self.kind.value} session={self.session_id}>"

    def key(self, index: int) -> ChunkKey:
        return ChunkKey(self.kind, self.session_id, index, self.span)

    def is_valid_index(self, index: int) -> bool:
        return index >= 0

    def is_loaded(self, index: int) -> bool:
        return self.session_id is not None and self.cache.has(self.key(index))

    def is_in_flight(self, index: int) -> bool:
        with self._lock:
            return index in self._in_flight

    def has_failed(self, index: int) -> bool:
        with self._lock:
            return index in self._failed

    def loaded_indices(self) -> List[int]:
        return [k.index for k in self.cache.keys(self.kind, self.session_id) if k.span == self.span]

    def _needs_load(self, index: int) -> bool:
        # cheap in-memory checks first, the cache may fall through to disk
        with self._lock:
            if index in self._failed or index in self._in_flight:
                return False
        return self.is_valid_index(index) and not self.is_loaded(index)

    def _request(self, index: int) -> Future:
        raise NotImplementedError

    def load_chunk(self, index: int, silent: bool = False) -> Future:
        """
        Load chunk ``index``, or attach to the load already in flight.

        Returns a Future resolving to the chunk's records. A cached chunk
        resolves immediately without touching the network. ``silent``
        marks background prefetches, which log quietly and do not open a
        loading block.
        """
        with self._lock:
            if self.session_id is None:
                raise ReplayError(f"{self!r} has no open session")
            if not self.is_valid_index(index):
                raise IndexError(f"chunk {index} is outside the session")

            existing = self._in_flight.get(index)
            if existing is not None:
                return existing

            key = self.key(index)
            cached = self.cache.get(key) if self.cache.has(key) else None
            if cached is None:
                epoch = self.epoch.current
                self._failed.discard(index)
                # block names are unique per epoch
                block = f"{self.kind.value}/{self.session_id}/{index}#{epoch}"
                if silent:
                    logger.debug("Prefetching %s chunk %d", self.kind.value, index)
                else:
                    logger.info("Loading %s chunk %d for session %s", self.kind.value, index, self.session_id)
                    if self.loading is not None:
                        self.loading.start_block(block)

                future = Future()
                future.set_running_or_notify_cancel()
                self._in_flight[index] = future
                try:
                    request = self._request(index)
                except Exception:
                    del self._in_flight[index]
                    if not silent and self.loading is not None:
                        self.loading.end_block(block)
                    raise

        if cached is not None:
            logger.debug("Serving %s chunk %d from cache", self.kind.value, index)
            if self.bus is not None:
                self.bus.publish(ChunkLoaded(key.kind, key.session_id, index, len(cached), silent, from_cache=True))
            done = Future()
            done.set_result(cached)
            return done

        request.add_done_callback(
            lambda f: self._complete(f, future, key, epoch, silent, block)
        )
        return future

    def _complete(self, request: Future, future: Future, key: ChunkKey, epoch: int, silent: bool, block: str):
        index = key.index
        error = request.exception()
        samples = None
        with self._lock:
            # store before leaving the in-flight map so on_tick never sees a gap
            stale = not self.epoch.is_current(epoch)
            if not stale:
                if error is None:
                    samples = request.result()
                    self.cache.put(key, samples)
                elif self.session_id == key.session_id:
                    self._failed.add(index)
            if self._in_flight.get(index) is future:
                del self._in_flight[index]
        if not silent and self.loading is not None:
            self.loading.end_block(block)

        if stale:
            logger.debug("Discarding %s chunk %d from superseded session %s", key.kind.value, index, key.session_id)
            future.set_exception(SessionMismatchError(self.epoch.current, epoch))
            return

        if error is not None:
            logger.warning("Failed to load %s chunk %d: %s", key.kind.value, index, error)
            if self.bus is not None:
                self.bus.publish(ChunkFailed(key.kind, key.session_id, index, str(error), silent))
            future.set_exception(error)
            return

        logger.log(logging.DEBUG if silent else logging.INFO,
                   "Loaded %s chunk %d (%d records)", key.kind.value, index, len(samples))
        if self.bus is not None:
            self.bus.publish(ChunkLoaded(key.kind, key.session_id, index, len(samples), silent))
        future.set_result(list(samples))

    def on_seek(self, t: float):
        """Failed chunks get another chance once playback re-enters them."""
        with self._lock:
            self._failed.clear()

    def reload(self, index: int) -> Future:
        """Explicitly retry a chunk, including one that failed before."""
        with self._lock:
            self._failed.discard(index)
        return self.load_chunk(index)

    def ensure_initial(self, timeout: Optional[float] = None) -> List:
        """Load chunk 0 and block until it arrives."""
        return self.load_chunk(0).result(timeout=timeout)

    def reset(self):
        """Forget the current session. In-flight results will be rejected by epoch."""
        with self._lock:
            self._in_flight.clear()
            self._failed.clear()
            self.session_id = None


class ChunkedTelemetryLoader(ChunkLoader):
    """
    Loads a time-indexed resource in chunks of ``chunk_duration`` seconds.

    Chunk ``i`` covers ``[session_start + i*D, session_start + (i+1)*D)``.
    """

    def __init__(self, api: OpenF1Client, cache: ChunkCache, kind: ResourceKind, epoch: SessionEpoch,
                 chunk_duration: float = DEFAULT_CHUNK_DURATION,
                 prefetch_threshold: float = DEFAULT_PREFETCH_THRESHOLD,
                 bus: Optional[EventBus] = None, loading: Optional[LoadingTracker] = None):
        if not ResourceKind(kind).time_indexed:
            raise ConfigError(f"{ResourceKind(kind).value} is not time-indexed")
        super().__init__(api, cache, kind, epoch, chunk_duration, prefetch_threshold, bus, loading)
        self.session_start: Optional[float] = None
        self.session_end: Optional[float] = None

    @property
    def chunk_duration(self) -> float:
        return self.span

    def open_session(self, session_id: int, timeout: Optional[float] = None):
        """Resolve the session's time bounds and fix the chunk grid."""
        info = self.api.get_session(session_id, timeout=timeout)
        with self._lock:
            self.session_id = session_id
            self.session_start = info.date_start
            self.session_end = info.date_end
            self._in_flight.clear()
            self._failed.clear()
        return info

    @property
    def chunk_count(self) -> int:
        if self.session_start is None:
            return 0
        return max(1, math.ceil((self.session_end - self.session_start) / self.span))

    def is_valid_index(self, index: int) -> bool:
        return 0 <= index < self.chunk_count

    def chunk_bounds(self, index: int) -> Tuple[float, float]:
        start = self.session_start + index * self.span
        return start, start + self.span

    def progress_at(self, t: float) -> Tuple[int, float]:
        """(current chunk index, fraction of that chunk already played)."""
        elapsed = max(0.0, t - self.session_start)
        return int(elapsed // self.span), (elapsed % self.span) / self.span

    def _request(self, index: int) -> Future:
        start, end = self.chunk_bounds(index)
        return self.api.fetch_time_range(self.kind, self.session_id, start, end)

    def on_tick(self, t: float) -> Optional[Future]:
        """
        Start whatever background loads time ``t`` calls for.

        The current chunk is loaded if it is missing (e.g. after a seek) and
        the next one once progress reaches the prefetch threshold. Never
        blocks. Returns the Future of the last load started, if any.
        """
        if self.session_id is None:
            return None
        current, progress = self.progress_at(t)
        if current >= self.chunk_count:
            return None

        started = None
        if self._needs_load(current):
            started = self.load_chunk(current, silent=True)
        if progress >= self.prefetch_threshold and self._needs_load(current + 1):
            started = self.load_chunk(current + 1, silent=True)
        return started

    def samples(self):
        if self.session_id is None:
            return ()
        return self.cache.combined_view(self.kind, self.session_id)

    def reset(self):
        super().reset()
        with self._lock:
            self.session_start = None
            self.session_end = None


class LapChunkLoader(ChunkLoader):
    """
    Loads lap records in lap-number ranges of ``chunk_size``.

    Chunk 0 holds laps 1..W, chunk 1 laps W+1..2W and so on. The next chunk
    is prefetched when the race leader gets ``prefetch_threshold`` of the
    way through the current range.
    """

    def __init__(self, api: OpenF1Client, cache: ChunkCache, epoch: SessionEpoch,
                 chunk_size: int = DEFAULT_LAP_CHUNK_SIZE,
                 prefetch_threshold: float = DEFAULT_LAP_PREFETCH_THRESHOLD,
                 bus: Optional[EventBus] = None, loading: Optional[LoadingTracker] = None):
        super().__init__(api, cache, ResourceKind.LAPS, epoch, int(chunk_size), prefetch_threshold, bus, loading)
        self._records: Tuple[Optional[tuple], List[LapRecord]] = (None, [])

    @property
    def chunk_size(self) -> int:
        return int(self.span)

    def open_session(self, session_id: int):
        with self._lock:
            self.session_id = session_id
            self._in_flight.clear()
            self._failed.clear()

    def chunk_laps(self, index: int) -> Tuple[int, int]:
        """(first lap, end lap exclusive) for a chunk."""
        first = index * self.chunk_size + 1
        return first, first + self.chunk_size

    def chunk_index_for_lap(self, lap: int) -> int:
        return max(0, (lap - 1) // self.chunk_size)

    def _request(self, index: int) -> Future:
        first, end = self.chunk_laps(index)
        return self.api.fetch_lap_range(self.session_id, first, end)

    def should_prefetch(self, leader_lap: int) -> bool:
        if self.session_id is None or leader_lap <= 0:
            return False
        current = self.chunk_index_for_lap(leader_lap)
        chunk_start = current * self.chunk_size + 1
        progress = (leader_lap - chunk_start + 1) / self.chunk_size
        return progress >= self.prefetch_threshold and self._needs_load(current + 1)

    def on_leader_lap(self, leader_lap: int) -> Optional[Future]:
        if self.should_prefetch(leader_lap):
            return self.load_chunk(self.chunk_index_for_lap(leader_lap) + 1, silent=True)
        return None

    def catch_up(self, driver_number: int, t: float) -> Optional[Future]:
        """
        Request the chunk after the highest loaded one while the driver has
        already started its last lap by ``t``.

        Each chunk that lands triggers the next check, so after a seek the
        loaded range walks forward until it covers ``t``. Never blocks.
        """
        if self.session_id is None:
            return None
        loaded = self.loaded_indices()
        if not loaded:
            return None
        top = max(loaded)
        if self.lap_at(driver_number, t) < self.chunk_laps(top)[1] - 1:
            return None
        if not self._needs_load(top + 1):
            return None

        future = self.load_chunk(top + 1, silent=True)

        def _next(f: Future):
            if not f.cancelled() and f.exception() is None:
                self.catch_up(driver_number, t)

        future.add_done_callback(_next)
        return future

    def records(self) -> List[LapRecord]:
        if self.session_id is None:
            return []
        version = (self.session_id, tuple(self.loaded_indices()))
        with self._lock:
            if self._records[0] == version:
                return self._records[1]
        records = sorted(self.cache.combined_view(self.kind, self.session_id),
                         key=lambda r: (r.lap_number, r.driver_number))
        with self._lock:
            self._records = (version, records)
        return records

    def lap_at(self, driver_number: int, t: float) -> int:
        """Highest loaded lap the driver had started by time ``t`` (0 if none)."""
        laps = [r.lap_number for r in self.records()
                if r.driver_number == driver_number and r.date_start is not None and r.date_start <= t]
        return max(laps, default=0)

    def reset(self):
        super().reset()
        with self._lock:
            self._records = (None, [])
