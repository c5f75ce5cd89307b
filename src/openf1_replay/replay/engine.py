"""
Composition root wiring the fetcher, caches, loaders, clock, interpolator
and standings into one replay session.

This is the surface a renderer consumes: observable ``current_time``,
``speed_multiplier`` and ``playing``, plus the start/pause/stop/seek/
set_speed/change_session commands.
"""
import logging
import time
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..config import ReplayConfig
from ..data.api import OpenF1Client
from ..data.cache import ChunkCache, FileKeyValueStore, KeyValueStore
from ..data.fetcher import HttpTransport, RateLimitedFetcher
from ..data.loader import ChunkedTelemetryLoader, LapChunkLoader, SessionEpoch
from ..data.models import DriverInfo, ResourceKind, SessionInfo
from ..errors import NetworkError, ReplayError, SessionMismatchError
from ..events import EventBus, LoadingTracker, SessionChanged
from .clock import SimulationClock, SimulationState
from .interpolation import PositionInterpolator, SampleTracks, latest_at
from .standings import StandingsAggregator, StandingsTable

logger = logging.getLogger(__name__)


class ReplayEngine:
    """
    One active replay session.

    Every collaborator can be passed in; anything left out is built from
    ``config``.
    """

    def __init__(self, config: Optional[ReplayConfig] = None, transport: Optional[Callable] = None,
                 fetcher: Optional[RateLimitedFetcher] = None, api: Optional[OpenF1Client] = None,
                 cache: Optional[ChunkCache] = None, store: Optional[KeyValueStore] = None,
                 bus: Optional[EventBus] = None, time_source: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or ReplayConfig()
        self.bus = bus or EventBus(self.config.events.queue_size)
        self.loading = LoadingTracker(self.bus)
        self.epoch = SessionEpoch()

        if store is None and self.config.cache.enabled:
            store = FileKeyValueStore(self.config.cache.directory)
        self.store = store

        if fetcher is None:
            if transport is None:
                transport = HttpTransport(self.config.api.base_url, self.config.api.timeout)
            fetcher = RateLimitedFetcher(transport, self.config.api.min_interval)
        self.fetcher = fetcher
        self.api = api or OpenF1Client(fetcher, store)
        self.cache = cache or ChunkCache(store)

        loader_cfg = self.config.loader
        self.loaders: Dict[ResourceKind, ChunkedTelemetryLoader] = {
            ResourceKind(name): ChunkedTelemetryLoader(
                self.api, self.cache, ResourceKind(name), self.epoch,
                chunk_duration=loader_cfg.chunk_seconds,
                prefetch_threshold=loader_cfg.prefetch_threshold,
                bus=self.bus, loading=self.loading,
            )
            for name in loader_cfg.resources
        }
        self.lap_loader: Optional[LapChunkLoader] = None
        if self.config.laps.enabled:
            self.lap_loader = LapChunkLoader(
                self.api, self.cache, self.epoch,
                chunk_size=self.config.laps.chunk_size,
                prefetch_threshold=self.config.laps.prefetch_threshold,
                bus=self.bus, loading=self.loading,
            )

        self.interpolator = PositionInterpolator(interpolate=self.config.playback.interpolate)
        self.standings = StandingsAggregator(
            window=self.config.standings.window_seconds,
            grid_scan=self.config.standings.grid_scan,
            bus=self.bus,
        )

        self._time_source = time_source
        self._sleep = sleep
        self.clock: Optional[SimulationClock] = None
        self.session: Optional[SessionInfo] = None
        self.session_id: Optional[int] = None
        self.drivers: Dict[int, DriverInfo] = {}
        self._merged_positions: Set[int] = set()
        self._views: Dict[ResourceKind, Tuple[tuple, object]] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # Observable state

    @property
    def current_time(self) -> Optional[float]:
        return self.clock.current_time if self.clock else None

    @property
    def speed_multiplier(self) -> float:
        return self.clock.speed_multiplier if self.clock else self.config.playback.speed

    @property
    def playing(self) -> bool:
        return self.clock.playing if self.clock else False

    def state(self) -> Optional[SimulationState]:
        return self.clock.snapshot() if self.clock else None

    @property
    def is_loading(self) -> bool:
        return self.loading.is_loading

    def _require_clock(self) -> SimulationClock:
        if self.clock is None:
            raise ReplayError("no session loaded, call change_session() first")
        return self.clock

    # Commands

    def change_session(self, session_id: int, timeout: Optional[float] = None) -> SessionInfo:
        """
        Switch to another session.

        Everything belonging to the previous session is dropped, and
        anything still in flight for it is rejected when it lands. Blocks
        until the first chunk of every resource has arrived (or failed).
        """
        epoch = self.epoch.advance()
        logger.info("Changing session to %s (epoch %d)", session_id, epoch)

        if self.clock is not None:
            self.clock.stop()
        # loaders first: a reset waits for any completion holding the loader lock
        for loader in self.loaders.values():
            loader.reset()
        if self.lap_loader is not None:
            self.lap_loader.reset()
        self.cache.clear()
        self.standings.reset()
        self.loading.clear()
        self._merged_positions.clear()
        self._views.clear()
        self.drivers = {}
        self.session = None
        self.session_id = session_id

        info = self.api.get_session(session_id, timeout=timeout)
        try:
            drivers = self.api.get_drivers(session_id, timeout=timeout)
        except NetworkError as e:
            logger.warning("Driver list unavailable for session %s: %s", session_id, e)
            drivers = []

        if self.clock is None:
            self.clock = SimulationClock(info.date_start, info.date_end, speed=self.config.playback.speed,
                                         time_source=self._time_source, bus=self.bus)
        else:
            self.clock.reset(info.date_start, info.date_end)

        initial: List[Tuple[str, Future]] = []
        for kind, loader in self.loaders.items():
            loader.open_session(session_id, timeout=timeout)
            initial.append((kind.value, loader.load_chunk(0)))
        if self.lap_loader is not None:
            self.lap_loader.open_session(session_id)
            initial.append((ResourceKind.LAPS.value, self.lap_loader.load_chunk(0)))

        for name, future in initial:
            try:
                future.result(timeout=timeout)
            except SessionMismatchError:
                logger.debug("Session %s superseded while loading %s", session_id, name)
                return info
            except NetworkError as e:
                # playback goes on, the chunk is retried on the next explicit access
                logger.warning("Initial %s chunk failed for session %s: %s", name, session_id, e)

        self.session = info
        self.drivers = {d.driver_number: d for d in drivers}
        self.standings.load(self._position_loader().samples(), drivers)
        self._merged_positions = set(self._position_loader().loaded_indices())

        self.bus.publish(SessionChanged(session_id, epoch))
        logger.info("Session ready: %s, %d drivers", info, len(self.standings.table or ()))
        return info

    def start(self):
        self._require_clock().start()

    def pause(self):
        self._require_clock().pause()

    def toggle(self):
        self._require_clock().toggle()

    def stop(self):
        self._require_clock().stop()
        self.standings.reset_to_grid()

    def seek(self, t: float) -> float:
        t = self._require_clock().seek(t)
        for loader in self.loaders.values():
            loader.on_seek(t)
            loader.on_tick(t)
        if self.lap_loader is not None:
            self.lap_loader.on_seek(t)
        self._merge_positions()
        self.standings.update(t)
        self._catch_up_laps(t)
        return t

    def set_speed(self, speed: float):
        self._require_clock().set_speed(speed)

    def tick(self, real_delta: Optional[float] = None) -> Optional[float]:
        """
        Advance one frame: move the clock, schedule chunk loads, rebuild
        standings. Never waits on the network.
        """
        if self.clock is None or self.session is None:
            return None
        t = self.clock.tick(real_delta)
        for loader in self.loaders.values():
            loader.on_tick(t)
        self._merge_positions()
        self.standings.update(t)
        if self.lap_loader is not None:
            self.lap_loader.on_leader_lap(self.leader_lap(t))
        self._catch_up_laps(t)
        return t

    # Queries

    def _position_loader(self) -> ChunkedTelemetryLoader:
        return self.loaders[ResourceKind.POSITION]

    def _merge_positions(self):
        loader = self._position_loader()
        for key in self.cache.keys(ResourceKind.POSITION, self.session_id):
            if key.index not in self._merged_positions and key.span == loader.span:
                self.standings.extend(self.cache.get(key))
                self._merged_positions.add(key.index)

    def _view(self, kind: ResourceKind, build):
        """``build(samples)``, rebuilt only when the set of loaded chunks changes."""
        loader = self.loaders.get(kind)
        if loader is None:
            raise ReplayError(f"{kind.value} is not loaded, add it to loader.resources")
        version = (self.session_id, tuple(loader.loaded_indices()))
        cached = self._views.get(kind)
        if cached is None or cached[0] != version:
            cached = (version, build(loader.samples()))
            self._views[kind] = cached
        return cached[1]

    def _sample_tracks(self, kind: ResourceKind) -> SampleTracks:
        return self._view(kind, lambda samples: SampleTracks.from_samples(samples, self.interpolator))

    def _catch_up_laps(self, t: float):
        if self.lap_loader is None:
            return
        leader = self.standings.leader()
        if leader is not None:
            self.lap_loader.catch_up(leader, t)

    def _at(self, t: Optional[float]) -> float:
        return self._require_clock().current_time if t is None else t

    def positions_at(self, t: Optional[float] = None) -> Dict:
        """Where every car is at ``t`` (defaults to the current time)."""
        return self._sample_tracks(ResourceKind.LOCATION).positions_at(self._at(t))

    def car_data_at(self, t: Optional[float] = None) -> Dict:
        return self._sample_tracks(ResourceKind.CAR_DATA).latest_at(self._at(t))

    def weather_at(self, t: Optional[float] = None):
        if ResourceKind.WEATHER not in self.loaders:
            return None
        return latest_at(self._view(ResourceKind.WEATHER, tuple), self._at(t))

    @property
    def table(self) -> Optional[StandingsTable]:
        return self.standings.table

    def leader_lap(self, t: Optional[float] = None) -> int:
        leader = self.standings.leader()
        if leader is None or self.lap_loader is None:
            return 0
        return self.lap_loader.lap_at(leader, self._at(t))

    def position_frame(self):
        table = self.standings.table
        if table is None:
            return None
        return table.to_frame(self.drivers)

    # Loop

    def run(self, fps: Optional[int] = None, duration: Optional[float] = None,
            on_frame: Optional[Callable[["ReplayEngine"], None]] = None):
        """
        Play headless until the session ends, ``duration`` wall seconds pass
        or the clock is paused/stopped from ``on_frame``.
        """
        fps = fps or self.config.playback.fps
        frame_time = 1.0 / fps
        self.start()
        started = self._time_source()
        while self.playing:
            self.tick()
            if on_frame is not None:
                on_frame(self)
            if duration is not None and self._time_source() - started >= duration:
                self.pause()
                break
            self._sleep(frame_time)

    def close(self):
        self.fetcher.close(wait=False)
