"""OpenF1 REST client built on top of the rate-limited fetcher."""
import logging
import threading
from concurrent.futures import Future
from typing import Dict, List, Optional
from urllib.parse import quote

from ..errors import RecordError
from ..lib.time import iso_timestamp
from .cache import API_STORE, KeyValueStore, PersistentMirror
from .fetcher import RateLimitedFetcher
from .models import DriverInfo, LapRecord, ResourceKind, SessionInfo, parse_records, parse_rows

logger = logging.getLogger(__name__)


def _encode_time(timestamp: float) -> str:
    return quote(iso_timestamp(timestamp), safe="")


def session_path(session_key: int) -> str:
    return f"sessions?session_key={session_key}"


def drivers_path(session_key: int) -> str:
    return f"drivers?session_key={session_key}"


def time_range_path(kind: ResourceKind, session_key: int, start: float, end: float,
                    driver_number: Optional[int] = None) -> str:
    """Query for ``kind`` rows with start <= date < end."""
    kind = ResourceKind(kind)
    if not kind.time_indexed:
        raise ValueError(f"{kind.value} is not a time-indexed resource")
    path = f"{kind.value}?session_key={session_key}"
    if driver_number is not None:
        path += f"&driver_number={driver_number}"
    return path + f"&date%3E={_encode_time(start)}&date%3C{_encode_time(end)}"


def lap_range_path(session_key: int, first_lap: int, end_lap: int) -> str:
    """Query for laps with first_lap <= lap_number < end_lap."""
    return f"laps?session_key={session_key}&lap_number%3E={first_lap}&lap_number%3C{end_lap}"


def _decode_session(payload) -> SessionInfo:
    sessions = parse_rows(SessionInfo, payload)
    if not sessions:
        raise RecordError("session not found")
    return sessions[0]


def _decode_drivers(payload) -> List[DriverInfo]:
    # the API repeats a driver once per meeting update, keep the last row
    drivers: Dict[int, DriverInfo] = {}
    for driver in parse_rows(DriverInfo, payload):
        drivers[driver.driver_number] = driver
    return sorted(drivers.values(), key=lambda d: d.driver_number)


class OpenF1Client:
    """
    Typed access to the OpenF1 resources the replay needs.

    Session and driver lookups are memoised by request path, in memory and in
    the optional persistent store, so every loader can ask for them without
    costing extra requests.
    """

    def __init__(self, fetcher: RateLimitedFetcher, store: Optional[KeyValueStore] = None):
        self.fetcher = fetcher
        self._memo: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._mirror = PersistentMirror(store, API_STORE)

    def _memoised(self, path: str, decode) -> Future:
        with self._lock:
            future = self._memo.get(path)
            if future is not None and not _failed(future):
                return future

            stored = self._mirror.load(path)
            if stored is not None:
                future = Future()
                future.set_result(stored)
                self._memo[path] = future
                return future

            future = self.fetcher.fetch(path, decode=decode)
            self._memo[path] = future

        def _on_done(f: Future):
            if f.exception() is not None:
                # forget failures so the next call retries
                with self._lock:
                    if self._memo.get(path) is f:
                        del self._memo[path]
            else:
                self._mirror.save(path, f.result())

        future.add_done_callback(_on_done)
        return future

    def session_async(self, session_key: int) -> Future:
        return self._memoised(session_path(session_key), _decode_session)

    def get_session(self, session_key: int, timeout: Optional[float] = None) -> SessionInfo:
        return self.session_async(session_key).result(timeout=timeout)

    def drivers_async(self, session_key: int) -> Future:
        return self._memoised(drivers_path(session_key), _decode_drivers)

    def get_drivers(self, session_key: int, timeout: Optional[float] = None) -> List[DriverInfo]:
        return self.drivers_async(session_key).result(timeout=timeout)

    def fetch_time_range(self, kind: ResourceKind, session_key: int, start: float, end: float) -> Future:
        kind = ResourceKind(kind)
        path = time_range_path(kind, session_key, start, end)
        return self.fetcher.fetch(path, decode=lambda payload: _sorted_by_time(parse_records(kind, payload)))

    def fetch_lap_range(self, session_key: int, first_lap: int, end_lap: int) -> Future:
        path = lap_range_path(session_key, first_lap, end_lap)
        return self.fetcher.fetch(path, decode=lambda payload: parse_rows(LapRecord, payload))


def _failed(future: Future) -> bool:
    return future.done() and (future.cancelled() or future.exception() is not None)


def _sorted_by_time(records):
    return sorted(records, key=lambda r: r.timestamp)
