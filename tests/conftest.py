"""
Pytest configuration and shared fixtures for openf1-replay tests.

The fake OpenF1 API below answers the same query paths the real client
builds, from a small synthetic race, so nothing here touches the network.
"""
import threading
import time
from urllib.parse import unquote

import pytest

from openf1_replay.config import ReplayConfig
from openf1_replay.data.api import OpenF1Client
from openf1_replay.data.cache import ChunkCache
from openf1_replay.data.fetcher import RateLimitedFetcher
from openf1_replay.data.loader import SessionEpoch
from openf1_replay.errors import NetworkError
from openf1_replay.lib.time import iso_timestamp, parse_timestamp


# =============================================================================
# Synthetic session
# =============================================================================

SESSION_KEY = 9161
OTHER_SESSION_KEY = 9165

# 2023-09-17T12:00:00Z
SESSION_START = 1694952000.0
SESSION_END = SESSION_START + 3600.0

DRIVERS = [1, 11, 44]
LAP_SECONDS = 90.0
TOTAL_LAPS = 40


def location_rows(session_key, start, end):
    """One sample per driver per second, x = elapsed seconds, y = 2x."""
    base = SESSION_START if session_key == SESSION_KEY else SESSION_START + 86400
    rows = []
    k = max(0, int(start - base))
    while base + k < end:
        if base + k >= start:
            for driver in DRIVERS:
                rows.append({
                    "date": iso_timestamp(base + k),
                    "driver_number": driver,
                    "session_key": session_key,
                    "x": float(k + driver),
                    "y": float(2 * k),
                    "z": 0.0,
                })
        k += 1
    return rows


def position_rows(session_key):
    base = SESSION_START if session_key == SESSION_KEY else SESSION_START + 86400
    rows = [
        {"date": iso_timestamp(base + 1), "driver_number": 1, "position": 1},
        {"date": iso_timestamp(base + 1), "driver_number": 11, "position": 2},
        {"date": iso_timestamp(base + 1), "driver_number": 44, "position": 3},
        # 44 passes 11 ten minutes in
        {"date": iso_timestamp(base + 600), "driver_number": 44, "position": 2},
        {"date": iso_timestamp(base + 600.5), "driver_number": 11, "position": 3},
    ]
    for row in rows:
        row["session_key"] = session_key
    return rows


def lap_rows(session_key):
    base = SESSION_START if session_key == SESSION_KEY else SESSION_START + 86400
    return [
        {
            "session_key": session_key,
            "driver_number": driver,
            "lap_number": lap,
            "date_start": iso_timestamp(base + (lap - 1) * LAP_SECONDS),
            "lap_duration": LAP_SECONDS,
        }
        for lap in range(1, TOTAL_LAPS + 1)
        for driver in DRIVERS
    ]


def session_row(session_key):
    base = SESSION_START if session_key == SESSION_KEY else SESSION_START + 86400
    return {
        "session_key": session_key,
        "session_name": "Race",
        "session_type": "Race",
        "country_name": "Singapore",
        "circuit_short_name": "Singapore",
        "year": 2023,
        "date_start": iso_timestamp(base),
        "date_end": iso_timestamp(base + 3600),
    }


def driver_rows(session_key):
    names = {1: ("VER", "Max VERSTAPPEN", "Red Bull Racing", "3671C6"),
             11: ("PER", "Sergio PEREZ", "Red Bull Racing", "3671C6"),
             44: ("HAM", "Lewis HAMILTON", "Mercedes", "27F4D2")}
    return [
        {"session_key": session_key, "driver_number": n, "name_acronym": a,
         "full_name": f, "team_name": t, "team_colour": c}
        for n, (a, f, t, c) in names.items()
    ]


def parse_query(path):
    """Split a client path into (resource, filters) the way the API would."""
    resource, _, query = path.partition("?")
    filters = {}
    for part in query.split("&"):
        part = unquote(part)
        for op in (">=", "<=", ">", "<", "="):
            name, sep, value = part.partition(op)
            if sep:
                filters[(name, op)] = value
                break
    return resource, filters


def wait_until(condition, timeout=5.0):
    """Poll ``condition`` until it holds or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within timeout")
        time.sleep(0.01)


class FakeOpenF1:
    """
    Transport callable answering client paths from the synthetic session.

    Supports failing or blocking selected paths to exercise error handling
    and in-flight behaviour.
    """

    def __init__(self):
        self.calls = []
        self.fail = []       # predicates; matching paths raise NetworkError
        self.fail_once = []  # predicates removed after the first failure
        self.gates = []      # (predicate, Event) pairs; matching paths wait on the event
        self._lock = threading.Lock()

    def __call__(self, path):
        with self._lock:
            self.calls.append(path)
            once = [p for p in self.fail_once if p(path)]
            for p in once:
                self.fail_once.remove(p)
        for predicate, gate in list(self.gates):
            if predicate(path):
                gate.wait(5)
        if once or any(p(path) for p in self.fail):
            raise NetworkError("simulated outage", url=path, status=503)
        return self.payload(path)

    def calls_for(self, resource):
        with self._lock:
            return [c for c in self.calls if c.startswith(resource + "?")]

    def payload(self, path):
        resource, filters = parse_query(path)
        session_key = int(filters[("session_key", "=")])
        if resource == "sessions":
            return [session_row(session_key)]
        if resource == "drivers":
            return driver_rows(session_key)
        if resource == "laps":
            first = int(filters[("lap_number", ">=")])
            end = int(filters[("lap_number", "<")])
            return [r for r in lap_rows(session_key) if first <= r["lap_number"] < end]

        start = parse_timestamp(filters[("date", ">=")])
        end = parse_timestamp(filters[("date", "<")])
        if resource == "location":
            return location_rows(session_key, start, end)
        if resource == "position":
            return [r for r in position_rows(session_key)
                    if start <= parse_timestamp(r["date"]) < end]
        if resource in ("car_data", "weather"):
            return []
        raise NetworkError("unknown resource", url=path, status=404)


class MemoryStore:
    """Dict-backed stand-in for the persistent key/value store."""

    def __init__(self):
        self.data = {}
        self.broken = False

    def get(self, store, key):
        if self.broken:
            raise OSError("disk unavailable")
        return self.data.get((store, key))

    def put(self, store, key, value):
        if self.broken:
            raise OSError("disk unavailable")
        self.data[(store, key)] = value

    def clear(self, store):
        if self.broken:
            raise OSError("disk unavailable")
        for k in [k for k in self.data if k[0] == store]:
            del self.data[k]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_api():
    return FakeOpenF1()


@pytest.fixture
def fetcher(fake_api):
    fetcher = RateLimitedFetcher(fake_api, min_interval=0.0)
    yield fetcher
    fetcher.close()


@pytest.fixture
def client(fetcher):
    return OpenF1Client(fetcher)


@pytest.fixture
def chunk_cache():
    return ChunkCache()


@pytest.fixture
def epoch():
    return SessionEpoch()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def replay_config():
    """Config for engine tests: no disk cache, no request spacing."""
    config = ReplayConfig()
    config.cache.enabled = False
    config.api.min_interval = 0.0
    return config
