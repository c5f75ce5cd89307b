"""
Race standings from the raw OpenF1 ``position`` stream.

The position feed only reports a driver when their position changes, and
samples are irregular, so the table is rebuilt on every update: the most
recent record per driver near the current time is merged in, everyone else
keeps their last known rank, and the result is renumbered 1..N so gaps and
duplicates from missing telemetry disappear.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..data.models import DriverInfo, PositionRecord
from ..events import EventBus, StandingsUpdated

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 30.0
DEFAULT_GRID_SCAN = 60


@dataclass(frozen=True)
class StandingsEntry:
    driver_number: int
    rank: int
    last_seen: Optional[float] = None
    updated: bool = False


@dataclass(frozen=True)
class RankChange:
    driver_number: int
    old_rank: int
    new_rank: int

    @property
    def gained(self) -> int:
        """Places gained (negative when places were lost)."""
        return self.old_rank - self.new_rank


@dataclass(frozen=True)
class StandingsTable:
    entries: Tuple[StandingsEntry, ...]
    time: Optional[float] = None

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def ranks(self) -> Dict[int, int]:
        return {e.driver_number: e.rank for e in self.entries}

    def leader(self) -> Optional[StandingsEntry]:
        return self.entries[0] if self.entries else None

    def to_frame(self, drivers: Optional[Dict[int, DriverInfo]] = None) -> pd.DataFrame:
        rows = []
        for entry in self.entries:
            driver = (drivers or {}).get(entry.driver_number)
            rows.append({
                "position": entry.rank,
                "driver_number": entry.driver_number,
                "code": driver.code if driver else f"#{entry.driver_number}",
                "team": driver.team_name if driver else None,
                "last_seen": entry.last_seen,
            })
        return pd.DataFrame(rows, columns=["position", "driver_number", "code", "team", "last_seen"])


def rank_changes(previous: Optional[StandingsTable], current: StandingsTable) -> List[RankChange]:
    if previous is None:
        return []
    before = previous.ranks
    changes = [
        RankChange(entry.driver_number, before[entry.driver_number], entry.rank)
        for entry in current.entries
        if entry.driver_number in before and before[entry.driver_number] != entry.rank
    ]
    return sorted(changes, key=lambda c: c.new_rank)


class StandingsAggregator:
    """
    Args:
        window: Records within this many seconds of the current time count
            as fresh.
        grid_scan: How many of the earliest records are scanned to find
            the starting grid.
        bus: Optional event bus receiving StandingsUpdated.
    """

    def __init__(self, window: float = DEFAULT_WINDOW, grid_scan: int = DEFAULT_GRID_SCAN,
                 bus: Optional[EventBus] = None):
        self.window = window
        self.grid_scan = grid_scan
        self.bus = bus
        self.reset()

    def reset(self):
        self._records: List[PositionRecord] = []
        self._times = np.empty(0, dtype=np.float64)
        self._ranks: Dict[int, int] = {}
        self._last_seen: Dict[int, Optional[float]] = {}
        self._order: List[int] = []  # registration order, used to break rank ties
        self._fresh = set()
        self.grid: Optional[StandingsTable] = None
        self.table: Optional[StandingsTable] = None
        self.previous: Optional[StandingsTable] = None

    @property
    def driver_count(self) -> int:
        return len(self._order)

    @property
    def record_count(self) -> int:
        return len(self._records)

    def _register(self, driver_number: int, rank: int, seen: Optional[float]):
        if driver_number in self._ranks:
            return
        self._order.append(driver_number)
        self._ranks[driver_number] = rank
        self._last_seen[driver_number] = seen

    def _add_records(self, records: Iterable[PositionRecord]):
        merged = self._records + list(records)
        merged.sort(key=lambda r: r.timestamp)
        self._records = merged
        self._times = np.fromiter((r.timestamp for r in merged), dtype=np.float64, count=len(merged))

    def load(self, records: Sequence[PositionRecord], drivers: Sequence[DriverInfo] = ()) -> StandingsTable:
        """
        Start a session: seed the grid from the earliest complete set of
        positions, then add drivers from the entry list that never reported.
        """
        self.reset()
        self._add_records(records)

        for record in self._records[:self.grid_scan]:
            self._register(record.driver_number, record.position, record.timestamp)
        # a driver missing from the opening records still has a first record
        for record in self._records[self.grid_scan:]:
            if record.driver_number not in self._ranks:
                self._register(record.driver_number, record.position, record.timestamp)
        for index, driver in enumerate(drivers):
            self._register(driver.driver_number, len(drivers) + index + 1, None)

        self._normalise(fresh=set())
        self.grid = self._snapshot(time=self._records[0].timestamp if self._records else None)
        self.table = self.grid
        logger.info("Starting grid set: %d drivers from %d position records", self.driver_count, len(self._records))
        return self.grid

    def extend(self, records: Sequence[PositionRecord]):
        """Merge a newly loaded chunk of position records."""
        records = list(records)
        if not records:
            return
        self._add_records(records)
        for record in sorted(records, key=lambda r: r.timestamp):
            if record.driver_number not in self._ranks:
                # late arrivals join at the back until they report a position
                self._register(record.driver_number, len(self._order) + 1, None)
                logger.debug("Registered driver %d from a later chunk", record.driver_number)

    def _latest_by_driver(self, lo: int, hi: int) -> Dict[int, PositionRecord]:
        latest: Dict[int, PositionRecord] = {}
        for record in self._records[lo:hi]:
            # records are time ordered, later ones overwrite earlier ones
            latest[record.driver_number] = record
        return latest

    def _recent_updates(self, t: float) -> Dict[int, PositionRecord]:
        lo = int(np.searchsorted(self._times, t - self.window, side="left"))
        hi = int(np.searchsorted(self._times, t + self.window, side="right"))
        updates = self._latest_by_driver(lo, hi)
        if not updates:
            # nothing in the window, fall back to the last records before t
            before = int(np.searchsorted(self._times, t, side="right"))
            updates = self._latest_by_driver(0, before)
        return updates

    def _normalise(self, fresh):
        registration = {driver: i for i, driver in enumerate(self._order)}
        ordered = sorted(
            self._order,
            key=lambda d: (self._ranks[d], 0 if d in fresh else 1, registration[d]),
        )
        for rank, driver in enumerate(ordered, start=1):
            self._ranks[driver] = rank
        self._fresh = set(fresh)

    def _snapshot(self, time: Optional[float]) -> StandingsTable:
        ordered = sorted(self._order, key=lambda d: self._ranks[d])
        return StandingsTable(
            entries=tuple(
                StandingsEntry(d, self._ranks[d], self._last_seen.get(d), d in self._fresh) for d in ordered
            ),
            time=time,
        )

    def update(self, t: float) -> StandingsTable:
        """
        Rebuild the table for simulation time ``t``.

        The full table is returned (and published) every time; the previous
        table stays available for computing rank changes.
        """
        updates = self._recent_updates(t) if self._records else {}
        for driver, record in updates.items():
            if driver not in self._ranks:
                self._register(driver, record.position, record.timestamp)
            self._ranks[driver] = record.position
            self._last_seen[driver] = record.timestamp
        self._normalise(fresh=set(updates))

        self.previous = self.table
        self.table = self._snapshot(time=t)
        if self.bus is not None:
            self.bus.publish(StandingsUpdated(self.table, self.previous))
        return self.table

    def rank_changes(self) -> List[RankChange]:
        if self.table is None:
            return []
        return rank_changes(self.previous, self.table)

    def reset_to_grid(self) -> Optional[StandingsTable]:
        """Put everyone back on their starting position (used on stop)."""
        if self.grid is None:
            return None
        for entry in self.grid.entries:
            self._ranks[entry.driver_number] = entry.rank
            self._last_seen[entry.driver_number] = entry.last_seen
        # drivers registered after the grid was taken go to the back
        for driver in self._order:
            if driver not in self.grid.ranks:
                self._ranks[driver] = len(self._order) + 1
        self._normalise(fresh=set())
        self.previous = None
        self.table = self._snapshot(time=self.grid.time)
        if self.bus is not None:
            self.bus.publish(StandingsUpdated(self.table, None))
        return self.table

    def leader(self) -> Optional[int]:
        if self.table is None or not self.table.entries:
            return None
        return self.table.entries[0].driver_number

    def rank_of(self, driver_number: int) -> Optional[int]:
        return self._ranks.get(driver_number)
