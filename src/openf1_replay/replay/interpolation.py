"""
Time-indexed lookups over per-driver sample sequences.

Continuous values (x, y position) are interpolated linearly between the two
samples bracketing the query time. Everything else is taken from the earlier
sample, and queries outside the observed range return the nearest boundary
sample unchanged, so missing data shows up as "last known position held".
"""
from bisect import bisect_left, bisect_right
from operator import attrgetter
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

_timestamp = attrgetter("timestamp")


class PositionInterpolator:
    """
    Args:
        interpolate: When False the nearest sample is returned instead of a
            synthetic interpolated one.
        fields: Positional fields that get interpolated.
    """

    def __init__(self, interpolate: bool = True, fields: Tuple[str, ...] = ("x", "y")):
        self.interpolate = interpolate
        self.fields = fields

    def at(self, samples: Sequence, t: float):
        """
        Best estimate of the sample at time ``t``.

        ``samples`` must be sorted by timestamp. O(log n).
        """
        n = len(samples)
        if n == 0:
            return None

        i = bisect_left(samples, t, key=_timestamp)
        if i < n and samples[i].timestamp == t:
            return samples[i]
        if i == 0:
            return samples[0]
        if i == n:
            return samples[-1]

        before, after = samples[i - 1], samples[i]
        if not self.interpolate:
            return before if (t - before.timestamp) <= (after.timestamp - t) else after

        frac = (t - before.timestamp) / (after.timestamp - before.timestamp)
        values = {
            name: getattr(before, name) + (getattr(after, name) - getattr(before, name)) * frac
            for name in self.fields
        }
        # synthetic sample: stamped with the query time, other fields from `before`
        return before.model_copy(update={"timestamp": t, **values})


def latest_at(samples: Sequence, t: float):
    """Last sample at or before ``t`` (first sample if ``t`` precedes all of them)."""
    if not samples:
        return None
    i = bisect_right(samples, t, key=_timestamp)
    return samples[max(i - 1, 0)]


class SampleTracks:
    """Combined multi-driver samples split into one sorted track per driver."""

    def __init__(self, tracks: Dict[int, Tuple], interpolator: Optional[PositionInterpolator] = None):
        self.tracks = tracks
        self.interpolator = interpolator or PositionInterpolator()

    @classmethod
    def from_samples(cls, samples: Sequence, interpolator: Optional[PositionInterpolator] = None):
        if not samples:
            return cls({}, interpolator)

        drivers = np.fromiter((s.driver_number for s in samples), dtype=np.int64, count=len(samples))
        times = np.fromiter((s.timestamp for s in samples), dtype=np.float64, count=len(samples))
        # stable so duplicate timestamps keep their arrival order
        order = np.lexsort((times, drivers))

        tracks: Dict[int, list] = {}
        for idx in order:
            sample = samples[idx]
            tracks.setdefault(sample.driver_number, []).append(sample)
        return cls({d: tuple(track) for d, track in tracks.items()}, interpolator)

    def __len__(self):
        return len(self.tracks)

    def drivers(self):
        return sorted(self.tracks)

    def track(self, driver_number: int) -> Tuple:
        return self.tracks.get(driver_number, ())

    def position_at(self, driver_number: int, t: float):
        return self.interpolator.at(self.track(driver_number), t)

    def positions_at(self, t: float) -> Dict:
        return {driver: self.interpolator.at(track, t) for driver, track in self.tracks.items()}

    def latest_at(self, t: float) -> Dict:
        return {driver: latest_at(track, t) for driver, track in self.tracks.items()}
