"""
The single authoritative simulation clock.

Simulation time advances by ``real_delta * speed_multiplier`` on every tick
while playing and is always kept inside ``[session_start, session_end]``.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..errors import ConfigError
from ..events import ClockStateChanged, EventBus, TimeAdvanced

logger = logging.getLogger(__name__)

PLAYBACK_SPEEDS = [0.1, 0.2, 0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 64.0, 128.0, 256.0]


class ClockState(Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass(frozen=True)
class SimulationState:
    current_time: float
    session_start: float
    session_end: float
    speed_multiplier: float
    playing: bool

    @property
    def elapsed(self) -> float:
        return self.current_time - self.session_start

    @property
    def progress(self) -> float:
        span = self.session_end - self.session_start
        return self.elapsed / span if span > 0 else 1.0


class SimulationClock:
    """
    Play/pause/stop/seek state machine over a session's time span.

    Args:
        session_start: First instant of the session (epoch seconds).
        session_end: Last instant of the session (epoch seconds).
        speed: Initial speed multiplier, must be > 0.
        time_source: Monotonic wall clock used when ``tick`` is called
            without an explicit delta.
        bus: Optional event bus for TimeAdvanced / ClockStateChanged.
    """

    def __init__(self, session_start: float, session_end: float, speed: float = 1.0,
                 time_source: Callable[[], float] = time.monotonic, bus: Optional[EventBus] = None):
        self._validate_bounds(session_start, session_end)
        self._validate_speed(speed)
        self.session_start = session_start
        self.session_end = session_end
        self.speed_multiplier = float(speed)
        self.current_time = session_start
        self.state = ClockState.STOPPED
        self.bus = bus
        self._time_source = time_source
        self._last_wall: Optional[float] = None

    @staticmethod
    def _validate_bounds(start, end):
        if end < start:
            raise ConfigError(f"session end {end} is before session start {start}")

    @staticmethod
    def _validate_speed(speed):
        if speed is None or speed <= 0:
            raise ConfigError(f"speed multiplier must be positive, got {speed}")

    @property
    def playing(self) -> bool:
        return self.state is ClockState.PLAYING

    @property
    def elapsed(self) -> float:
        return self.current_time - self.session_start

    @property
    def finished(self) -> bool:
        return self.current_time >= self.session_end

    def get_current_time(self) -> float:
        return self.current_time

    def snapshot(self) -> SimulationState:
        return SimulationState(
            current_time=self.current_time,
            session_start=self.session_start,
            session_end=self.session_end,
            speed_multiplier=self.speed_multiplier,
            playing=self.playing,
        )

    def _set_state(self, state: ClockState):
        if state is self.state:
            return
        logger.debug("Clock %s -> %s", self.state.value, state.value)
        self.state = state
        if self.bus is not None:
            self.bus.publish(ClockStateChanged(state, self.current_time))

    def start(self):
        # UI toggles can double fire, starting twice is a no-op
        if self.playing:
            return
        if self.finished:
            self.current_time = self.session_start
        self._last_wall = self._time_source()
        self._set_state(ClockState.PLAYING)

    def pause(self):
        if self.playing:
            self._last_wall = None
            self._set_state(ClockState.PAUSED)

    def toggle(self):
        if self.playing:
            self.pause()
        else:
            self.start()

    def stop(self):
        self._last_wall = None
        self.current_time = self.session_start
        self._set_state(ClockState.STOPPED)

    def seek(self, t: float) -> float:
        """Jump to ``t`` clamped to the session bounds; play state is unchanged."""
        self.current_time = min(max(t, self.session_start), self.session_end)
        return self.current_time

    def set_speed(self, speed: float):
        self._validate_speed(speed)
        self.speed_multiplier = float(speed)

    set_speed_multiplier = set_speed

    def faster(self) -> float:
        for speed in PLAYBACK_SPEEDS:
            if speed > self.speed_multiplier:
                self.speed_multiplier = speed
                break
        return self.speed_multiplier

    def slower(self) -> float:
        for speed in reversed(PLAYBACK_SPEEDS):
            if speed < self.speed_multiplier:
                self.speed_multiplier = speed
                break
        return self.speed_multiplier

    def tick(self, real_delta: Optional[float] = None) -> float:
        """
        Advance simulation time by one frame.

        ``real_delta`` is the wall-clock time since the previous tick; when
        omitted it is measured with ``time_source``. Reaching the session
        end clamps time there and stops the clock.
        """
        now = self._time_source()
        if real_delta is None:
            real_delta = 0.0 if self._last_wall is None else now - self._last_wall
        self._last_wall = now

        if not self.playing or real_delta <= 0:
            return self.current_time

        previous = self.current_time
        target = previous + real_delta * self.speed_multiplier
        if target > self.session_end:
            self.current_time = self.session_end
        else:
            self.current_time = target

        if self.bus is not None:
            self.bus.publish(TimeAdvanced(self.current_time, previous, self.speed_multiplier))

        if target > self.session_end:
            logger.info("Reached end of session")
            self._last_wall = None
            self._set_state(ClockState.STOPPED)
        return self.current_time

    def reset(self, session_start: float, session_end: float):
        """Rebind the clock to a new session's bounds and stop it."""
        self._validate_bounds(session_start, session_end)
        self.session_start = session_start
        self.session_end = session_end
        self.stop()
