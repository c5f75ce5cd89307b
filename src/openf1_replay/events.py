"""
Typed events and a small publish/subscribe bus.

Every subscription owns a bounded queue. Publishing never blocks: when a
subscriber falls behind, its oldest event is dropped to make room.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkLoaded:
    kind: Any
    session_id: int
    index: int
    count: int
    silent: bool
    from_cache: bool = False


@dataclass(frozen=True)
class ChunkFailed:
    kind: Any
    session_id: int
    index: int
    error: str
    silent: bool


@dataclass(frozen=True)
class TimeAdvanced:
    current_time: float
    previous_time: float
    speed_multiplier: float


@dataclass(frozen=True)
class ClockStateChanged:
    state: Any
    current_time: float


@dataclass(frozen=True)
class StandingsUpdated:
    table: Any
    previous: Any = None


@dataclass(frozen=True)
class SessionChanged:
    session_id: int
    epoch: int


@dataclass(frozen=True)
class LoadingChanged:
    loading: bool
    blocks: Tuple[str, ...] = ()


class Subscription:
    def __init__(self, bus: "EventBus", event_types: Tuple[Type, ...], maxsize: int):
        self._bus = bus
        self.event_types = event_types
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.active = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.unsubscribe()

    def wants(self, event) -> bool:
        return not self.event_types or isinstance(event, self.event_types)

    def _offer(self, event):
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None):
        """Next event, or None if nothing arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def unsubscribe(self):
        if self.active:
            self.active = False
            self._bus._remove(self)


class EventBus:
    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, *event_types: Type) -> Subscription:
        """Subscribe to the given event types (all events when none given)."""
        subscription = Subscription(self, tuple(event_types), self.queue_size)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions if s.wants(event)]
        for subscription in targets:
            before = subscription.dropped
            subscription._offer(event)
            if subscription.dropped != before:
                logger.debug("Subscriber queue full, dropped oldest event for %s", type(event).__name__)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


class LoadingTracker:
    """
    Named loading blocks; the session counts as loading until every block
    has ended. Only "loud" loads open a block.
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus
        self._blocks = set()
        self._lock = threading.Lock()

    @property
    def is_loading(self) -> bool:
        with self._lock:
            return bool(self._blocks)

    def start_block(self, name: str):
        self._update(lambda blocks: blocks.add(name))

    def end_block(self, name: str):
        self._update(lambda blocks: blocks.discard(name))

    def clear(self):
        self._update(lambda blocks: blocks.clear())

    def _update(self, change):
        with self._lock:
            was_loading = bool(self._blocks)
            change(self._blocks)
            now_loading = bool(self._blocks)
            blocks = tuple(sorted(self._blocks))
        if was_loading != now_loading and self.bus is not None:
            self.bus.publish(LoadingChanged(loading=now_loading, blocks=blocks))
