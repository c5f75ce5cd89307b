"""
Rate-limited access to the OpenF1 HTTP API.

OpenF1 allows roughly 3 requests per second. Every component that talks to
the network goes through one ``RateLimitedFetcher``: requests are queued in
submission order and a single dispatcher thread releases them no closer
together than ``min_interval`` seconds. Results are delivered through
``concurrent.futures.Future`` objects.
"""
import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import requests

from ..errors import NetworkError, RecordError

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL = 0.35

HEADERS = {
    'User-Agent': 'OpenF1Replay/0.1 (+https://openf1.org)',
    'Accept': 'application/json',
}


class LeakyBucket:
    """
    Blocking rate limiter that lets one caller through per ``interval``.

    ``clock`` and ``sleep`` are injectable so tests can drive it with a fake
    clock.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._next_slot: Optional[float] = None
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Block until the next slot opens. Returns the departure time."""
        with self._lock:
            now = self._clock()
            while self._next_slot is not None and now < self._next_slot:
                self._sleep(self._next_slot - now)
                now = self._clock()
            self._next_slot = now + self.interval
            return now


class HttpTransport:
    """Performs a single GET against the API and returns decoded JSON."""

    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(HEADERS)

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def __call__(self, path: str) -> Any:
        url = self.url_for(path)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.Timeout as e:
            raise NetworkError("request timed out", url=url) from e
        except requests.RequestException as e:
            raise NetworkError(f"request failed: {e}", url=url) from e

        # OpenF1 answers an empty filter result with a 404
        if response.status_code == 404 and "No results found" in response.text:
            return []
        if response.status_code >= 400:
            raise NetworkError("request rejected", url=url, status=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError("response is not valid JSON", url=url, status=response.status_code) from e

    def close(self):
        self.session.close()


@dataclass
class FetchRequest:
    path: str
    decode: Optional[Callable[[Any], Any]] = None
    future: Future = field(default_factory=Future)
    submitted: float = 0.0


_STOP = object()


class RateLimitedFetcher:
    """
    FIFO request queue drained by one dispatcher thread.

    Args:
        transport: Callable taking a request path and returning the decoded
            payload. Should raise NetworkError on failure.
        min_interval: Minimum spacing between two departures, in seconds.
        clock: Monotonic time source used for spacing.
        sleep: Sleep function used while waiting for the next slot.
    """

    def __init__(self, transport: Callable[[str], Any], min_interval: float = DEFAULT_MIN_INTERVAL,
                 clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        self.transport = transport
        self.min_interval = min_interval
        self._clock = clock
        self._bucket = LeakyBucket(min_interval, clock=clock, sleep=sleep)
        self._queue: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def fetch(self, path: str, decode: Optional[Callable[[Any], Any]] = None) -> Future:
        """
        Queue a request and return a Future for its payload.

        ``decode`` runs on the dispatcher thread after a successful
        transfer; a RecordError it raises fails the request with
        NetworkError.
        """
        request = FetchRequest(path=path, decode=decode, submitted=self._clock())
        with self._lock:
            if self._closed:
                request.future.set_exception(NetworkError("fetcher is closed", url=path))
                return request.future
            self._ensure_thread()
            self._queue.put(request)
        logger.debug("Queued %s (%d pending)", path, self._queue.qsize())
        return request.future

    def _ensure_thread(self):
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self._run, name="openf1-fetcher", daemon=True)
            self._thread.start()

    def _run(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            self._dispatch(item)

    def _dispatch(self, request: FetchRequest):
        if not request.future.set_running_or_notify_cancel():
            logger.debug("Skipping cancelled request %s", request.path)
            return

        departed = self._bucket.acquire()
        logger.debug("Sending %s after %.3fs in queue", request.path, departed - request.submitted)

        try:
            payload = self.transport(request.path)
            result = request.decode(payload) if request.decode is not None else payload
        except NetworkError as e:
            logger.debug("Request failed: %s", e)
            request.future.set_exception(e)
        except RecordError as e:
            request.future.set_exception(NetworkError(f"invalid payload: {e}", url=request.path))
        except Exception as e:
            logger.exception("Unexpected error fetching %s", request.path)
            request.future.set_exception(e)
        else:
            request.future.set_result(result)

    def close(self, wait: bool = True):
        """Stop accepting requests; requests already queued are still sent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
            if thread is not None:
                self._queue.put(_STOP)
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join()
