"""Background task patterns: fixed-delay and fixed-rate loops and a queue-fed worker."""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from collections.abc import Callable
from typing import Any

log = logging.getLogger(__name__)

SENSOR_SCALE = 100_000_000.0
DEFAULT_INTERVAL = 10.0
DEFAULT_QUEUE_LENGTH = 10

_STOP = object()


def read_sensor(rng: random.Random | None = None) -> float:
    """Simulated sensor value: a random 32-bit number divided by 10**8."""
    source = rng if rng is not None else random
    return source.getrandbits(32) / SENSOR_SCALE


def _default_sleep(stop_event: threading.Event | None) -> Callable[[float], Any]:
    return stop_event.wait if stop_event is not None else time.sleep


def _running(stop_event: threading.Event | None) -> bool:
    return stop_event is None or not stop_event.is_set()


def run_periodic(
    action: Callable[[], Any],
    interval: float = DEFAULT_INTERVAL,
    stop_event: threading.Event | None = None,
    sleep: Callable[[float], Any] | None = None,
) -> int:
    """Call action, then pause for interval, until stop_event is set.

    The pause does not account for the time action takes, so the period
    drifts by that amount. Returns the number of calls made.
    """
    pause = sleep if sleep is not None else _default_sleep(stop_event)
    runs = 0
    while _running(stop_event):
        action()
        runs += 1
        if not _running(stop_event):
            break
        pause(interval)
    return runs


def run_fixed_rate(
    action: Callable[[], Any],
    period: float = DEFAULT_INTERVAL,
    stop_event: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Any] | None = None,
) -> int:
    """Call action once every period, measured from a fixed start time.

    Time spent in action is subtracted from the pause, so calls stay on a
    constant schedule. When action overruns its slot the next call follows
    at once without a pause. Returns the number of calls made.
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    pause = sleep if sleep is not None else _default_sleep(stop_event)
    next_wake = clock()
    runs = 0
    while _running(stop_event):
        action()
        runs += 1
        if not _running(stop_event):
            break
        next_wake += period
        delay = next_wake - clock()
        if delay > 0:
            pause(delay)
    return runs


class QueueWorker:
    """Thread that hands each queued item to a handler, in order.

    Items that are None are skipped. put() blocks while the queue is full.
    """

    def __init__(
        self, handler: Callable[[Any], Any], maxsize: int = DEFAULT_QUEUE_LENGTH
    ) -> None:
        if maxsize < 1:
            raise ValueError(f"maxsize must be at least 1, got {maxsize}")
        self._handler = handler
        self._queue: queue.Queue[Any] = queue.Queue(maxsize)
        self._thread: threading.Thread | None = None
        self._closed = False

    def put(self, item: Any) -> None:
        """Queue one item, waiting for room if the queue is full."""
        if self._closed:
            raise RuntimeError("worker is stopped")
        self._queue.put(item)

    def start(self) -> None:
        """Start the consuming thread."""
        if self._closed:
            raise RuntimeError("worker is stopped")
        if self._thread is not None:
            raise RuntimeError("worker already started")
        self._thread = threading.Thread(target=self._run, name="queue-worker", daemon=True)
        self._thread.start()
        log.info("Task started")

    def stop(self) -> None:
        """Finish the items already queued, then end the thread."""
        if self._closed:
            return
        self._closed = True
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join()
        self._thread = None

    def __enter__(self) -> QueueWorker:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if item is None:
                continue
            log.info("Value received: %s", item)
            try:
                self._handler(item)
            except Exception:
                log.exception("Handler failed for %r", item)