"""Periodic scheduler -- enqueues every registered directory on a timer."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("dirmirror.scheduler")


class Scheduler:
    """Fires ``tick`` every ``interval`` seconds until stopped.

    The queue deduplicates, so a slow cycle never piles up duplicate
    work for the same directory.

    Args:
        interval: Seconds between ticks.
        tick: Callback run on each tick, typically "enqueue all".
    """

    def __init__(self, interval: float, tick: Callable[[], int]):
        self.interval = interval
        self._tick = tick
        self._stop_event = threading.Event()
        self._started = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self, timeout: float = 5.0) -> bool:
        """Start the timer thread. Returns True once it is running."""
        self._thread = threading.Thread(
            target=self._loop, name="dirmirror-scheduler", daemon=True
        )
        self._thread.start()
        return self._started.wait(timeout)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop emitting work immediately and wait for the thread."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        self._started.set()
        while not self._stop_event.wait(timeout=self.interval):
            try:
                queued = self._tick()
                logger.debug("Periodic sync queued %d directories", queued)
            except Exception as exc:
                logger.error("Scheduler tick failed: %s", exc)
