"""
Sync queue -- deduplicating FIFO of directory sync requests.

At most one entry per path waits at a time. A forced resync upgrades a
waiting normal entry in place. The queue also remembers which paths are
in flight so that ``dequeue`` never hands the same directory to two
workers; a fresh request for a syncing directory waits its turn.

State callbacks (``on_queued``, ``with_pending``) run under the queue lock
and may take the registry lock. The registry never calls into the queue.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Optional

from .models import SyncQueueEntry

logger = logging.getLogger("dirmirror.queue")


class SyncQueue:
    """Blocking, deduplicating work queue keyed by directory path."""

    def __init__(self):
        self._cond = threading.Condition()
        self._pending: "OrderedDict[str, SyncQueueEntry]" = OrderedDict()
        self._in_flight: set[str] = set()
        self._closed = False

    def enqueue(
        self,
        path: str,
        force_resync: bool = False,
        on_queued: Optional[Callable[[str], None]] = None,
    ) -> bool:
        """Request a sync of ``path``.

        Args:
            path: Registered directory path.
            force_resync: Rebuild the sync cache before syncing.
            on_queued: Called with ``path`` under the queue lock when the
                request is accepted, so state updates cannot interleave
                with ``close``, ``clear`` or ``with_pending``.

        Returns:
            True if a new entry was queued or a waiting one was escalated
            to a forced resync; False if the request was absorbed by an
            equivalent waiting entry or the queue is closed.
        """
        with self._cond:
            if self._closed:
                return False
            existing = self._pending.get(path)
            if existing is not None:
                if force_resync and not existing.force_resync:
                    existing.force_resync = True
                    if on_queued is not None:
                        on_queued(path)
                    logger.debug("Escalated queued sync to resync: %s", path)
                    return True
                return False
            self._pending[path] = SyncQueueEntry(
                path=path,
                force_resync=force_resync,
                enqueued_at=datetime.now(timezone.utc),
            )
            if on_queued is not None:
                on_queued(path)
            self._cond.notify()
        logger.debug("Queued %s (resync=%s)", path, force_resync)
        return True

    def dequeue(self, timeout: Optional[float] = None) -> Optional[SyncQueueEntry]:
        """Take the oldest entry whose directory is not already syncing.

        Blocks until an entry is available, the queue is closed, or
        ``timeout`` elapses. The returned path stays in flight until
        ``done`` is called for it.

        Returns:
            The entry, or None when closed or timed out.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    return None
                for path in self._pending:
                    if path not in self._in_flight:
                        entry = self._pending.pop(path)
                        self._in_flight.add(path)
                        return entry
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._cond.wait(remaining)

    def done(self, path: str) -> None:
        """Release ``path`` after its sync finished."""
        with self._cond:
            self._in_flight.discard(path)
            self._cond.notify_all()

    def size(self) -> int:
        """Number of entries waiting to be picked up."""
        with self._cond:
            return len(self._pending)

    def is_pending(self, path: str) -> bool:
        """Whether an entry for ``path`` is waiting."""
        with self._cond:
            return path in self._pending

    def with_pending(self, path: str, callback: Callable[[bool], None]) -> None:
        """Call ``callback(is_pending(path))`` while holding the queue lock."""
        with self._cond:
            callback(path in self._pending)

    def in_flight(self) -> set[str]:
        """Paths currently handed out to workers."""
        with self._cond:
            return set(self._in_flight)

    def pending_paths(self) -> list[str]:
        """Waiting paths, oldest first."""
        with self._cond:
            return list(self._pending)

    def clear(self) -> int:
        """Drop every waiting entry. Returns how many were dropped."""
        with self._cond:
            dropped = len(self._pending)
            self._pending.clear()
            return dropped

    def close(self) -> None:
        """Reject new work and wake every blocked ``dequeue``."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        return self.size()
