"""
Sync worker -- drains the queue and runs one directory sync at a time.

A pool of worker threads shares one queue. The queue never hands out a
path that is already in flight, so a directory is synced by at most one
thread at once regardless of pool size. A failing directory is recorded
and the loop moves on; retries come from the scheduler or the caller.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from .excludes import ExcludeSet
from .models import ErrorKind, SyncConfig, SyncQueueEntry, SyncRecord, SyncResult
from .queue import SyncQueue
from .registry import DirectoryRegistry

logger = logging.getLogger("dirmirror.worker")


class SyncAdapter(Protocol):
    """What the worker needs from the external sync tool."""

    def run(
        self,
        path: str,
        exclude_patterns: list[str],
        force_resync: bool = False,
        timeout: Optional[float] = None,
    ) -> SyncResult: ...

    def check_available(self) -> None: ...

    def cancel(self) -> None: ...


class SyncWorker:
    """Fixed pool of threads consuming a ``SyncQueue``.

    Args:
        queue: Shared work queue.
        registry: Directory registry and state store.
        excludes: Exclude patterns, snapshotted per sync.
        adapter: External sync tool.
        config: Timeouts and pool size.
        clock: Source of "now", for tests.
    """

    def __init__(
        self,
        queue: SyncQueue,
        registry: DirectoryRegistry,
        excludes: ExcludeSet,
        adapter: SyncAdapter,
        config: SyncConfig,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.queue = queue
        self.registry = registry
        self.excludes = excludes
        self.adapter = adapter
        self.config = config
        self._clock = clock
        self._threads: list[threading.Thread] = []

    def start(self, timeout: float = 5.0) -> bool:
        """Launch the pool and wait until every thread is running.

        Returns:
            True once all threads confirmed they entered their loop.
        """
        ready = []
        for n in range(self.config.workers):
            started = threading.Event()
            t = threading.Thread(
                target=self._run,
                args=(started,),
                name=f"dirmirror-worker-{n}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
            ready.append(started)
        confirmed = all(started.wait(timeout) for started in ready)
        logger.info("Sync worker started (%d thread(s))", len(self._threads))
        return confirmed

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for every thread to exit.

        Returns:
            True if all threads finished within ``timeout``.
        """
        for t in self._threads:
            t.join(timeout=timeout)
        return not self.alive

    @property
    def alive(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def _run(self, started: threading.Event) -> None:
        started.set()
        while True:
            entry = self.queue.dequeue()
            if entry is None:
                break
            try:
                self.process(entry)
            finally:
                self.queue.done(entry.path)
        logger.debug("%s exiting", threading.current_thread().name)

    def process(self, entry: SyncQueueEntry) -> Optional[SyncResult]:
        """Run a single queue entry to completion and record the outcome.

        Returns:
            The adapter result, or None if the entry was skipped.
        """
        path = entry.path
        if not self.registry.mark_syncing(path):
            logger.warning("Skipping %s: unknown or already syncing", path)
            return None

        timeout = (
            self.config.resync_timeout_seconds
            if entry.force_resync
            else self.config.sync_timeout_seconds
        )
        started = self._clock()
        logger.info("%s %s...", "Resyncing" if entry.force_resync else "Syncing", path)
        try:
            result = self.adapter.run(
                path,
                self.excludes.list(),
                force_resync=entry.force_resync,
                timeout=timeout,
            )
        except Exception as exc:
            logger.exception("Adapter crashed while syncing %s", path)
            result = SyncResult(
                success=False, error_kind=ErrorKind.UNKNOWN, detail=str(exc)
            )

        finished = self._clock()
        if result.success:
            self.queue.with_pending(
                path,
                lambda pending: self.registry.mark_success(
                    path, when=finished, still_queued=pending
                ),
            )
            logger.info("Synced %s", path)
        else:
            self.registry.mark_failure(path, result.error_kind, result.error_message)
            if result.error_kind == ErrorKind.CANCELED:
                logger.info("Sync of %s canceled", path)
            else:
                logger.error("Sync failed for %s: %s", path, result.error_message)

        self.registry.record(
            SyncRecord(
                path=path,
                force_resync=entry.force_resync,
                started_at=started,
                finished_at=finished,
                success=result.success,
                error_kind=result.error_kind,
            )
        )
        return result
