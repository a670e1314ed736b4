"""
Sync orchestrator -- lifecycle and control surface of directory sync.

Owns the registry, the exclude set, and, while running, one adapter,
queue, worker pool, and scheduler. ``start`` is atomic: the running
check and the claim happen under a single lock, so an auto-start and an
explicit start from the command line can never launch two pipelines.

    orchestrator = SyncOrchestrator(config, directories=["~/Documents"])
    orchestrator.start()
    orchestrator.resync_one("~/Documents")
    print(orchestrator.status().sync_states)
    orchestrator.stop()
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Iterable, Optional

from .excludes import ExcludeSet
from .exceptions import DirectoryNotFoundError, DirmirrorError, NotRunningError
from .models import (
    OrchestratorStatus,
    StartResult,
    SyncConfig,
    SyncMode,
    SyncRecord,
    SyncState,
)
from .queue import SyncQueue
from .rclone import KILL_TIMEOUT, RcloneAdapter
from .registry import DirectoryRegistry, normalize_path
from .scheduler import Scheduler
from .worker import SyncAdapter, SyncWorker

logger = logging.getLogger("dirmirror.orchestrator")

AdapterFactory = Callable[[str, SyncConfig], SyncAdapter]


class LifecycleState(str, Enum):
    """Where the orchestrator is in its start/stop cycle."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def rclone_adapter_factory(remote_name: str, config: SyncConfig) -> SyncAdapter:
    """Default adapter: rclone against ``remote_name``."""
    return RcloneAdapter(remote_name, base_dir=config.base_dir)


class SyncOrchestrator:
    """Directory sync lifecycle controller.

    Args:
        config: Frozen sync configuration.
        directories: Initial directories to register.
        excludes: Exclude set; defaults to the built-in pattern list.
        adapter_factory: Builds the adapter on every ``start``.
    """

    def __init__(
        self,
        config: SyncConfig,
        directories: Iterable[str] = (),
        excludes: Optional[ExcludeSet] = None,
        adapter_factory: Optional[AdapterFactory] = None,
    ):
        self.config = config
        self.registry = DirectoryRegistry()
        self.excludes = excludes if excludes is not None else ExcludeSet.with_defaults()
        self._adapter_factory = adapter_factory or rclone_adapter_factory
        self._lifecycle_lock = threading.Lock()
        self._lifecycle_changed = threading.Condition(self._lifecycle_lock)
        self._state = LifecycleState.STOPPED
        self._stop_requested = False
        self._remote_name: Optional[str] = None
        self._adapter: Optional[SyncAdapter] = None
        self._queue: Optional[SyncQueue] = None
        self._worker: Optional[SyncWorker] = None
        self._scheduler: Optional[Scheduler] = None

        for path in directories:
            self.registry.register(path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, remote_name: Optional[str] = None) -> StartResult:
        """Start the worker pool and, in periodic mode, the scheduler.

        Args:
            remote_name: rclone remote; defaults to ``config.remote_name``.

        Returns:
            StartResult; ``already_running`` is set when a previous start
            is still in effect, and nothing else happens. ``started`` is
            False when a ``stop`` arrived before the pipeline went live.

        Raises:
            ToolUnavailableError: rclone is missing, the remote is not
                configured, or it cannot be reached. The orchestrator stays
                stopped.
        """
        with self._lifecycle_lock:
            if self._state in (LifecycleState.RUNNING, LifecycleState.STARTING):
                logger.info("Sync is already running")
                return StartResult(
                    started=False, already_running=True, message="Sync is already running"
                )
            if self._state == LifecycleState.STOPPING:
                return StartResult(started=False, message="Sync is stopping, try again")
            self._state = LifecycleState.STARTING
            self._stop_requested = False

        remote = (remote_name or self.config.remote_name).rstrip(":")
        try:
            adapter = self._adapter_factory(remote, self.config)
            adapter.check_available()
            logger.info("rclone remote '%s' verified", remote)
            if self._stop_pending():
                return self._abort_start()

            queue = SyncQueue()
            worker = SyncWorker(queue, self.registry, self.excludes, adapter, self.config)
            scheduler = None
            if self.config.sync_mode == SyncMode.PERIODIC:
                scheduler = Scheduler(
                    self.config.sync_interval_seconds, lambda: self._enqueue_all(queue)
                )

            launched = worker.start()
            if scheduler is not None:
                launched = scheduler.start() and launched
            if not launched:
                self._shutdown(adapter, queue, worker, scheduler)
                raise DirmirrorError("sync threads failed to start")
        except BaseException:
            self._finish_lifecycle(LifecycleState.STOPPED)
            raise

        with self._lifecycle_lock:
            aborted = self._stop_requested
            if not aborted:
                self._remote_name = remote
                self._adapter = adapter
                self._queue = queue
                self._worker = worker
                self._scheduler = scheduler
                self._state = LifecycleState.RUNNING
                self._lifecycle_changed.notify_all()
        if aborted:
            self._shutdown(adapter, queue, worker, scheduler)
            return self._abort_start()

        queued = self._enqueue_all(queue) if self.config.sync_on_start else 0
        if scheduler is not None:
            message = (
                f"Sync started. Syncing {len(self.registry)} directories "
                f"every {self.config.sync_interval_seconds:g} seconds"
            )
        else:
            message = f"Sync started in manual mode with {len(self.registry)} directories"
        logger.info("%s (%d queued)", message, queued)
        return StartResult(started=True, message=message)

    def stop(self) -> None:
        """Stop scheduling, drain the worker, and cancel what outlives the grace period.

        Interrupted syncs end in ``error`` with a ``canceled`` message.
        A ``stop`` that arrives while ``start`` is still checking rclone
        makes that start abort, and returns once it has. Calling ``stop``
        when not running does nothing.
        """
        with self._lifecycle_lock:
            while self._state in (LifecycleState.STARTING, LifecycleState.STOPPING):
                if self._state == LifecycleState.STARTING:
                    self._stop_requested = True
                self._lifecycle_changed.wait()
            if self._state != LifecycleState.RUNNING:
                logger.info("Sync is not running")
                return
            self._state = LifecycleState.STOPPING
            adapter = self._adapter
            queue = self._queue
            worker = self._worker
            scheduler = self._scheduler

        logger.info("Stopping sync...")
        self._shutdown(adapter, queue, worker, scheduler)

        with self._lifecycle_lock:
            self._adapter = None
            self._queue = None
            self._worker = None
            self._scheduler = None
        self._finish_lifecycle(LifecycleState.STOPPED)
        logger.info("Sync stopped")

    def _shutdown(
        self,
        adapter: SyncAdapter,
        queue: SyncQueue,
        worker: SyncWorker,
        scheduler: Optional[Scheduler],
    ) -> None:
        if scheduler is not None:
            scheduler.stop(timeout=5)

        # Close before clearing: no enqueue can land after the clear, and
        # every accepted one has already marked its directory queued.
        queue.close()
        dropped = queue.clear()
        self.registry.reset_queued()
        if dropped:
            logger.info("Dropped %d pending sync request(s)", dropped)

        if not worker.join(timeout=self.config.stop_grace_seconds):
            logger.warning("Grace period elapsed, canceling in-flight syncs")
            adapter.cancel()
            if not worker.join(timeout=KILL_TIMEOUT + 5):
                logger.error("Sync worker did not exit after cancellation")

    def _stop_pending(self) -> bool:
        with self._lifecycle_lock:
            return self._stop_requested

    def _abort_start(self) -> StartResult:
        logger.info("Sync start canceled by stop")
        self._finish_lifecycle(LifecycleState.STOPPED)
        return StartResult(started=False, message="Sync start canceled by stop")

    def _finish_lifecycle(self, state: LifecycleState) -> None:
        with self._lifecycle_lock:
            self._state = state
            self._stop_requested = False
            self._lifecycle_changed.notify_all()

    @property
    def running(self) -> bool:
        with self._lifecycle_lock:
            return self._state == LifecycleState.RUNNING

    @property
    def remote_name(self) -> Optional[str]:
        """Remote the running pipeline was started against."""
        with self._lifecycle_lock:
            return self._remote_name

    @property
    def lifecycle_state(self) -> LifecycleState:
        with self._lifecycle_lock:
            return self._state

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> OrchestratorStatus:
        """Point-in-time status for reporting."""
        with self._lifecycle_lock:
            running = self._state == LifecycleState.RUNNING
            queue = self._queue
        return OrchestratorStatus(
            running=running,
            sync_mode=self.config.sync_mode,
            sync_interval_seconds=self.config.sync_interval_seconds,
            directories=len(self.registry),
            queue_size=queue.size() if queue is not None else 0,
            sync_states=self.registry.snapshot(),
        )

    def get_state(self, path: str) -> SyncState:
        """State of one directory. Raises ``DirectoryNotFoundError``."""
        return self.registry.get(path)

    def history(self, limit: Optional[int] = None) -> list[SyncRecord]:
        """Recent sync executions, oldest first (in memory only)."""
        return self.registry.history(limit)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def add_directory(self, path: str) -> bool:
        """Register a directory; the next scheduler tick picks it up."""
        return self.registry.register(path)

    def sync_all(self) -> int:
        """Queue every registered directory for a normal sync.

        Returns immediately. Returns the number of new queue entries.

        Raises:
            NotRunningError: The orchestrator is stopped.
        """
        return self._enqueue_all(self._running_queue())

    def sync_one(self, path: str) -> bool:
        """Queue a normal sync of ``path``.

        Returns:
            False if an equivalent request was already waiting.
        """
        return self._enqueue(path, force_resync=False)

    def resync_one(self, path: str) -> bool:
        """Queue a forced resync of ``path``, escalating a waiting normal sync."""
        return self._enqueue(path, force_resync=True)

    def _enqueue(self, path: str, force_resync: bool) -> bool:
        queue = self._running_queue()
        key = normalize_path(path)
        if key not in self.registry:
            raise DirectoryNotFoundError(key)
        queued = queue.enqueue(
            key, force_resync=force_resync, on_queued=self.registry.mark_queued
        )
        if queued:
            logger.info("Queued %s for %s", key, "resync" if force_resync else "sync")
        return queued

    def _enqueue_all(self, queue: SyncQueue) -> int:
        count = 0
        for path in self.registry.paths():
            if queue.enqueue(path, on_queued=self.registry.mark_queued):
                count += 1
        return count

    def _running_queue(self) -> SyncQueue:
        with self._lifecycle_lock:
            if self._state != LifecycleState.RUNNING or self._queue is None:
                raise NotRunningError()
            return self._queue

    # ------------------------------------------------------------------
    # Exclude patterns
    # ------------------------------------------------------------------

    def add_exclude_pattern(self, pattern: str) -> bool:
        """Add a filter rule; applies from the next sync on."""
        return self.excludes.add(pattern)

    def remove_exclude_pattern(self, pattern: str) -> bool:
        return self.excludes.remove(pattern)

    def list_exclude_patterns(self) -> list[str]:
        return self.excludes.list()
