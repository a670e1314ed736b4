"""
Directory registry and sync state store.

The registry owns the set of managed directories and one ``SyncState``
per directory. Readers get copies taken under a brief lock; only the
worker (and the enqueue path, for ``idle -> queued``) mutates state.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .exceptions import DirectoryNotFoundError
from .models import ErrorKind, SyncRecord, SyncState, SyncStatus

logger = logging.getLogger("dirmirror.registry")

HISTORY_LIMIT = 100


def normalize_path(path: str) -> str:
    """Expand ``~`` and make ``path`` absolute without touching the disk."""
    return os.path.abspath(os.path.expanduser(str(path)))


@dataclass
class Directory:
    """A directory under management.

    Attributes:
        path: Absolute local path, the registry key.
        registered_at: When the directory was added.
    """

    path: str
    registered_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class DirectoryRegistry:
    """Thread-safe registry of directories and their sync state."""

    def __init__(self, history_limit: int = HISTORY_LIMIT):
        self._lock = threading.Lock()
        self._directories: dict[str, Directory] = {}
        self._states: dict[str, SyncState] = {}
        self._history: deque[SyncRecord] = deque(maxlen=history_limit)

    # ------------------------------------------------------------------
    # Registration and reads
    # ------------------------------------------------------------------

    def register(self, path: str) -> bool:
        """Add a directory with an ``idle`` state.

        Returns:
            True if the directory was new, False if it was already known.
        """
        key = normalize_path(path)
        with self._lock:
            if key in self._directories:
                return False
            self._directories[key] = Directory(path=key)
            self._states[key] = SyncState()
        logger.debug("Registered directory: %s", key)
        return True

    def paths(self) -> list[str]:
        """Registered paths in registration order."""
        with self._lock:
            return list(self._directories)

    def directory(self, path: str) -> Directory:
        """Return the ``Directory`` record for ``path``."""
        key = normalize_path(path)
        with self._lock:
            try:
                return self._directories[key]
            except KeyError:
                raise DirectoryNotFoundError(key) from None

    def get(self, path: str) -> SyncState:
        """Return a copy of the state for ``path``.

        Raises:
            DirectoryNotFoundError: If ``path`` is not registered.
        """
        key = normalize_path(path)
        with self._lock:
            state = self._states.get(key)
            if state is None:
                raise DirectoryNotFoundError(key)
            return state.model_copy()

    def snapshot(self) -> dict[str, SyncState]:
        """Consistent point-in-time copy of every directory's state."""
        with self._lock:
            return {path: state.model_copy() for path, state in self._states.items()}

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        key = normalize_path(path)
        with self._lock:
            return key in self._directories

    def __len__(self) -> int:
        with self._lock:
            return len(self._directories)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def mark_queued(self, path: str) -> None:
        """Move an ``idle`` directory to ``queued``.

        Directories in ``error`` keep their message until the retry starts;
        ``syncing`` directories are left alone.
        """
        with self._lock:
            state = self._states.get(path)
            if state is not None and state.status == SyncStatus.IDLE:
                state.status = SyncStatus.QUEUED

    def mark_syncing(self, path: str) -> bool:
        """Claim ``path`` for a sync and clear any previous error.

        Returns:
            False if the directory is unknown or already ``syncing``.
        """
        with self._lock:
            state = self._states.get(path)
            if state is None or state.status == SyncStatus.SYNCING:
                return False
            state.status = SyncStatus.SYNCING
            state.error_message = None
            state.error_kind = None
            return True

    def mark_success(
        self, path: str, when: Optional[datetime] = None, still_queued: bool = False
    ) -> None:
        """Record a successful sync."""
        with self._lock:
            state = self._states.get(path)
            if state is None:
                return
            state.status = SyncStatus.QUEUED if still_queued else SyncStatus.IDLE
            state.last_sync_time = when or datetime.now(timezone.utc)
            state.error_message = None
            state.error_kind = None

    def mark_failure(self, path: str, kind: ErrorKind, message: str) -> None:
        """Record a failed sync; ``last_sync_time`` is left untouched."""
        with self._lock:
            state = self._states.get(path)
            if state is None:
                return
            state.status = SyncStatus.ERROR
            state.error_message = message or kind.value
            state.error_kind = kind

    def reset_queued(self) -> None:
        """Return every ``queued`` directory to ``idle`` (queue was dropped)."""
        with self._lock:
            for state in self._states.values():
                if state.status == SyncStatus.QUEUED:
                    state.status = SyncStatus.IDLE

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def record(self, entry: SyncRecord) -> None:
        """Append a finished execution to the bounded history."""
        with self._lock:
            self._history.append(entry)

    def history(self, limit: Optional[int] = None) -> list[SyncRecord]:
        """Most recent executions, oldest first."""
        with self._lock:
            items = list(self._history)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items
