"""Shared test fixtures for dirmirror."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import pytest

from dirmirror.exceptions import ToolUnavailableError
from dirmirror.models import ErrorKind, SyncConfig, SyncMode, SyncResult


@dataclass
class AdapterCall:
    """One recorded adapter invocation."""

    path: str
    force_resync: bool
    timeout: Optional[float]
    excludes: list
    started: float
    finished: float


class FakeAdapter:
    """In-memory stand-in for the rclone adapter.

    Records every call with its start/end time. ``gate`` (when given)
    holds every run until it is set or the adapter is canceled.
    """

    def __init__(
        self,
        delay: float = 0.0,
        gate: Optional[threading.Event] = None,
        available: bool = True,
    ):
        self.delay = delay
        self.gate = gate
        self.available = available
        self.results: dict[str, list[SyncResult]] = {}
        self.calls: list[AdapterCall] = []
        self.started = threading.Event()
        self._lock = threading.Lock()
        self._canceled = threading.Event()

    def queue_result(self, path: str, result: SyncResult) -> None:
        """Return ``result`` for the next run of ``path``."""
        self.results.setdefault(path, []).append(result)

    def check_available(self) -> None:
        if not self.available:
            raise ToolUnavailableError("rclone is not installed or not in PATH")

    def run(self, path, exclude_patterns, force_resync=False, timeout=None):
        start = time.monotonic()
        self.started.set()
        canceled = False
        if self.gate is not None:
            while not self.gate.is_set():
                if self._canceled.wait(0.01):
                    canceled = True
                    break
        elif self.delay:
            canceled = self._canceled.wait(self.delay)

        with self._lock:
            self.calls.append(
                AdapterCall(path, force_resync, timeout, list(exclude_patterns), start, time.monotonic())
            )
            if canceled:
                return SyncResult(
                    success=False,
                    error_kind=ErrorKind.CANCELED,
                    detail="sync canceled by shutdown",
                )
            pending = self.results.get(path)
            if pending:
                return pending.pop(0)
        return SyncResult(success=True)

    def cancel(self) -> None:
        self._canceled.set()

    def calls_for(self, path: str) -> list[AdapterCall]:
        with self._lock:
            return [c for c in self.calls if c.path == path]


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def manual_config(tmp_path: Path) -> SyncConfig:
    """Manual mode, nothing queued on start, short grace period."""
    return SyncConfig(
        remote_name="gdrive",
        sync_mode=SyncMode.MANUAL,
        sync_on_start=False,
        stop_grace_seconds=0.2,
        base_dir=tmp_path,
    )


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary dirmirror home directory."""
    home = tmp_path / ".dirmirror"
    home.mkdir()
    return home
