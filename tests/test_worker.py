"""Tests for the sync worker pool."""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from conftest import FakeAdapter, wait_for
from dirmirror.excludes import ExcludeSet
from dirmirror.models import ErrorKind, SyncConfig, SyncQueueEntry, SyncResult, SyncStatus
from dirmirror.queue import SyncQueue
from dirmirror.registry import DirectoryRegistry
from dirmirror.worker import SyncWorker

FIXED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def setup(tmp_path):
    registry = DirectoryRegistry()
    docs = str(tmp_path / "docs")
    registry.register(docs)
    queue = SyncQueue()
    adapter = FakeAdapter()
    config = SyncConfig(sync_timeout_seconds=42, resync_timeout_seconds=420, base_dir=tmp_path)
    worker = SyncWorker(
        queue, registry, ExcludeSet(["**/*.iso"]), adapter, config, clock=lambda: FIXED
    )
    return worker, docs


def entry(path: str, force: bool = False) -> SyncQueueEntry:
    return SyncQueueEntry(path=path, force_resync=force, enqueued_at=FIXED)


class TestProcess:
    """Single-entry processing."""

    def test_success_records_time(self, setup):
        worker, docs = setup
        result = worker.process(entry(docs))
        assert result.success is True
        state = worker.registry.get(docs)
        assert state.status == SyncStatus.IDLE
        assert state.last_sync_time == FIXED

    def test_passes_excludes_and_timeout(self, setup):
        worker, docs = setup
        worker.process(entry(docs))
        worker.process(entry(docs, force=True))
        normal, forced = worker.adapter.calls
        assert normal.excludes == ["**/*.iso"]
        assert normal.timeout == 42
        assert forced.force_resync is True
        assert forced.timeout == 420

    def test_failure_sets_error(self, setup):
        worker, docs = setup
        worker.adapter.queue_result(
            docs,
            SyncResult(success=False, error_kind=ErrorKind.NETWORK_ERROR, detail="dial tcp"),
        )
        worker.process(entry(docs))
        state = worker.registry.get(docs)
        assert state.status == SyncStatus.ERROR
        assert state.error_message == "network_error: dial tcp"
        assert state.error_kind == ErrorKind.NETWORK_ERROR
        assert state.last_sync_time is None

    def test_adapter_exception_is_unknown(self, setup):
        worker, docs = setup

        def boom(*args, **kwargs):
            raise RuntimeError("kaboom")

        worker.adapter.run = boom
        result = worker.process(entry(docs))
        assert result.error_kind == ErrorKind.UNKNOWN
        assert worker.registry.get(docs).error_message == "unknown: kaboom"

    def test_skips_directory_already_syncing(self, setup):
        worker, docs = setup
        worker.registry.mark_syncing(docs)
        assert worker.process(entry(docs)) is None
        assert worker.adapter.calls == []

    def test_queued_again_after_success_when_pending(self, setup):
        worker, docs = setup
        worker.queue.enqueue(docs)
        worker.process(entry(docs))
        assert worker.registry.get(docs).status == SyncStatus.QUEUED

    def test_history_recorded(self, setup):
        worker, docs = setup
        worker.process(entry(docs, force=True))
        (record,) = worker.registry.history()
        assert record.path == docs
        assert record.force_resync is True
        assert record.success is True


class TestPool:
    def test_drains_queue_and_exits_on_close(self, setup):
        worker, docs = setup
        assert worker.start() is True
        worker.queue.enqueue(docs)
        assert wait_for(lambda: len(worker.adapter.calls) == 1)
        worker.queue.close()
        assert worker.join(timeout=2) is True
        assert worker.alive is False

    def test_thread_names(self, setup):
        worker, _ = setup
        worker.start()
        names = {t.name for t in threading.enumerate()}
        assert "dirmirror-worker-0" in names
        worker.queue.close()
        worker.join(timeout=2)
