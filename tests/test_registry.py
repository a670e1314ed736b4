"""Tests for the directory registry and state transitions."""

from __future__ import annotations

import os
from datetime import datetime, timezone

import pytest

from dirmirror.exceptions import DirectoryNotFoundError
from dirmirror.models import ErrorKind, SyncRecord, SyncStatus
from dirmirror.registry import DirectoryRegistry, normalize_path


class TestRegistration:
    def test_register_normalizes(self, tmp_path):
        reg = DirectoryRegistry()
        assert reg.register(str(tmp_path / "docs" / ".." / "docs")) is True
        assert reg.paths() == [str(tmp_path / "docs")]

    def test_register_twice(self, tmp_path):
        reg = DirectoryRegistry()
        reg.register(str(tmp_path))
        assert reg.register(str(tmp_path)) is False
        assert len(reg) == 1

    def test_expands_home(self):
        assert normalize_path("~/Documents") == os.path.join(
            os.path.expanduser("~"), "Documents"
        )

    def test_new_directory_is_idle(self, tmp_path):
        reg = DirectoryRegistry()
        reg.register(str(tmp_path))
        state = reg.get(str(tmp_path))
        assert state.status == SyncStatus.IDLE
        assert state.last_sync_time is None
        assert state.error_message is None

    def test_get_unknown_raises(self):
        with pytest.raises(DirectoryNotFoundError) as exc_info:
            DirectoryRegistry().get("/nope")
        assert exc_info.value.path == "/nope"

    def test_get_returns_copy(self, tmp_path):
        reg = DirectoryRegistry()
        reg.register(str(tmp_path))
        state = reg.get(str(tmp_path))
        state.status = SyncStatus.ERROR
        assert reg.get(str(tmp_path)).status == SyncStatus.IDLE

    def test_contains(self, tmp_path):
        reg = DirectoryRegistry()
        reg.register(str(tmp_path))
        assert str(tmp_path) in reg
        assert "/elsewhere" not in reg
        assert 42 not in reg


class TestTransitions:
    @pytest.fixture
    def reg(self, tmp_path):
        reg = DirectoryRegistry()
        reg.register(str(tmp_path))
        return reg

    def test_mark_queued_only_from_idle(self, reg, tmp_path):
        path = str(tmp_path)
        reg.mark_queued(path)
        assert reg.get(path).status == SyncStatus.QUEUED

        reg.mark_syncing(path)
        reg.mark_queued(path)
        assert reg.get(path).status == SyncStatus.SYNCING

    def test_error_keeps_message_when_requeued(self, reg, tmp_path):
        path = str(tmp_path)
        reg.mark_syncing(path)
        reg.mark_failure(path, ErrorKind.NETWORK_ERROR, "network_error: dial tcp")
        reg.mark_queued(path)
        state = reg.get(path)
        assert state.status == SyncStatus.ERROR
        assert state.error_message == "network_error: dial tcp"

    def test_mark_syncing_refuses_double_claim(self, reg, tmp_path):
        path = str(tmp_path)
        assert reg.mark_syncing(path) is True
        assert reg.mark_syncing(path) is False
        assert reg.mark_syncing("/unknown") is False

    def test_mark_syncing_clears_error(self, reg, tmp_path):
        path = str(tmp_path)
        reg.mark_syncing(path)
        reg.mark_failure(path, ErrorKind.AUTH_ERROR, "auth_error: invalid_grant")
        reg.mark_syncing(path)
        state = reg.get(path)
        assert state.error_message is None
        assert state.error_kind is None

    def test_success_sets_time(self, reg, tmp_path):
        path = str(tmp_path)
        when = datetime(2026, 1, 2, tzinfo=timezone.utc)
        reg.mark_syncing(path)
        reg.mark_success(path, when=when)
        state = reg.get(path)
        assert state.status == SyncStatus.IDLE
        assert state.last_sync_time == when

    def test_success_with_pending_entry_is_queued(self, reg, tmp_path):
        path = str(tmp_path)
        reg.mark_syncing(path)
        reg.mark_success(path, still_queued=True)
        assert reg.get(path).status == SyncStatus.QUEUED

    def test_failure_keeps_last_sync_time(self, reg, tmp_path):
        path = str(tmp_path)
        when = datetime(2026, 1, 2, tzinfo=timezone.utc)
        reg.mark_syncing(path)
        reg.mark_success(path, when=when)
        reg.mark_syncing(path)
        reg.mark_failure(path, ErrorKind.TIMEOUT, "timeout: sync exceeded 60s")
        state = reg.get(path)
        assert state.status == SyncStatus.ERROR
        assert state.last_sync_time == when
        assert state.error_kind == ErrorKind.TIMEOUT

    def test_failure_without_message_uses_kind(self, reg, tmp_path):
        path = str(tmp_path)
        reg.mark_syncing(path)
        reg.mark_failure(path, ErrorKind.UNKNOWN, "")
        assert reg.get(path).error_message == "unknown"

    def test_reset_queued(self, reg, tmp_path):
        path = str(tmp_path)
        reg.mark_queued(path)
        reg.reset_queued()
        assert reg.get(path).status == SyncStatus.IDLE


class TestHistory:
    def _record(self, path: str) -> SyncRecord:
        now = datetime.now(timezone.utc)
        return SyncRecord(
            path=path,
            force_resync=False,
            started_at=now,
            finished_at=now,
            success=True,
            error_kind=ErrorKind.SUCCESS,
        )

    def test_bounded(self):
        reg = DirectoryRegistry(history_limit=3)
        for n in range(5):
            reg.record(self._record(f"/d{n}"))
        assert [r.path for r in reg.history()] == ["/d2", "/d3", "/d4"]

    def test_limit(self):
        reg = DirectoryRegistry()
        for n in range(4):
            reg.record(self._record(f"/d{n}"))
        assert [r.path for r in reg.history(limit=2)] == ["/d2", "/d3"]
        assert reg.history(limit=0) == []
