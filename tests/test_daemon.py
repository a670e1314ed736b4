"""Tests for the dirmirror daemon."""

from __future__ import annotations

import json
import os
import urllib.request
from unittest.mock import patch

import pytest

from conftest import FakeAdapter, wait_for
from dirmirror.config import AppConfig
from dirmirror.daemon import (
    PID_FILE,
    DaemonConfig,
    DaemonService,
    DaemonState,
    api_request,
    build_orchestrator,
    is_running,
    read_pid,
)
from dirmirror.excludes import DEFAULT_EXCLUDE_PATTERNS, ExcludeSet
from dirmirror.models import SyncStatus
from dirmirror.orchestrator import SyncOrchestrator


@pytest.fixture
def daemon_config(tmp_home):
    return DaemonConfig(home=tmp_home, port=0, autostart=False)


@pytest.fixture
def docs(tmp_path):
    path = tmp_path / "docs"
    path.mkdir()
    return str(path)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def service(daemon_config, manual_config, docs, adapter):
    orchestrator = SyncOrchestrator(
        manual_config,
        directories=[docs],
        excludes=ExcludeSet(["**/.git/**"]),
        adapter_factory=lambda remote, cfg: adapter,
    )
    svc = DaemonService(daemon_config, orchestrator)
    yield svc
    orchestrator.stop()


class TestDaemonState:
    def test_initial_state(self):
        state = DaemonState()
        assert state.running is False
        assert state.errors == []

    def test_snapshot(self):
        snap = DaemonState().snapshot()
        assert snap["running"] is False
        assert snap["uptime_seconds"] == 0
        assert snap["pid"] == os.getpid()

    def test_record_error_bounded(self):
        state = DaemonState()
        for n in range(60):
            state.record_error(f"error {n}")
        assert len(state.errors) == 50
        assert state.errors[-1].endswith("error 59")
        assert len(state.snapshot()["recent_errors"]) == 10


class TestDaemonConfig:
    def test_creates_log_dir(self, tmp_home):
        config = DaemonConfig(home=tmp_home)
        assert config.log_file == tmp_home / "logs" / "daemon.log"
        assert config.log_file.parent.is_dir()


class TestPidFile:
    def test_no_pid_file(self, tmp_home):
        assert read_pid(tmp_home) is None
        assert is_running(tmp_home) is False

    def test_live_pid(self, tmp_home):
        (tmp_home / PID_FILE).write_text(str(os.getpid()))
        assert read_pid(tmp_home) == os.getpid()
        assert is_running(tmp_home) is True

    def test_stale_pid_removed(self, tmp_home):
        (tmp_home / PID_FILE).write_text("999999999")
        with patch("dirmirror.daemon.os.kill", side_effect=ProcessLookupError):
            assert read_pid(tmp_home) is None
        assert not (tmp_home / PID_FILE).exists()

    def test_garbage_pid_removed(self, tmp_home):
        (tmp_home / PID_FILE).write_text("not-a-pid")
        assert read_pid(tmp_home) is None
        assert not (tmp_home / PID_FILE).exists()


class TestBuildOrchestrator:
    def test_default_excludes_merged(self):
        orch = build_orchestrator(
            AppConfig(directories=["/data/a"], excludes=["**/*.iso"])
        )
        patterns = orch.list_exclude_patterns()
        assert patterns[: len(DEFAULT_EXCLUDE_PATTERNS)] == DEFAULT_EXCLUDE_PATTERNS
        assert patterns[-1] == "**/*.iso"
        assert orch.registry.paths() == ["/data/a"]

    def test_without_default_excludes(self):
        orch = build_orchestrator(
            AppConfig(directories=["/data/a"], excludes=["*.tmp"], use_default_excludes=False)
        )
        assert orch.list_exclude_patterns() == ["*.tmp"]


class TestHandle:
    """Routing of API requests to the orchestrator."""

    def test_status_stopped(self, service, docs):
        code, payload = service.handle("GET", "/status")
        assert code == 200
        assert payload["running"] is False
        assert payload["schema_version"] == 1
        assert payload["remote_name"] == "gdrive"
        assert payload["sync_states"][docs]["status"] == "idle"
        assert "daemon" in payload

    def test_sync_requires_running(self, service, docs):
        code, payload = service.handle("POST", f"/sync?path={docs}")
        assert code == 409
        assert "not running" in payload["error"]

    def test_start_then_sync(self, service, docs, adapter):
        code, payload = service.handle("POST", "/start")
        assert code == 200
        assert payload["started"] is True

        code, payload = service.handle("POST", f"/sync?path={docs}")
        assert code == 200
        assert payload == {"queued": True, "path": docs}
        assert wait_for(lambda: len(adapter.calls) == 1)

        code, payload = service.handle("POST", "/start")
        assert payload["already_running"] is True

    def test_sync_all(self, service):
        service.handle("POST", "/start")
        code, payload = service.handle("POST", "/sync")
        assert code == 200
        assert payload["queued"] == 1

    def test_resync_requires_path(self, service):
        service.handle("POST", "/start")
        code, payload = service.handle("POST", "/resync")
        assert code == 400

    def test_unknown_directory_404(self, service):
        service.handle("POST", "/start")
        code, payload = service.handle("POST", "/resync?path=/nowhere")
        assert code == 404
        assert "Directory not found" in payload["error"]

    def test_tool_unavailable_503(self, service, adapter):
        adapter.available = False
        code, payload = service.handle("POST", "/start")
        assert code == 503
        assert service.state.errors

    def test_stop(self, service):
        service.handle("POST", "/start")
        code, payload = service.handle("POST", "/stop")
        assert code == 200
        assert service.orchestrator.running is False

    def test_excludes(self, service):
        code, payload = service.handle("POST", "/excludes", {"pattern": "**/*.iso"})
        assert payload == {"added": True}
        code, payload = service.handle("POST", "/excludes", {"pattern": "**/*.iso"})
        assert payload == {"added": False}
        code, payload = service.handle("GET", "/excludes")
        assert payload["patterns"] == ["**/.git/**", "**/*.iso"]
        code, payload = service.handle("POST", "/excludes", {"pattern": "**/*.iso", "remove": True})
        assert payload == {"removed": True}

    def test_blank_exclude_rejected(self, service):
        code, payload = service.handle("POST", "/excludes", {"pattern": " "})
        assert code == 400

    def test_history(self, service, docs, adapter):
        service.handle("POST", "/start")
        service.handle("POST", f"/sync?path={docs}")
        assert wait_for(lambda: len(service.orchestrator.history()) == 1)
        code, payload = service.handle("GET", "/history?limit=5")
        assert payload["history"][0]["path"] == docs
        assert payload["history"][0]["success"] is True

    def test_unknown_endpoint(self, service):
        code, _ = service.handle("POST", "/bogus")
        assert code == 404


class TestService:
    """Full daemon with a real HTTP server on an ephemeral port."""

    def test_start_serves_api_and_stops(self, service, daemon_config):
        service.start()
        try:
            port = service._server.server_address[1]
            assert (daemon_config.home / PID_FILE).exists()

            with urllib.request.urlopen(f"http://127.0.0.1:{port}/ping", timeout=5) as resp:
                assert json.loads(resp.read())["pong"] is True

            assert api_request("POST", "/start", port=port)["started"] is True
            status = api_request("GET", "/status", port=port)
            assert status["running"] is True
            assert status["daemon"]["running"] is True

            missing = api_request("POST", "/sync", port=port, params={"path": "/nowhere"})
            assert "error" in missing

            added = api_request("POST", "/excludes", port=port, payload={"pattern": "*.bak"})
            assert added == {"added": True}
        finally:
            service.stop()

        assert not (daemon_config.home / PID_FILE).exists()
        assert service.orchestrator.running is False

    def test_autostart(self, daemon_config, manual_config, docs):
        adapter = FakeAdapter()
        orchestrator = SyncOrchestrator(
            manual_config.model_copy(update={"sync_on_start": True}),
            directories=[docs],
            adapter_factory=lambda remote, cfg: adapter,
        )
        daemon_config.autostart = True
        svc = DaemonService(daemon_config, orchestrator)
        with patch("dirmirror.daemon.os.geteuid", return_value=1000, create=True):
            svc.start()
            try:
                assert wait_for(lambda: len(adapter.calls) == 1)
                assert orchestrator.get_state(docs).status == SyncStatus.IDLE
            finally:
                svc.stop()

    def test_autostart_failure_keeps_daemon_up(self, daemon_config, manual_config, docs):
        orchestrator = SyncOrchestrator(
            manual_config,
            directories=[docs],
            adapter_factory=lambda remote, cfg: FakeAdapter(available=False),
        )
        daemon_config.autostart = True
        svc = DaemonService(daemon_config, orchestrator)
        with patch("dirmirror.daemon.os.geteuid", return_value=1000, create=True):
            svc.start()
            try:
                assert wait_for(lambda: bool(svc.state.errors))
                assert svc.state.running is True
                assert orchestrator.running is False
            finally:
                svc.stop()


class TestApiRequest:
    def test_unreachable_returns_none(self):
        with patch("urllib.request.urlopen", side_effect=OSError("refused")):
            assert api_request("GET", "/status", port=1) is None
