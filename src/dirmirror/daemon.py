"""
dirmirror daemon -- the always-on process around the sync orchestrator.

This is the composition root: it loads the configuration, builds the one
``SyncOrchestrator`` for the process, auto-starts it on a background
thread, and exposes a local HTTP API so the CLI can query status and
trigger syncs in the running process.

    GET  /status  /excludes  /history  /ping
    POST /start  /stop  /sync[?path=]  /resync?path=  /excludes
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from .config import DEFAULT_PORT, AppConfig, load_config, resolve_home
from .excludes import ExcludeSet
from .exceptions import (
    DirectoryNotFoundError,
    DirmirrorError,
    NotRunningError,
    ToolUnavailableError,
)
from .orchestrator import SyncOrchestrator

logger = logging.getLogger("dirmirror.daemon")

PID_FILE = "daemon.pid"
LOG_DIR = "logs"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class DaemonConfig:
    """Configuration for the daemon process.

    Attributes:
        home: dirmirror home directory.
        port: HTTP API port for local queries.
        autostart: Start syncing as soon as the daemon is up.
        log_file: Path for daemon log output.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        port: int = DEFAULT_PORT,
        autostart: bool = True,
    ):
        self.home = resolve_home(home)
        self.port = port
        self.autostart = autostart

        log_dir = self.home / LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = log_dir / "daemon.log"


class DaemonState:
    """Thread-safe daemon-level state: uptime and recent errors."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.running: bool = False
        self.errors: list[str] = []

    def snapshot(self) -> dict:
        """Serializable view of the daemon state."""
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at
                    else 0
                ),
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]


def build_orchestrator(app_config: AppConfig) -> SyncOrchestrator:
    """Construct the orchestrator described by ``app_config``."""
    if app_config.use_default_excludes:
        excludes = ExcludeSet.with_defaults(app_config.excludes)
    else:
        excludes = ExcludeSet(app_config.excludes)
    return SyncOrchestrator(
        app_config.sync,
        directories=app_config.resolved_directories(),
        excludes=excludes,
    )


class DaemonService:
    """The dirmirror daemon process.

    Args:
        config: Daemon process configuration.
        orchestrator: Pre-built orchestrator; built from the home's
            config.yaml when omitted.
    """

    def __init__(
        self,
        config: DaemonConfig,
        orchestrator: Optional[SyncOrchestrator] = None,
    ):
        self.config = config
        self.orchestrator = orchestrator or build_orchestrator(load_config(config.home))
        self.state = DaemonState()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._server: Optional[ThreadingHTTPServer] = None
        self._log_handler: Optional[logging.Handler] = None
        self._prev_handlers: dict = {}

    def start(self) -> None:
        """Start the API server and auto-start sync in the background."""
        self._write_pid()
        self._setup_logging()
        self._setup_signals()

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)

        logger.info(
            "Daemon starting — home=%s port=%d remote=%s",
            self.config.home,
            self.config.port,
            self.orchestrator.config.remote_name,
        )

        self._start_api_server()

        if self.config.autostart:
            t = threading.Thread(target=self._autostart, name="daemon-autostart", daemon=True)
            t.start()
            self._threads.append(t)

        logger.info("Daemon started — PID %d", os.getpid())

    def stop(self) -> None:
        """Stop sync, the API server, and remove the PID file."""
        logger.info("Daemon stopping...")
        self._stop_event.set()
        self.state.running = False

        self.orchestrator.stop()

        if self._server:
            self._server.shutdown()
            self._server.server_close()

        for t in self._threads:
            t.join(timeout=5)

        self._remove_pid()
        self._restore_signals()
        logger.info("Daemon stopped.")
        if self._log_handler is not None:
            logging.getLogger().removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _autostart(self) -> None:
        """Start the orchestrator; failures are logged, the daemon keeps running."""
        if hasattr(os, "geteuid") and os.geteuid() == 0:
            logger.info("Skipping sync auto-start (running as root - rclone config is per user)")
            return
        try:
            result = self.orchestrator.start()
            logger.info("Auto-start: %s", result.message)
        except ToolUnavailableError as exc:
            logger.error("Sync auto-start failed: %s", exc)
            self.state.record_error(f"Auto-start: {exc}")
        except Exception as exc:
            logger.exception("Sync auto-start crashed")
            self.state.record_error(f"Auto-start: {exc}")

    # ------------------------------------------------------------------
    # HTTP API
    # ------------------------------------------------------------------

    def handle(self, method: str, raw_path: str, body: Optional[dict] = None) -> tuple[int, Any]:
        """Route one API request to the orchestrator.

        Returns:
            (HTTP status code, JSON-serializable payload).
        """
        url = urlparse(raw_path)
        params = {k: v[0] for k, v in parse_qs(url.query).items()}
        orch = self.orchestrator
        try:
            if method == "GET":
                if url.path == "/status":
                    payload = orch.status().model_dump(mode="json")
                    payload["daemon"] = self.state.snapshot()
                    payload["remote_name"] = orch.remote_name or orch.config.remote_name
                    return 200, payload
                if url.path == "/excludes":
                    return 200, {"patterns": orch.list_exclude_patterns()}
                if url.path == "/history":
                    limit = int(params["limit"]) if "limit" in params else None
                    return 200, {
                        "history": [r.model_dump(mode="json") for r in orch.history(limit)]
                    }
                if url.path == "/ping":
                    return 200, {"pong": True, "pid": os.getpid()}
                return 200, {
                    "endpoints": ["/status", "/excludes", "/history", "/ping"],
                }

            if method == "POST":
                if url.path == "/start":
                    result = orch.start(params.get("remote"))
                    return 200, result.model_dump(mode="json")
                if url.path == "/stop":
                    orch.stop()
                    return 200, {"stopped": True}
                if url.path == "/sync":
                    if "path" in params:
                        queued = orch.sync_one(params["path"])
                        return 200, {"queued": queued, "path": params["path"]}
                    return 200, {"queued": orch.sync_all()}
                if url.path == "/resync":
                    if "path" not in params:
                        return 400, {"error": "path is required"}
                    queued = orch.resync_one(params["path"])
                    return 200, {"queued": queued, "path": params["path"]}
                if url.path == "/excludes":
                    pattern = (body or {}).get("pattern", "")
                    if (body or {}).get("remove"):
                        return 200, {"removed": orch.remove_exclude_pattern(pattern)}
                    return 200, {"added": orch.add_exclude_pattern(pattern)}
            return 404, {"error": f"unknown endpoint {method} {url.path}"}
        except DirectoryNotFoundError as exc:
            return 404, {"error": str(exc)}
        except NotRunningError as exc:
            return 409, {"error": str(exc)}
        except ToolUnavailableError as exc:
            self.state.record_error(f"Start: {exc}")
            return 503, {"error": str(exc)}
        except (ValueError, DirmirrorError) as exc:
            return 400, {"error": str(exc)}

    def _start_api_server(self) -> None:
        """Start the local HTTP API server in a background thread."""
        service = self

        class DaemonHandler(BaseHTTPRequestHandler):
            """HTTP handler for the daemon API."""

            def do_GET(self):
                status, data = service.handle("GET", self.path)
                self._json_response(data, status)

            def do_POST(self):
                length = int(self.headers.get("Content-Length") or 0)
                body = None
                if length:
                    try:
                        body = json.loads(self.rfile.read(length))
                    except json.JSONDecodeError:
                        self._json_response({"error": "invalid JSON body"}, 400)
                        return
                status, data = service.handle("POST", self.path, body)
                self._json_response(data, status)

            def _json_response(self, data: Any, status: int = 200):
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.end_headers()
                self.wfile.write(json.dumps(data, indent=2, default=str).encode())

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        try:
            self._server = ThreadingHTTPServer(("127.0.0.1", self.config.port), DaemonHandler)
            t = threading.Thread(
                target=self._server.serve_forever,
                name="daemon-api",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
            logger.info("API server listening on http://127.0.0.1:%d", self.config.port)
        except OSError as exc:
            logger.error("Failed to start API server: %s", exc)
            self.state.record_error(f"API server: {exc}")

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    def _setup_logging(self) -> None:
        """Configure file logging."""
        handler = logging.FileHandler(self.config.log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.INFO)
        self._log_handler = handler

    def _setup_signals(self) -> None:
        """Register signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            self._prev_handlers[sig] = signal.signal(sig, self._handle_signal)

    def _restore_signals(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig, handler in self._prev_handlers.items():
            signal.signal(sig, handler)
        self._prev_handlers.clear()

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s — stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _write_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        if pid_path.exists():
            pid_path.unlink()


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the daemon PID from the PID file.

    Args:
        home: dirmirror home directory.

    Returns:
        PID as int, or None if not running. A stale PID file is removed.
    """
    pid_path = resolve_home(home) / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    """Check if the daemon process is alive."""
    return read_pid(home) is not None


def api_request(
    method: str,
    path: str,
    port: int = DEFAULT_PORT,
    params: Optional[dict] = None,
    payload: Optional[dict] = None,
    timeout: float = 30,
) -> Optional[dict]:
    """Call the running daemon's HTTP API.

    Args:
        method: ``GET`` or ``POST``.
        path: Endpoint, e.g. ``/sync``.
        port: API port.
        params: Query parameters.
        payload: JSON body for POST requests.
        timeout: Socket timeout in seconds.

    Returns:
        Decoded JSON response (error responses included, with an
        ``error`` key), or None if the daemon is unreachable.
    """
    import urllib.error
    import urllib.request
    from urllib.parse import urlencode

    url = f"http://127.0.0.1:{port}{path}"
    if params:
        url += "?" + urlencode(params)
    data = json.dumps(payload).encode() if payload is not None else None
    req = urllib.request.Request(url, data=data, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read())
    except urllib.error.HTTPError as exc:
        try:
            return json.loads(exc.read())
        except json.JSONDecodeError:
            return {"error": f"HTTP {exc.code}"}
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None


def get_daemon_status(port: int = DEFAULT_PORT) -> Optional[dict]:
    """Query the running daemon's status, or None if unreachable."""
    return api_request("GET", "/status", port=port, timeout=3)
