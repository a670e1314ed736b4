"""
rclone adapter -- runs ``rclone bisync`` for one directory.

The adapter is the only place that touches the external tool. It builds
argument vectors (never a shell string), enforces a single deadline
across every subprocess of a run, kills the subprocess on timeout or
cancellation, and classifies the exit status and stderr into an
``ErrorKind``.

A forced resync clears the bisync listing cache for the directory pair,
pushes local deletions one-way with ``rclone sync --delete-after``, and
then rebuilds the cache with ``rclone bisync --resync``. Without the
one-way pass a plain ``--resync`` would treat files deleted locally as
new on the remote and copy them back.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .exceptions import ToolUnavailableError
from .models import ErrorKind, SyncResult

logger = logging.getLogger("dirmirror.rclone")

RCLONE_BIN = "rclone"
CHECK_TIMEOUT = 10.0
CONNECT_TIMEOUT = 15.0
KILL_TIMEOUT = 5.0
MAX_DETAIL_LINES = 5

BISYNC_FLAGS = [
    "--resilient",
    "--recover",
    "--conflict-resolve", "newer",
    "--conflict-loser", "num",
    "--create-empty-src-dirs",
    "--skip-links",
    "--verbose",
    "--stats", "30s",
    "--max-size", "10G",
    "--drive-chunk-size", "64M",
    "--transfers", "4",
    "--checkers", "8",
]

SYNC_FLAGS = [
    "--delete-after",
    "--verbose",
    "--stats", "30s",
    "--max-size", "10G",
    "--drive-chunk-size", "64M",
    "--transfers", "4",
    "--checkers", "8",
]

# Lower-cased substrings, checked in order: tool, auth, network, conflict.
TOOL_MARKERS = (
    "didn't find section in config file",
    "config file not found",
    "unknown command",
    "unknown flag",
)
AUTH_MARKERS = (
    "invalid_grant",
    "unauthorized",
    "error 401",
    "error 403",
    "token expired",
    "couldn't fetch token",
    "cannot fetch token",
    "invalid credentials",
    "authentication failed",
)
NETWORK_MARKERS = (
    "dial tcp",
    "no such host",
    "connection refused",
    "connection reset",
    "i/o timeout",
    "network is unreachable",
    "tls handshake timeout",
    "temporary failure in name resolution",
    "context deadline exceeded",
)
CONFLICT_MARKERS = (
    "bisync aborted",
    "bisync critical error",
    "too many deletes",
    "safety abort",
    "must run --resync",
    "all files were changed",
    "failed loading prior path",
)
NEEDS_RESYNC_MARKERS = (
    "failed loading prior path",
    "no such file or directory",
    "path1.lst",
    "path2.lst",
    "bisync aborted. please try again",
)
# rclone guards against mass deletion; these are never auto-resynced.
SAFETY_ABORT_MARKERS = (
    "too many deletes",
    "safety abort",
    "all files were changed",
)

# rclone exit code 5: temporary error, more retries might fix it.
EXIT_TEMPORARY = 5

_NOISE = "Can't follow symlink"
_LOUD = ("Deleted", "Deleting", "Transferred:", "Copied", "ERROR", "NOTICE")
_DETAIL_LINE = re.compile(r"ERROR|NOTICE|Failed")


def classify_failure(exit_code: Optional[int], output: str) -> ErrorKind:
    """Map a failed rclone run to an ``ErrorKind``.

    Args:
        exit_code: Process exit status.
        output: Combined stderr and stdout.

    Returns:
        The classified kind. Never ``SUCCESS``.
    """
    text = output.lower()
    for markers, kind in (
        (TOOL_MARKERS, ErrorKind.TOOL_UNAVAILABLE),
        (AUTH_MARKERS, ErrorKind.AUTH_ERROR),
        (NETWORK_MARKERS, ErrorKind.NETWORK_ERROR),
        (CONFLICT_MARKERS, ErrorKind.CONFLICT_ERROR),
    ):
        if any(marker in text for marker in markers):
            return kind
    if exit_code == EXIT_TEMPORARY:
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.UNKNOWN


def extract_error_lines(output: str, limit: int = MAX_DETAIL_LINES) -> str:
    """Keep the last ``limit`` ERROR/NOTICE/Failed lines of ``output``."""
    lines = [
        line.strip()
        for line in output.splitlines()
        if _DETAIL_LINE.search(line) and _NOISE not in line
    ]
    return "; ".join(lines[-limit:])


def needs_resync(output: str) -> bool:
    """Whether the bisync listing cache is missing or unusable."""
    text = output.lower()
    return any(marker in text for marker in NEEDS_RESYNC_MARKERS)


def safety_abort(output: str) -> bool:
    """Whether bisync refused to run to protect the data."""
    text = output.lower()
    return any(marker in text for marker in SAFETY_ABORT_MARKERS)


def remote_dir_missing(output: str) -> bool:
    text = output.lower()
    return "directory not found" in text and "error reading source root directory" in text


def lock_file_found(output: str) -> bool:
    return "lock file found" in output.lower()


def canonical_name(remote: str) -> str:
    """rclone's canonical form of ``remote`` used in bisync cache filenames."""
    return remote.replace(":", "_").replace("/", "_")


def bisync_cache_dir() -> Path:
    """Directory where rclone keeps bisync listings and lock files."""
    cache = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(cache) / "rclone" / "bisync"


@dataclass
class _Outcome:
    """Raw result of one subprocess."""

    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    canceled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.canceled

    @property
    def stopped(self) -> bool:
        return self.timed_out or self.canceled

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stderr, self.stdout) if part)


class RcloneAdapter:
    """Runs rclone for directories of one configured remote.

    Args:
        remote_name: rclone remote, without the trailing colon.
        base_dir: Local paths are mapped to ``<remote>:<path relative to base_dir>``.
        rclone_bin: Executable name or path.
        cache_dir: Override for the bisync cache directory.
        kill_timeout: Seconds between SIGTERM and SIGKILL on cancel.
    """

    def __init__(
        self,
        remote_name: str,
        base_dir: Optional[Path] = None,
        rclone_bin: str = RCLONE_BIN,
        cache_dir: Optional[Path] = None,
        kill_timeout: float = KILL_TIMEOUT,
    ):
        self.remote_name = remote_name.rstrip(":")
        self.base_dir = Path(base_dir or Path.home()).expanduser()
        self.rclone_bin = rclone_bin
        self.cache_dir = cache_dir
        self.kill_timeout = kill_timeout
        self._lock = threading.Lock()
        self._procs: set[subprocess.Popen] = set()
        self._canceled = threading.Event()

    # ------------------------------------------------------------------
    # Paths and arguments
    # ------------------------------------------------------------------

    def remote_path_for(self, path: str) -> str:
        """Map a local directory to its remote counterpart.

        ``~/Documents`` becomes ``gdrive:Documents``; paths outside
        ``base_dir`` keep their absolute layout without the leading slash.
        """
        local = Path(path)
        try:
            rel = local.relative_to(self.base_dir)
        except ValueError:
            rel = Path(*local.parts[1:]) if local.is_absolute() else local
        rel_str = rel.as_posix()
        if rel_str == ".":
            rel_str = ""
        return f"{self.remote_name}:{rel_str}"

    def bisync_args(
        self, path: str, remote: str, exclude_patterns: Iterable[str], resync: bool = False
    ) -> list[str]:
        """Argument vector for ``rclone bisync``."""
        args = [self.rclone_bin, "bisync", path, remote]
        args += _exclude_args(exclude_patterns)
        args += BISYNC_FLAGS
        if resync:
            args.append("--resync")
        return args

    def sync_args(self, path: str, remote: str, exclude_patterns: Iterable[str]) -> list[str]:
        """Argument vector for the one-way deletion pass of a forced resync."""
        return [self.rclone_bin, "sync", path, remote, *SYNC_FLAGS, *_exclude_args(exclude_patterns)]

    def _cache_root(self) -> Path:
        return self.cache_dir or bisync_cache_dir()

    def session_prefix(self, path: str, remote: str) -> str:
        """Filename prefix of the bisync cache files for a directory pair."""
        return f"{canonical_name('local:' + path)}..{canonical_name(remote)}"

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    def clear_lock(self, path: str, remote: str) -> bool:
        """Remove a stale bisync lock file. Returns True if one was removed."""
        lock_file = self._cache_root() / f"{self.session_prefix(path, remote)}.lck"
        if not lock_file.exists():
            return False
        try:
            lock_file.unlink()
        except OSError as exc:
            logger.debug("Could not clear lock file %s: %s", lock_file, exc)
            return False
        logger.info("Cleaned up stale lock file for %s", path)
        return True

    def clear_cache(self, path: str, remote: str) -> int:
        """Delete every bisync cache file for a directory pair.

        Returns:
            Number of files removed.
        """
        root = self._cache_root()
        if not root.is_dir():
            return 0
        prefix = self.session_prefix(path, remote)
        cleared = 0
        for entry in root.iterdir():
            if not entry.name.startswith(prefix):
                continue
            try:
                entry.unlink()
                cleared += 1
                logger.debug("Removed cache file: %s", entry.name)
            except OSError as exc:
                logger.debug("Could not remove cache file %s: %s", entry, exc)
        if cleared:
            logger.info("Cleared %d bisync cache file(s) for %s", cleared, path)
        return cleared

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def check_available(self) -> None:
        """Verify rclone is installed, the remote is configured and reachable.

        Raises:
            ToolUnavailableError: If any check fails. Expired credentials
                surface here through ``rclone about``.
        """
        if shutil.which(self.rclone_bin) is None:
            raise ToolUnavailableError(
                f"{self.rclone_bin} is not installed or not in PATH"
            )
        try:
            out = self._exec(
                [self.rclone_bin, "listremotes"], time.monotonic() + CHECK_TIMEOUT
            )
        except OSError as exc:
            raise ToolUnavailableError(f"failed to run {self.rclone_bin}: {exc}") from exc
        if not out.ok:
            raise ToolUnavailableError(
                f"failed to list rclone remotes: {out.stderr.strip() or 'timed out'}"
            )
        remotes = {line.strip() for line in out.stdout.splitlines()}
        if f"{self.remote_name}:" not in remotes:
            raise ToolUnavailableError(
                f"rclone remote '{self.remote_name}' is not configured. "
                "Run 'rclone config' to set it up"
            )

        logger.info("Testing connection to %s...", self.remote_name)
        about = self._exec(
            [self.rclone_bin, "about", f"{self.remote_name}:"],
            time.monotonic() + CONNECT_TIMEOUT,
        )
        if about.timed_out:
            raise ToolUnavailableError(
                f"connection to {self.remote_name} timed out. "
                "Check your internet connection and authentication"
            )
        if not about.ok:
            detail = (about.stderr or about.stdout).strip() or f"exit code {about.returncode}"
            raise ToolUnavailableError(f"failed to connect to {self.remote_name}: {detail}")

    def run(
        self,
        path: str,
        exclude_patterns: Iterable[str],
        force_resync: bool = False,
        timeout: Optional[float] = None,
    ) -> SyncResult:
        """Synchronize ``path`` with its remote counterpart.

        Args:
            path: Absolute local directory.
            exclude_patterns: Filter rules applied to every pass.
            force_resync: Rebuild the bisync cache and push local deletions.
            timeout: Seconds for the whole run, all passes included.

        Returns:
            SyncResult describing the final pass.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        remote = self.remote_path_for(path)
        patterns = list(exclude_patterns)
        self.clear_lock(path, remote)
        try:
            if force_resync:
                out = self._resync(path, remote, patterns, deadline)
            else:
                out = self._bisync(path, remote, patterns, deadline)
        except OSError as exc:
            logger.error("Could not run %s for %s: %s", self.rclone_bin, path, exc)
            return SyncResult(
                success=False,
                error_kind=ErrorKind.TOOL_UNAVAILABLE,
                detail=f"{self.rclone_bin} could not be executed: {exc}",
            )
        return self._result(path, remote, out, timeout)

    def cancel(self) -> None:
        """Terminate every in-flight subprocess and refuse new ones."""
        self._canceled.set()
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            _terminate(proc, self.kill_timeout)
        if procs:
            logger.info("Canceled %d running rclone process(es)", len(procs))

    @property
    def canceled(self) -> bool:
        return self._canceled.is_set()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _bisync(
        self,
        path: str,
        remote: str,
        patterns: list[str],
        deadline: Optional[float],
        resync: bool = False,
    ) -> _Outcome:
        args = self.bisync_args(path, remote, patterns, resync=resync)
        out = self._exec(args, deadline)
        if out.ok or out.stopped or resync:
            return out

        if remote_dir_missing(out.output):
            logger.warning("Remote directory %s does not exist, creating it", remote)
            made = self._exec([self.rclone_bin, "mkdir", remote], deadline)
            if made.stopped:
                return made
            if made.ok:
                logger.info("Remote directory created, retrying %s with --resync", path)
                return self._exec(
                    self.bisync_args(path, remote, patterns, resync=True), deadline
                )
            logger.warning("Failed to create remote directory %s: %s", remote, made.stderr.strip())

        if lock_file_found(out.output):
            logger.warning("Lock file detected for %s, clearing and retrying", path)
            if self.clear_lock(path, remote):
                out = self._exec(args, deadline)
                if out.ok or out.stopped:
                    return out

        if needs_resync(out.output) and not safety_abort(out.output):
            logger.warning(
                "Bisync cache for %s missing or corrupted, rebuilding with --resync", path
            )
            return self._exec(self.bisync_args(path, remote, patterns, resync=True), deadline)
        return out

    def _resync(
        self, path: str, remote: str, patterns: list[str], deadline: Optional[float]
    ) -> _Outcome:
        logger.info("Forcing resync of %s (rebuild cache, push deletions)", path)
        self.clear_cache(path, remote)

        pushed = self._exec(self.sync_args(path, remote, patterns), deadline)
        if pushed.stopped:
            return pushed
        if pushed.ok:
            logger.info("Local deletions pushed for %s", path)
        else:
            logger.warning(
                "rclone sync --delete-after exited with code %s for %s: %s",
                pushed.returncode, path, pushed.stderr.strip(),
            )

        return self._bisync(path, remote, patterns, deadline, resync=True)

    def _result(
        self, path: str, remote: str, out: _Outcome, timeout: Optional[float]
    ) -> SyncResult:
        if out.ok:
            return SyncResult(
                success=True, stdout=out.stdout, stderr=out.stderr, exit_code=0
            )
        if out.canceled:
            kind, detail = ErrorKind.CANCELED, "sync canceled by shutdown"
        elif out.timed_out:
            kind = ErrorKind.TIMEOUT
            detail = f"sync exceeded {timeout:g}s" if timeout else "sync timed out"
        else:
            kind = classify_failure(out.returncode, out.output)
            detail = extract_error_lines(out.output) or f"exit code {out.returncode}"
            logger.error(
                "rclone error (exit code %s) for %s -> %s:\nStderr: %s\nStdout: %s",
                out.returncode, path, remote, out.stderr, out.stdout,
            )
        return SyncResult(
            success=False,
            error_kind=kind,
            stdout=out.stdout,
            stderr=out.stderr,
            exit_code=out.returncode,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Subprocess plumbing
    # ------------------------------------------------------------------

    def _exec(self, args: list[str], deadline: Optional[float]) -> _Outcome:
        """Run one rclone command until it exits, times out, or is canceled."""
        if self._canceled.is_set():
            return _Outcome(returncode=None, canceled=True)
        remaining = None if deadline is None else deadline - time.monotonic()
        if remaining is not None and remaining <= 0:
            return _Outcome(returncode=None, timed_out=True)

        logger.debug("Running: %s", " ".join(args))
        proc = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
        )
        with self._lock:
            self._procs.add(proc)
        # Close the window where cancel() ran between the check and Popen.
        if self._canceled.is_set():
            _terminate(proc, self.kill_timeout)
        try:
            try:
                stdout, stderr = proc.communicate(timeout=remaining)
                timed_out = False
            except subprocess.TimeoutExpired:
                proc.kill()
                stdout, stderr = proc.communicate()
                timed_out = True
        finally:
            with self._lock:
                self._procs.discard(proc)

        _log_output(stdout or "", stderr or "")
        canceled = self._canceled.is_set() and proc.returncode != 0
        if timed_out:
            logger.warning("rclone timed out, killed: %s", " ".join(args[:4]))
        return _Outcome(
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=timed_out and not canceled,
            canceled=canceled,
        )


def _exclude_args(patterns: Iterable[str]) -> list[str]:
    args: list[str] = []
    for pattern in patterns:
        args.extend(["--exclude", pattern])
    return args


def _terminate(proc: subprocess.Popen, kill_timeout: float) -> None:
    """SIGTERM, then SIGKILL if the process outlives ``kill_timeout``."""
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
    except OSError:
        return
    deadline = time.monotonic() + kill_timeout
    while proc.poll() is None and time.monotonic() < deadline:
        time.sleep(0.05)
    if proc.poll() is None:
        try:
            proc.kill()
        except OSError:
            pass


def _log_output(stdout: str, stderr: str) -> None:
    for line in (*stdout.splitlines(), *stderr.splitlines()):
        if not line.strip() or _NOISE in line:
            continue
        if any(word in line for word in _LOUD):
            logger.info("  %s", line)
        else:
            logger.debug("  %s", line)
