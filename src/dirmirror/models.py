"""
Sync data models -- configuration, per-directory state, and results.

Everything crossing a component boundary is one of these typed records.
Callers never receive an untyped dict of status fields.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

STATUS_SCHEMA_VERSION = 1


class SyncStatus(str, Enum):
    """Lifecycle state of a single directory."""

    IDLE = "idle"
    QUEUED = "queued"
    SYNCING = "syncing"
    ERROR = "error"


class SyncMode(str, Enum):
    """Whether the scheduler runs."""

    PERIODIC = "periodic"
    MANUAL = "manual"


class ErrorKind(str, Enum):
    """Classified outcome of one rclone invocation."""

    SUCCESS = "success"
    AUTH_ERROR = "auth_error"
    NETWORK_ERROR = "network_error"
    CONFLICT_ERROR = "conflict_error"
    TOOL_UNAVAILABLE = "tool_unavailable"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


class SyncState(BaseModel):
    """Status record for one registered directory.

    ``error_message`` is set exactly when ``status`` is ``error``.
    ``last_sync_time`` only moves on a successful sync.
    """

    status: SyncStatus = SyncStatus.IDLE
    last_sync_time: Optional[datetime] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


class SyncQueueEntry(BaseModel):
    """A pending request to sync one directory."""

    path: str
    force_resync: bool = False
    enqueued_at: datetime


class SyncResult(BaseModel):
    """Outcome of a single adapter run."""

    success: bool
    error_kind: ErrorKind = ErrorKind.SUCCESS
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    detail: str = ""

    @property
    def error_message(self) -> str:
        """Human-readable failure line, ``"<kind>: <detail>"``."""
        detail = self.detail or (
            f"exit code {self.exit_code}" if self.exit_code is not None else "no detail"
        )
        return f"{self.error_kind.value}: {detail}"


class SyncRecord(BaseModel):
    """One finished execution, kept in the in-memory history."""

    path: str
    force_resync: bool
    started_at: datetime
    finished_at: datetime
    success: bool
    error_kind: ErrorKind


class SyncConfig(BaseModel):
    """Orchestrator settings. Frozen once the orchestrator is built."""

    model_config = ConfigDict(frozen=True)

    remote_name: str = "gdrive"
    sync_mode: SyncMode = SyncMode.PERIODIC
    sync_interval_seconds: float = Field(default=30, gt=0)
    sync_timeout_seconds: float = Field(default=60, gt=0)
    resync_timeout_seconds: float = Field(default=600, gt=0)
    stop_grace_seconds: float = Field(default=10, ge=0)
    workers: int = Field(default=1, ge=1)
    sync_on_start: bool = True
    base_dir: Path = Field(default_factory=Path.home)

    @field_validator("remote_name")
    @classmethod
    def remote_name_must_be_bare(cls, v: str) -> str:
        """Strip a trailing colon; rclone remotes are referenced as ``name:``."""
        v = v.strip().rstrip(":")
        if not v:
            raise ValueError("remote_name must not be empty")
        return v


class StartResult(BaseModel):
    """Returned by ``SyncOrchestrator.start``."""

    started: bool
    already_running: bool = False
    message: str = ""


class OrchestratorStatus(BaseModel):
    """Point-in-time status of the orchestrator, versioned for callers."""

    schema_version: int = STATUS_SCHEMA_VERSION
    running: bool
    sync_mode: SyncMode
    sync_interval_seconds: float
    directories: int
    queue_size: int
    sync_states: dict[str, SyncState] = Field(default_factory=dict)
