"""Exception types raised by the sync orchestrator and its collaborators."""

from __future__ import annotations


class DirmirrorError(Exception):
    """Base class for every error raised by dirmirror."""


class ToolUnavailableError(DirmirrorError):
    """The rclone executable is missing or the remote is not configured."""


class DirectoryNotFoundError(DirmirrorError):
    """The requested directory is not registered for sync."""

    def __init__(self, path: str):
        super().__init__(f"Directory not found: {path}")
        self.path = path


class NotRunningError(DirmirrorError):
    """The orchestrator must be started before sync requests are accepted."""

    def __init__(self, message: str = "Sync is not running. Start it first."):
        super().__init__(message)


class ConfigError(DirmirrorError):
    """The configuration file or environment could not be parsed."""
