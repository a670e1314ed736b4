"""Shared utilities for the CLI command modules.

Provides the Rich console instance, status formatting helpers, and the
daemon API call wrapper used by every command group.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console

from .. import DIRMIRROR_HOME
from ..config import load_config
from ..daemon import api_request
from ..exceptions import ConfigError
from ..models import SyncStatus

console = Console()
logger = logging.getLogger("dirmirror.cli")


def status_icon(status: str) -> str:
    """Map a directory sync status to a Rich-formatted indicator."""
    return {
        SyncStatus.IDLE.value: "[bold green]IDLE[/]",
        SyncStatus.QUEUED.value: "[bold cyan]QUEUED[/]",
        SyncStatus.SYNCING.value: "[bold yellow]SYNCING[/]",
        SyncStatus.ERROR.value: "[bold red]ERROR[/]",
    }.get(status, "[dim]UNKNOWN[/]")


def resolve_port(home: str, port: Optional[int]) -> int:
    """Explicit ``--port`` wins, otherwise the port from config.yaml."""
    if port is not None:
        return port
    try:
        return load_config(Path(home).expanduser()).daemon.port
    except ConfigError as exc:
        console.print(f"[bold red]Config error:[/] {exc}")
        sys.exit(1)


def call_daemon(
    method: str,
    path: str,
    port: int,
    params: Optional[dict] = None,
    payload: Optional[dict] = None,
) -> dict:
    """Call the daemon API, exiting with a message if it fails.

    Returns:
        The decoded response of a successful call.
    """
    result = api_request(method, path, port=port, params=params, payload=payload)
    if result is None:
        console.print(
            f"[bold red]Daemon unreachable[/] on port {port}. "
            "Start it with: dirmirror daemon start"
        )
        sys.exit(1)
    if "error" in result:
        console.print(f"[bold red]Error:[/] {result['error']}")
        sys.exit(1)
    return result


__all__ = [
    "DIRMIRROR_HOME",
    "call_daemon",
    "console",
    "logger",
    "resolve_port",
    "status_icon",
]
