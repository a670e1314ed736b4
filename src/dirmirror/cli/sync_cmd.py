"""Sync commands: status, all, dir, resync, start, stop, history."""

from __future__ import annotations

import json
from typing import Optional

import click
from rich.table import Table

from ._common import DIRMIRROR_HOME, call_daemon, console, resolve_port, status_icon
from ..registry import normalize_path


def render_status(status: dict) -> None:
    """Print an orchestrator status payload as a table."""
    running = "[green]running[/]" if status.get("running") else "[yellow]stopped[/]"
    console.print(
        f"\n  Sync {running} | remote [cyan]{status.get('remote_name', '?')}:[/] | "
        f"mode {status.get('sync_mode')} every {status.get('sync_interval_seconds', 0):g}s | "
        f"queue {status.get('queue_size', 0)}\n"
    )

    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Directory")
    table.add_column("Status")
    table.add_column("Last sync")
    table.add_column("Error", overflow="fold")
    for path, state in sorted(status.get("sync_states", {}).items()):
        table.add_row(
            path,
            status_icon(state.get("status", "")),
            state.get("last_sync_time") or "[dim]never[/]",
            state.get("error_message") or "",
        )
    console.print(table)
    console.print()


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Directory sync — status and on-demand triggers.

        All commands talk to the running daemon.
        """

    home_option = click.option("--home", default=DIRMIRROR_HOME, type=click.Path())
    port_option = click.option("--port", default=None, type=int, help="Daemon API port.")

    @sync.command("status")
    @home_option
    @port_option
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def sync_status(home: str, port: Optional[int], json_out: bool):
        """Show per-directory sync state."""
        status = call_daemon("GET", "/status", resolve_port(home, port))
        if json_out:
            click.echo(json.dumps(status, indent=2))
            return
        render_status(status)

    @sync.command("all")
    @home_option
    @port_option
    def sync_all(home: str, port: Optional[int]):
        """Queue every directory for an immediate sync."""
        result = call_daemon("POST", "/sync", resolve_port(home, port))
        console.print(f"[green]Queued {result['queued']} directories for sync[/]")

    @sync.command("dir")
    @click.argument("path", type=click.Path())
    @home_option
    @port_option
    def sync_dir(path: str, home: str, port: Optional[int]):
        """Queue one directory for an immediate sync."""
        path = normalize_path(path)
        result = call_daemon("POST", "/sync", resolve_port(home, port), params={"path": path})
        if result["queued"]:
            console.print(f"[green]Queued {path} for immediate sync[/]")
        else:
            console.print(f"[yellow]{path} is already queued[/]")

    @sync.command("resync")
    @click.argument("path", type=click.Path())
    @home_option
    @port_option
    def sync_resync(path: str, home: str, port: Optional[int]):
        """Force a resync: rebuild the cache and push local deletions."""
        path = normalize_path(path)
        result = call_daemon("POST", "/resync", resolve_port(home, port), params={"path": path})
        if result["queued"]:
            console.print(f"[green]Queued {path} for resync[/]")
        else:
            console.print(f"[yellow]A resync of {path} is already queued[/]")

    @sync.command("start")
    @click.option("--remote", default=None, help="rclone remote (default: from config).")
    @home_option
    @port_option
    def sync_start(remote: Optional[str], home: str, port: Optional[int]):
        """Start syncing in the running daemon."""
        params = {"remote": remote} if remote else None
        result = call_daemon("POST", "/start", resolve_port(home, port), params=params)
        if result.get("already_running"):
            console.print("[yellow]Sync is already running.[/]")
        else:
            console.print(f"[green]{result.get('message', 'Sync started')}[/]")

    @sync.command("stop")
    @home_option
    @port_option
    def sync_stop(home: str, port: Optional[int]):
        """Stop syncing (the daemon keeps running)."""
        call_daemon("POST", "/stop", resolve_port(home, port))
        console.print("[green]Sync stopped.[/]")

    @sync.command("history")
    @click.option("--limit", "-n", default=20, help="Number of entries (default: 20).")
    @home_option
    @port_option
    def sync_history(limit: int, home: str, port: Optional[int]):
        """Show recent sync executions (kept in memory by the daemon)."""
        result = call_daemon(
            "GET", "/history", resolve_port(home, port), params={"limit": limit}
        )
        entries = result.get("history", [])
        if not entries:
            console.print("[dim]No syncs yet.[/]")
            return
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Finished")
        table.add_column("Directory")
        table.add_column("Kind")
        table.add_column("Result")
        for e in entries:
            table.add_row(
                e["finished_at"],
                e["path"],
                "resync" if e["force_resync"] else "sync",
                "[green]ok[/]" if e["success"] else f"[red]{e['error_kind']}[/]",
            )
        console.print(table)
