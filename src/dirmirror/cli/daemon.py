"""Daemon commands: start, stop, status."""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from ._common import DIRMIRROR_HOME, console, resolve_port


def register_daemon_commands(main: click.Group) -> None:
    """Register the daemon command group."""

    @main.group()
    def daemon():
        """Background daemon — keeps directories in sync.

        Runs the sync orchestrator and exposes a local status API
        that the other commands talk to.
        """

    @daemon.command("start")
    @click.option("--home", default=DIRMIRROR_HOME, type=click.Path())
    @click.option("--port", default=None, type=int, help="API port (default: from config).")
    @click.option("--no-autostart", is_flag=True, help="Don't start syncing until 'sync start'.")
    @click.option("--foreground", is_flag=True, help="Also log to the console.")
    def daemon_start(home: str, port: Optional[int], no_autostart: bool, foreground: bool):
        """Start the dirmirror daemon.

        Runs until stopped. Use a process supervisor to keep it in the
        background.
        """
        from ..config import load_config
        from ..daemon import DaemonConfig, DaemonService, build_orchestrator, is_running
        from ..exceptions import ConfigError

        home_path = Path(home).expanduser()
        if is_running(home_path):
            console.print("[yellow]Daemon is already running.[/]")
            sys.exit(0)

        try:
            app_config = load_config(home_path)
        except ConfigError as exc:
            console.print(f"[bold red]Config error:[/] {exc}")
            sys.exit(1)

        config = DaemonConfig(
            home=home_path,
            port=port if port is not None else app_config.daemon.port,
            autostart=app_config.daemon.autostart and not no_autostart,
        )
        svc = DaemonService(config, build_orchestrator(app_config))

        if foreground:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            logging.getLogger().addHandler(handler)

        console.print(f"\n  [green]Starting daemon[/] on port [cyan]{config.port}[/]")
        console.print(
            f"  Remote: {app_config.sync.remote_name}: | "
            f"Mode: {app_config.sync.sync_mode.value} | "
            f"Interval: {app_config.sync.sync_interval_seconds:g}s"
        )
        console.print(f"  Log: {config.log_file}")
        console.print(f"  PID: {os.getpid()}\n")

        svc.start()
        svc.run_forever()

    @daemon.command("stop")
    @click.option("--home", default=DIRMIRROR_HOME, type=click.Path())
    def daemon_stop(home: str):
        """Stop the running daemon."""
        from ..daemon import PID_FILE, read_pid

        home_path = Path(home).expanduser()
        pid = read_pid(home_path)

        if pid is None:
            console.print("[yellow]Daemon is not running.[/]")
            return

        import signal as sig

        try:
            os.kill(pid, sig.SIGTERM)
            console.print(f"\n  [green]Sent SIGTERM to daemon (PID {pid})[/]\n")
        except ProcessLookupError:
            console.print("[yellow]Daemon process not found — cleaning up PID file.[/]")
            (home_path / PID_FILE).unlink(missing_ok=True)

    @daemon.command("status")
    @click.option("--home", default=DIRMIRROR_HOME, type=click.Path())
    @click.option("--port", default=None, type=int, help="API port to query.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def daemon_status(home: str, port: Optional[int], json_out: bool):
        """Show daemon process status."""
        from ..daemon import get_daemon_status, read_pid

        home_path = Path(home).expanduser()
        pid = read_pid(home_path)
        if pid is None:
            if json_out:
                click.echo(json.dumps({"running": False}))
            else:
                console.print("\n  [yellow]Daemon is not running.[/]\n")
            return

        port = resolve_port(home, port)
        status = get_daemon_status(port)
        if json_out:
            click.echo(json.dumps(status or {"running": True, "pid": pid, "api": "unreachable"}, indent=2))
            return

        if not status:
            console.print(f"\n  [green]Daemon running[/] (PID {pid})")
            console.print(f"  [yellow]API unreachable on port {port}[/]\n")
            return

        info = status.get("daemon", {})
        uptime = info.get("uptime_seconds", 0)
        h, remainder = divmod(int(uptime), 3600)
        m, s = divmod(remainder, 60)
        uptime_str = f"{h}h {m}m {s}s" if h else f"{m}m {s}s"
        sync_state = "[green]running[/]" if status.get("running") else "[yellow]stopped[/]"

        console.print()
        console.print(
            Panel(
                f"PID: [bold]{info.get('pid', pid)}[/]\n"
                f"Uptime: [bold]{uptime_str}[/]\n"
                f"Sync: {sync_state}\n"
                f"Directories: [bold]{status.get('directories', 0)}[/]\n"
                f"Queue: [bold]{status.get('queue_size', 0)}[/]\n"
                f"API: [green]http://127.0.0.1:{port}[/]",
                title="[green]Daemon Running[/]",
                border_style="green",
            )
        )
        errors = info.get("recent_errors", [])
        if errors:
            console.print(f"\n[yellow]Recent errors ({len(errors)}):[/]")
            for err in errors[-5:]:
                console.print(f"  [dim]{err}[/]")
        console.print()
