"""Setup commands: init."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from ._common import DIRMIRROR_HOME, console
from ..config import CONFIG_FILE, DEFAULT_DIRECTORIES, AppConfig, save_config
from ..models import SyncConfig, SyncMode


def register_setup_commands(main: click.Group) -> None:
    """Register the init command."""

    @main.command("init")
    @click.option("--home", default=DIRMIRROR_HOME, type=click.Path())
    @click.option("--remote", default="gdrive", help="rclone remote name (default: gdrive).")
    @click.option(
        "--dir", "directories", multiple=True,
        help="Directory to sync (repeatable). Defaults to the usual home folders.",
    )
    @click.option("--interval", default=30.0, help="Seconds between periodic syncs.")
    @click.option(
        "--mode", type=click.Choice([m.value for m in SyncMode]), default="periodic",
        help="periodic (timer) or manual (on demand only).",
    )
    @click.option("--force", is_flag=True, help="Overwrite an existing config.yaml.")
    def init(home: str, remote: str, directories: tuple, interval: float, mode: str, force: bool):
        """Write a starter config.yaml."""
        home_path = Path(home).expanduser()
        if (home_path / CONFIG_FILE).exists() and not force:
            console.print(
                f"[yellow]{home_path / CONFIG_FILE} already exists.[/] Use --force to overwrite."
            )
            sys.exit(1)

        config = AppConfig(
            sync=SyncConfig(
                remote_name=remote,
                sync_mode=SyncMode(mode),
                sync_interval_seconds=interval,
            ),
            directories=list(directories) or list(DEFAULT_DIRECTORIES),
        )
        path = save_config(config, home_path)
        console.print(f"\n  [green]Config written:[/] {path}")
        console.print(f"  Remote: [cyan]{config.sync.remote_name}:[/]")
        for d in config.directories:
            console.print(f"    {d}")
        console.print()
