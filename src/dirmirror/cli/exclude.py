"""Exclude commands: list, add, remove."""

from __future__ import annotations

from typing import Optional

import click

from ._common import DIRMIRROR_HOME, call_daemon, console, resolve_port


def register_exclude_commands(main: click.Group) -> None:
    """Register the exclude command group."""

    @main.group()
    def exclude():
        """Exclude patterns applied to every directory sync."""

    home_option = click.option("--home", default=DIRMIRROR_HOME, type=click.Path())
    port_option = click.option("--port", default=None, type=int, help="Daemon API port.")

    @exclude.command("list")
    @home_option
    @port_option
    def exclude_list(home: str, port: Optional[int]):
        """List patterns in the order they are applied."""
        result = call_daemon("GET", "/excludes", resolve_port(home, port))
        for pattern in result["patterns"]:
            click.echo(pattern)

    @exclude.command("add")
    @click.argument("pattern")
    @home_option
    @port_option
    def exclude_add(pattern: str, home: str, port: Optional[int]):
        """Add a pattern (takes effect on the next sync)."""
        result = call_daemon(
            "POST", "/excludes", resolve_port(home, port), payload={"pattern": pattern}
        )
        if result["added"]:
            console.print(f"[green]Added exclude pattern:[/] {pattern}")
        else:
            console.print(f"[yellow]Already excluded:[/] {pattern}")

    @exclude.command("remove")
    @click.argument("pattern")
    @home_option
    @port_option
    def exclude_remove(pattern: str, home: str, port: Optional[int]):
        """Remove a pattern."""
        result = call_daemon(
            "POST", "/excludes", resolve_port(home, port),
            payload={"pattern": pattern, "remove": True},
        )
        if result["removed"]:
            console.print(f"[green]Removed exclude pattern:[/] {pattern}")
        else:
            console.print(f"[yellow]Not in the exclude list:[/] {pattern}")
