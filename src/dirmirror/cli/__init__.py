"""
dirmirror CLI — control the sync daemon from the command line.

Each command group lives in its own module and is registered on the
main click group here.

Entry point: dirmirror.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="dirmirror")
def main():
    """dirmirror — keep local directories mirrored to a cloud remote."""


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .setup import register_setup_commands
from .daemon import register_daemon_commands
from .sync_cmd import register_sync_commands
from .exclude import register_exclude_commands

register_setup_commands(main)
register_daemon_commands(main)
register_sync_commands(main)
register_exclude_commands(main)
