"""
dirmirror — keeps local directories mirrored to a cloud remote.

A small always-on daemon that drives ``rclone bisync`` for a set of
directories, one sync per directory at a time, on a timer and on demand.
"""

import os

__version__ = "0.1.0"
__author__ = "dirmirror contributors"

DIRMIRROR_HOME = os.environ.get("DIRMIRROR_HOME", "~/.dirmirror")
