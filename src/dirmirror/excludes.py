"""
Exclude patterns -- rclone filter rules shared by every directory sync.

The set is insertion-ordered and unique. Workers take a snapshot per sync
while the control surface may add patterns at any time.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

logger = logging.getLogger("dirmirror.excludes")

DEFAULT_EXCLUDE_PATTERNS = [
    # Node.js / JavaScript / TypeScript
    "**/node_modules/**",
    "**/.npm/**",
    "**/.yarn/**",
    "**/.pnpm/**",
    "**/bower_components/**",
    "**/.turbo/**",
    "**/.vercel/**",
    "**/dist/**",
    "**/build/**",
    "**/.next/**",
    "**/.nuxt/**",
    "**/out/**",
    "**/.output/**",
    "**/.cache/**",
    "**/.parcel-cache/**",
    "**/coverage/**",
    "**/.nyc_output/**",
    # Python
    "**/.venv/**",
    "**/venv/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/*.pyo",
    "**/*.pyd",
    "**/.pytest_cache/**",
    "**/.tox/**",
    "**/htmlcov/**",
    # Rust / Go / Java / Ruby
    "**/target/**",
    "**/*.rs.bk",
    "**/vendor/**",
    "**/.gradle/**",
    "**/.bundle/**",
    # Version control
    "**/.git/**",
    "**/.svn/**",
    "**/.hg/**",
    # Editors
    "**/.vscode/**",
    "**/.idea/**",
    "**/*.swp",
    "**/*.swo",
    "**/*~",
    # OS files
    "**/.DS_Store",
    "**/Thumbs.db",
    "**/.Trash-*/**",
    ".local/share/Trash/**",
    # Temporary files
    "**/*.tmp",
    "**/*.temp",
    "**/*.log",
    "**/tmp/**",
    "**/temp/**",
    # Browser caches
    ".mozilla/firefox/*/cache2/**",
    ".cache/google-chrome/**",
    ".cache/chromium/**",
    ".cache/mozilla/**",
    # Secrets
    "**/.env",
    "**/.env.local",
    "**/.env.*.local",
    # Databases
    "**/*.sqlite",
    "**/*.db",
    # Game libraries and system cache
    ".local/share/Steam/**",
    ".steam/**",
    ".cache/**",
]


class ExcludeSet:
    """Thread-safe, insertion-ordered set of exclude patterns.

    Args:
        patterns: Initial patterns. Duplicates are dropped, first wins.
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        self._lock = threading.Lock()
        self._patterns: list[str] = []
        for pattern in patterns or ():
            if pattern and pattern not in self._patterns:
                self._patterns.append(pattern)

    @classmethod
    def with_defaults(cls, extra: Optional[Iterable[str]] = None) -> "ExcludeSet":
        """Build a set seeded with ``DEFAULT_EXCLUDE_PATTERNS`` plus ``extra``."""
        return cls([*DEFAULT_EXCLUDE_PATTERNS, *(extra or ())])

    def add(self, pattern: str) -> bool:
        """Append ``pattern`` unless it is already present.

        Returns:
            True if the pattern was added, False if it was already there.

        Raises:
            ValueError: If the pattern is blank.
        """
        pattern = pattern.strip()
        if not pattern:
            raise ValueError("exclude pattern must not be empty")
        with self._lock:
            if pattern in self._patterns:
                return False
            self._patterns.append(pattern)
        logger.info("Added exclude pattern: %s", pattern)
        return True

    def remove(self, pattern: str) -> bool:
        """Drop ``pattern``. Returns False if it was not present."""
        with self._lock:
            try:
                self._patterns.remove(pattern)
            except ValueError:
                return False
        logger.info("Removed exclude pattern: %s", pattern)
        return True

    def list(self) -> list[str]:
        """Return a copy of the patterns in insertion order."""
        with self._lock:
            return list(self._patterns)

    def __len__(self) -> int:
        with self._lock:
            return len(self._patterns)

    def __contains__(self, pattern: object) -> bool:
        with self._lock:
            return pattern in self._patterns
