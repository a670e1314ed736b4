"""
Configuration -- ``<home>/config.yaml`` plus environment overrides.

    sync:
      remote_name: gdrive
      sync_mode: periodic
      sync_interval_seconds: 30
    directories:
      - ~/Documents
      - ~/Source
    excludes:
      - "**/*.iso"
    daemon:
      port: 7780

``DIRMIRROR_REMOTE_NAME``, ``DIRMIRROR_DIRECTORIES`` and
``DIRMIRROR_EXCLUDES`` (comma separated) override the file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import DIRMIRROR_HOME
from .exceptions import ConfigError
from .models import SyncConfig

logger = logging.getLogger("dirmirror.config")

CONFIG_FILE = "config.yaml"
DEFAULT_PORT = 7780

DEFAULT_DIRECTORIES = [
    "~/Documents",
    "~/Downloads",
    "~/Pictures",
    "~/Desktop",
    "~/Music",
    "~/Source",
    "~/.config",
]


class DaemonSettings(BaseModel):
    """Settings for the daemon process itself."""

    port: int = DEFAULT_PORT
    autostart: bool = True


class AppConfig(BaseModel):
    """Complete configuration for one dirmirror home."""

    sync: SyncConfig = Field(default_factory=SyncConfig)
    directories: list[str] = Field(default_factory=list)
    excludes: list[str] = Field(default_factory=list)
    use_default_excludes: bool = True
    daemon: DaemonSettings = Field(default_factory=DaemonSettings)

    def resolved_directories(self) -> list[str]:
        """Configured directories, or the default home folders if none are set."""
        return list(self.directories) or list(DEFAULT_DIRECTORIES)


def resolve_home(home: Optional[Path] = None) -> Path:
    """The dirmirror home directory, ``~`` expanded."""
    return Path(home or DIRMIRROR_HOME).expanduser()


def split_list(value: str) -> list[str]:
    """Split a comma-separated string, dropping blanks."""
    return [part.strip() for part in value.split(",") if part.strip()]


def load_config(
    home: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> AppConfig:
    """Load configuration from disk and apply environment overrides.

    Args:
        home: dirmirror home. Defaults to ``$DIRMIRROR_HOME`` or ``~/.dirmirror``.
        environ: Environment mapping, ``os.environ`` by default.

    Returns:
        The parsed AppConfig (defaults when no file exists).

    Raises:
        ConfigError: If the file is not valid YAML or has invalid values.
    """
    env = os.environ if environ is None else environ
    config_file = resolve_home(home) / CONFIG_FILE

    data: dict = {}
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_file} must contain a mapping")

    sync_data = dict(data.get("sync") or {})
    if env.get("DIRMIRROR_REMOTE_NAME"):
        sync_data["remote_name"] = env["DIRMIRROR_REMOTE_NAME"]
    data["sync"] = sync_data
    if env.get("DIRMIRROR_DIRECTORIES"):
        data["directories"] = split_list(env["DIRMIRROR_DIRECTORIES"])
    if env.get("DIRMIRROR_EXCLUDES"):
        data["excludes"] = split_list(env["DIRMIRROR_EXCLUDES"])

    try:
        config = AppConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {config_file}: {exc}") from exc

    logger.debug(
        "Loaded config: remote=%s mode=%s directories=%d",
        config.sync.remote_name,
        config.sync.sync_mode.value,
        len(config.resolved_directories()),
    )
    return config


def save_config(config: AppConfig, home: Optional[Path] = None) -> Path:
    """Write ``config`` to ``<home>/config.yaml``. Returns the file path."""
    home_path = resolve_home(home)
    home_path.mkdir(parents=True, exist_ok=True)
    config_file = home_path / CONFIG_FILE
    data = config.model_dump(mode="json")
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return config_file
