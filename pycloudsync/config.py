"""Configuration management for pycloudsync."""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

from .exceptions import ConfigError
from .utils import (
    DEFAULT_BASE_DELAY,
    DEFAULT_HISTORY_DAYS,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
)

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"


def get_config_dir() -> Path:
    """Return the pycloudsync configuration directory.

    ``$PYCLOUDSYNC_HOME`` wins, then ``$XDG_CONFIG_HOME/pycloudsync``,
    then ``~/.config/pycloudsync``.
    """
    home = os.environ.get("PYCLOUDSYNC_HOME", "")
    if home:
        return Path(home).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "pycloudsync"
    return Path.home() / ".config" / "pycloudsync"


@dataclass
class Config:
    """Runtime settings shared by storage, locking and the sync engine.

    Build one with :meth:`load` and pass it explicitly to the components
    that need it.
    """

    config_dir: Path
    rsync_path: str = "rsync"
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    transfer_timeout: Optional[float] = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    history_days: int = DEFAULT_HISTORY_DAYS
    conflict_label: Optional[str] = None

    @property
    def lock_dir(self) -> Path:
        return self.config_dir / "locks"

    @property
    def data_dir(self) -> Path:
        return self.config_dir

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME

    @classmethod
    def load(cls, config_dir: Optional[Path] = None) -> "Config":
        """Load settings from ``config.json`` and the environment.

        Args:
            config_dir: Directory to use instead of :func:`get_config_dir`

        Returns:
            Config instance

        Raises:
            ConfigError: If config.json exists but cannot be parsed
        """
        config_dir = config_dir or get_config_dir()
        overrides = cls._read_file(config_dir / CONFIG_FILE_NAME)

        rsync_env = os.environ.get("PYCLOUDSYNC_RSYNC")
        if rsync_env:
            overrides["rsync_path"] = rsync_env

        known = {f.name for f in fields(cls)} - {"config_dir"}
        unknown = set(overrides) - known
        if unknown:
            ignored = ", ".join(sorted(unknown))
            logger.warning(f"Ignoring unknown config keys: {ignored}")

        return cls(
            config_dir=config_dir,
            **{key: value for key, value in overrides.items() if key in known},
        )

    @staticmethod
    def _read_file(path: Path) -> dict[str, Any]:
        if not path.is_file():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a JSON object")
        return data
