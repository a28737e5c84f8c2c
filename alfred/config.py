"""
Configuration and filesystem layout for alfred.

Two things live here:
- AlfredConfig: the small JSON config the daemon reads (and re-reads on every
  loop iteration, so tick interval and parallelism can change without a
  restart).
- AlfredPaths: where the database, pid file, daemon log and per-run files go.
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Union

from alfred.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_HOME = "~/.alfred"
DEFAULT_CONFIG_PATH = "~/.config/alfred/config.json"

# Environment variables to override locations
ENV_HOME = "ALFRED_HOME"
ENV_CONFIG_PATH = "ALFRED_CONFIG_PATH"


@dataclass
class AlfredConfig:
    """Daemon configuration."""
    max_parallel: int = 3  # Concurrent runs allowed (0 pauses dispatch)
    session_name: str = "alfred"  # tmux session hosting the run windows
    tick_interval_seconds: int = 60  # Seconds between ticks

    def validate(self):
        """
        Check value ranges.

        Raises:
            ConfigError: If any value is out of range or of the wrong type
        """
        if not isinstance(self.max_parallel, int) or isinstance(self.max_parallel, bool) \
                or self.max_parallel < 0:
            raise ConfigError(f"'max_parallel' must be an integer >= 0, got {self.max_parallel!r}")
        if not isinstance(self.tick_interval_seconds, int) or isinstance(self.tick_interval_seconds, bool) \
                or self.tick_interval_seconds <= 0:
            raise ConfigError(
                f"'tick_interval_seconds' must be a positive integer, got {self.tick_interval_seconds!r}"
            )
        if not isinstance(self.session_name, str) or not self.session_name.strip():
            raise ConfigError(f"'session_name' must be a non-empty string, got {self.session_name!r}")

    def save(self, config_path: Optional[Union[str, Path]] = None) -> Path:
        """Save configuration to a JSON file."""
        path = resolve_config_path(config_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(asdict(self), f, indent=2)

        logger.info(f"Saved configuration to {path}")
        return path


def resolve_config_path(config_path: Optional[Union[str, Path]] = None) -> Path:
    """
    Resolve the config file location.

    Priority:
    1. Explicit config_path argument
    2. ALFRED_CONFIG_PATH environment variable
    3. Default: ~/.config/alfred/config.json
    """
    if config_path:
        return Path(config_path).expanduser()
    if os.environ.get(ENV_CONFIG_PATH):
        return Path(os.environ[ENV_CONFIG_PATH]).expanduser()
    return Path(DEFAULT_CONFIG_PATH).expanduser()


def load_config(config_path: Optional[Union[str, Path]] = None) -> AlfredConfig:
    """
    Load configuration, falling back to defaults for a missing file.

    Unknown keys are ignored so older binaries can read newer files.

    Raises:
        ConfigError: If the file exists but is not valid JSON or holds
            invalid values
    """
    path = resolve_config_path(config_path)
    if not path.exists():
        logger.debug(f"No config found at {path}, using defaults")
        return AlfredConfig()

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config at {path} must be a JSON object")

    defaults = AlfredConfig()
    config = AlfredConfig(
        max_parallel=data.get('max_parallel', defaults.max_parallel),
        session_name=data.get('session_name', defaults.session_name),
        tick_interval_seconds=data.get('tick_interval_seconds', defaults.tick_interval_seconds),
    )
    config.validate()
    return config


class AlfredPaths:
    """
    Filesystem layout for alfred.

    Home directory resolution order (highest to lowest priority):
    1. Explicitly passed home parameter
    2. ALFRED_HOME environment variable
    3. Default (~/.alfred)

    Directory structure:
        {home}/
        ├── alfred.db          # Jobs and runs
        ├── daemon.pid         # Liveness marker
        ├── daemon.log         # Daemon log (rotated to daemon.log.1)
        └── logs/
            ├── {job}-{run}.log    # Combined command output
            └── {job}-{run}.exit   # Exit code sentinel
    """

    def __init__(self, home: Optional[Union[str, Path]] = None):
        if home:
            self.home = Path(home).expanduser().resolve()
        elif os.environ.get(ENV_HOME):
            self.home = Path(os.environ[ENV_HOME]).expanduser().resolve()
        else:
            self.home = Path(DEFAULT_HOME).expanduser().resolve()

        self.db_path = self.home / "alfred.db"
        self.logs_dir = self.home / "logs"
        self.pid_path = self.home / "daemon.pid"
        self.daemon_log = self.home / "daemon.log"

    def ensure_dirs(self):
        """Create the home and logs directories."""
        self.home.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def log_path(self, job_id: str, run_id: str) -> Path:
        return self.logs_dir / f"{job_id}-{run_id}.log"

    def exit_code_path(self, job_id: str, run_id: str) -> Path:
        return self.logs_dir / f"{job_id}-{run_id}.exit"

    def __repr__(self):
        return f"AlfredPaths(home={self.home})"
