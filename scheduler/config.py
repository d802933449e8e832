"""
Scheduler configuration management.

Handles loading, saving, and validating scheduler configuration. Jobs
themselves live in the run record database; this file only holds settings
for the engine (where data lives, logging, execution limits).
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, List

from dotenv import load_dotenv

# Load .env file so WORKTREE_JOBS_* variables can be set per checkout
load_dotenv()

logger = logging.getLogger(__name__)

ENV_CONFIG_PATH = "WORKTREE_JOBS_CONFIG"
ENV_DATA_DIR = "WORKTREE_JOBS_DATA_DIR"

DEFAULT_DATA_DIR = Path.home() / ".worktree_jobs"


def get_default_data_dir() -> Path:
    """Get the data directory from environment or default."""
    if os.environ.get(ENV_DATA_DIR):
        return Path(os.environ[ENV_DATA_DIR]).expanduser()
    return DEFAULT_DATA_DIR


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None  # None = {data_dir}/logs/scheduler.log


@dataclass
class ExecutionConfig:
    """Job execution settings."""
    grace_period_seconds: float = 5.0  # SIGTERM -> SIGKILL delay on stop
    max_output_chars: Optional[int] = None  # per stream, None = unbounded
    max_workers: int = 5  # threads for concurrent cron ticks
    misfire_grace_time: int = 300  # seconds a late tick may still fire


class SchedulerConfig:
    """
    Scheduler configuration manager.

    Configuration path priority:
    1. Explicit config_path argument
    2. WORKTREE_JOBS_CONFIG environment variable
    3. Default: ~/.worktree_jobs/config.json

    Data directory priority:
    1. Explicit data_dir argument
    2. "data_dir" key in the configuration file
    3. WORKTREE_JOBS_DATA_DIR environment variable
    4. Default: ~/.worktree_jobs

    Directory structure:
        {data_dir}/
        ├── jobs.db                # Jobs and run history
        ├── logs/scheduler.log     # Scheduler log
        ├── scheduler.pid          # PID of the running scheduler
        └── scheduler_info.json    # Runtime info of the running scheduler
    """

    def __init__(self, config_path: Optional[str] = None, data_dir: Optional[str] = None):
        """
        Initialize scheduler configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
            data_dir: Base directory for the database, logs and PID file.
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get(ENV_CONFIG_PATH):
            self.config_path = Path(os.environ[ENV_CONFIG_PATH]).expanduser()
        else:
            self.config_path = get_default_data_dir() / "config.json"

        self._explicit_data_dir = Path(data_dir).expanduser() if data_dir else None
        self._file_data_dir: Optional[Path] = None
        self.logging: LoggingConfig = LoggingConfig()
        self.execution: ExecutionConfig = ExecutionConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.debug(f"No config found at {self.config_path}, using defaults")

    @property
    def data_dir(self) -> Path:
        return self._explicit_data_dir or self._file_data_dir or get_default_data_dir()

    @property
    def db_path(self) -> Path:
        return self.data_dir / "jobs.db"

    @property
    def log_file(self) -> Path:
        if self.logging.file:
            return Path(self.logging.file).expanduser()
        return self.data_dir / "logs" / "scheduler.log"

    @property
    def pid_file(self) -> Path:
        return self.data_dir / "scheduler.pid"

    @property
    def info_file(self) -> Path:
        return self.data_dir / "scheduler_info.json"

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            if data.get('data_dir'):
                self._file_data_dir = Path(data['data_dir']).expanduser()
            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])
            if 'execution' in data:
                self.execution = ExecutionConfig(**data['execution'])

            logger.info(f"Loaded configuration from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'logging': asdict(self.logging),
            'execution': asdict(self.execution)
        }
        if self._explicit_data_dir or self._file_data_dir:
            data['data_dir'] = str(self.data_dir)

        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if logging.getLevelName(self.logging.level.upper()) == f"Level {self.logging.level.upper()}":
            errors.append(f"logging: unknown level '{self.logging.level}'")

        execution = self.execution
        if execution.grace_period_seconds < 0:
            errors.append("execution: 'grace_period_seconds' cannot be negative")
        if execution.max_output_chars is not None and execution.max_output_chars <= 0:
            errors.append("execution: 'max_output_chars' must be positive")
        if execution.max_workers <= 0:
            errors.append("execution: 'max_workers' must be positive")
        if execution.misfire_grace_time <= 0:
            errors.append("execution: 'misfire_grace_time' must be positive")

        return errors

    def __repr__(self):
        return f"SchedulerConfig(path={self.config_path}, data_dir={self.data_dir})"
