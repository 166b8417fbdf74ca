"""
Configuration for the cron server.

Defaults are module constants; runtime settings come from environment
variables (optionally loaded from a .env file).
"""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Job defaults
DEFAULT_MODEL = "sonnet"
DEFAULT_PERMISSION_MODE = "bypassPermissions"
DEFAULT_TIMEOUT_MS = 10 * 60 * 1000
DEFAULT_SESSION_LIMIT_THRESHOLD = 90

# Server defaults
DEFAULT_DB_PATH = Path("./data/cron.db")
DEFAULT_LOGS_DIR = Path("./data/logs")
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
DEFAULT_MAX_PARALLEL_JOBS = 3
DEFAULT_LOG_BACKUP_DAYS = 14

# External commands
DEFAULT_CLAUDE_COMMAND = "claude"
DEFAULT_USAGE_COMMAND = "ccusage blocks --active --json"
DEFAULT_USAGE_TIMEOUT = 15.0


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


@dataclass
class Settings:
    """Runtime settings for the scheduler service and HTTP server."""

    db_path: Path = DEFAULT_DB_PATH
    logs_dir: Path = DEFAULT_LOGS_DIR
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_parallel_jobs: int = DEFAULT_MAX_PARALLEL_JOBS
    claude_command: str = DEFAULT_CLAUDE_COMMAND
    usage_command: list[str] = field(
        default_factory=lambda: shlex.split(DEFAULT_USAGE_COMMAND)
    )
    usage_timeout: float = DEFAULT_USAGE_TIMEOUT
    timezone: Optional[str] = None
    log_level: str = "INFO"
    log_backup_days: int = DEFAULT_LOG_BACKUP_DAYS

    @property
    def server_logs_dir(self) -> Path:
        """Server log directory, kept apart from the per-run log files."""
        return self.logs_dir / "server"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            dotenv: Whether to load a .env file first

        Returns:
            Settings with environment overrides applied
        """
        if dotenv:
            load_dotenv()

        return cls(
            db_path=Path(os.getenv("CRON_DB_PATH", str(DEFAULT_DB_PATH))),
            logs_dir=Path(os.getenv("CRON_LOGS_DIR", str(DEFAULT_LOGS_DIR))),
            host=os.getenv("CRON_HOST", DEFAULT_HOST),
            port=_env_int("CRON_PORT", DEFAULT_PORT),
            max_parallel_jobs=_env_int("CRON_MAX_PARALLEL_JOBS", DEFAULT_MAX_PARALLEL_JOBS),
            claude_command=os.getenv("CLAUDE_COMMAND", DEFAULT_CLAUDE_COMMAND),
            usage_command=shlex.split(os.getenv("CRON_USAGE_COMMAND", DEFAULT_USAGE_COMMAND)),
            usage_timeout=_env_float("CRON_USAGE_TIMEOUT", DEFAULT_USAGE_TIMEOUT),
            timezone=os.getenv("CRON_TIMEZONE") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_backup_days=_env_int("CRON_LOG_BACKUP_DAYS", DEFAULT_LOG_BACKUP_DAYS),
        )
