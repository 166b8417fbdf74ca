"""
Tests for config module.
"""

from pathlib import Path

import pytest

from claude_cron.config import (
    DEFAULT_DB_PATH,
    DEFAULT_MAX_PARALLEL_JOBS,
    DEFAULT_PORT,
    Settings,
)


ENV_VARS = [
    "CRON_DB_PATH",
    "CRON_LOGS_DIR",
    "CRON_HOST",
    "CRON_PORT",
    "CRON_MAX_PARALLEL_JOBS",
    "CLAUDE_COMMAND",
    "CRON_USAGE_COMMAND",
    "CRON_USAGE_TIMEOUT",
    "CRON_TIMEZONE",
    "LOG_LEVEL",
    "CRON_LOG_BACKUP_DAYS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:

    def test_defaults(self, clean_env):
        settings = Settings.from_env(dotenv=False)

        assert settings.db_path == DEFAULT_DB_PATH
        assert settings.port == DEFAULT_PORT == 3000
        assert settings.max_parallel_jobs == DEFAULT_MAX_PARALLEL_JOBS == 3
        assert settings.claude_command == "claude"
        assert settings.usage_command == ["ccusage", "blocks", "--active", "--json"]
        assert settings.usage_timeout == 15.0
        assert settings.timezone is None
        assert settings.log_level == "INFO"
        assert settings.log_backup_days == 14
        assert settings.server_logs_dir == Path("./data/logs/server")

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("CRON_DB_PATH", "/srv/cron/cron.db")
        clean_env.setenv("CRON_PORT", "8080")
        clean_env.setenv("CRON_MAX_PARALLEL_JOBS", "5")
        clean_env.setenv("CLAUDE_COMMAND", "/opt/claude/bin/claude")
        clean_env.setenv("CRON_USAGE_COMMAND", "npx ccusage@latest blocks --active --json")
        clean_env.setenv("CRON_USAGE_TIMEOUT", "2.5")
        clean_env.setenv("CRON_TIMEZONE", "Europe/Berlin")
        clean_env.setenv("CRON_LOG_BACKUP_DAYS", "30")

        settings = Settings.from_env(dotenv=False)

        assert settings.db_path == Path("/srv/cron/cron.db")
        assert settings.port == 8080
        assert settings.max_parallel_jobs == 5
        assert settings.claude_command == "/opt/claude/bin/claude"
        assert settings.usage_command[:2] == ["npx", "ccusage@latest"]
        assert settings.usage_timeout == 2.5
        assert settings.timezone == "Europe/Berlin"
        assert settings.log_backup_days == 30

    def test_blank_values_fall_back(self, clean_env):
        clean_env.setenv("CRON_PORT", "")
        clean_env.setenv("CRON_TIMEZONE", "")

        settings = Settings.from_env(dotenv=False)

        assert settings.port == DEFAULT_PORT
        assert settings.timezone is None

