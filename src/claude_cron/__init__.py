"""
claude-cron: scheduled Claude CLI job runner.

Runs `claude -p` invocations on cron schedules with a parallel-job cap,
usage/budget guards, and a SQLite run ledger.
"""

__version__ = "1.0.0"
