"""
claude-cron server entry point.

Loads settings from the environment (and .env), applies command line
overrides, builds the scheduler service and serves the HTTP API.
"""

import argparse
from pathlib import Path

import uvicorn

from .api.main import create_app
from .config import Settings
from .infra.logging_config import setup_logging
from .scheduler.service import SchedulerService


def parse_args(argv=None):
    """Parse command line overrides for the environment settings."""
    parser = argparse.ArgumentParser(
        prog="claude-cron",
        description="Cron scheduler for Claude CLI prompts with a local HTTP API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Defaults from environment / .env (127.0.0.1:3000, ./data/cron.db)
  claude-cron

  # Custom port and database
  claude-cron --port 8080 --db-path /var/lib/claude-cron/cron.db

  # Verbose logging
  python -m claude_cron --log-level DEBUG
        """
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Bind address. Default: CRON_HOST or 127.0.0.1"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port. Default: CRON_PORT or 3000"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Server log level. Default: LOG_LEVEL or INFO"
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="SQLite database path. Default: CRON_DB_PATH or ./data/cron.db"
    )
    parser.add_argument(
        "--logs-dir",
        type=str,
        default=None,
        help="Directory for per-run log files. Default: CRON_LOGS_DIR or ./data/logs"
    )
    return parser.parse_args(argv)


def build_settings(args) -> Settings:
    """Environment settings with command line overrides applied."""
    settings = Settings.from_env()

    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.log_level:
        settings.log_level = args.log_level
    if args.db_path:
        settings.db_path = Path(args.db_path)
    if args.logs_dir:
        settings.logs_dir = Path(args.logs_dir)

    return settings


def main(argv=None) -> None:
    """Run the scheduler and HTTP server until interrupted."""
    args = parse_args(argv)
    settings = build_settings(args)

    logger = setup_logging(settings)
    logger.info(f"Database: {settings.db_path}")
    logger.info(f"Run logs: {settings.logs_dir}")
    logger.info(f"Max parallel jobs: {settings.max_parallel_jobs}")

    service = SchedulerService.create(settings)
    app = create_app(service)

    logger.info(f"Serving on http://{settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
