"""
Server logging setup.

Server records go to the console and to <logs_dir>/server/server.log,
rotated at midnight. Per-run CLI output is written separately by the
ProcessRunner, one file per run.
"""

import logging
from logging.handlers import TimedRotatingFileHandler

from ..config import Settings

LOGGER_NAME = "claude_cron"
SERVER_LOG_FILENAME = "server.log"

# Fires run on scheduler worker threads, so the thread name identifies the run
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s"


def server_file_handler(settings: Settings) -> TimedRotatingFileHandler:
    """
    Build the rotating server log handler.

    Rotated files are suffixed with their date (server.log.YYYY-MM-DD);
    only the newest log_backup_days are kept.
    """
    log_dir = settings.server_logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    return TimedRotatingFileHandler(
        log_dir / SERVER_LOG_FILENAME,
        when="midnight",
        backupCount=settings.log_backup_days,
        encoding="utf-8",
    )


def setup_logging(settings: Settings) -> logging.Logger:
    """
    Configure the package logger and return it.

    Every module logs through logging.getLogger(__name__), so records
    from claude_cron.* propagate into the handlers installed here.

    Args:
        settings: Runtime settings (log_level, logs_dir, log_backup_days)

    Returns:
        logging.Logger: Configured package logger
    """
    numeric_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric_level)

    # Prevent propagation to root logger (avoid duplicate logs)
    logger.propagate = False

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    file_handler = server_file_handler(settings)
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    logger.info(
        f"Logging started - level: {settings.log_level}, file: {file_handler.baseFilename}, "
        f"keeping {settings.log_backup_days} days"
    )

    return logger
