"""
Pytest configuration and shared fixtures.
"""

import logging

import pytest


@pytest.fixture(autouse=True, scope="function")
def reset_package_logger():
    """
    Reset the claude_cron logger after each test.

    setup_logging() disables propagation and installs file handlers; tests
    that call it must not leak that state into caplog-based tests.
    """
    yield

    logger = logging.getLogger("claude_cron")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
