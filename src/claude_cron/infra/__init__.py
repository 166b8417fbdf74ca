"""
Infrastructure helpers (logging).
"""

from .logging_config import server_file_handler, setup_logging

__all__ = ["server_file_handler", "setup_logging"]
