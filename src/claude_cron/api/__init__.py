"""
HTTP API for the cron scheduler.

FastAPI application exposing job management over local HTTP.
"""

from .main import create_app

__all__ = ["create_app"]
