"""
API Routers package.
"""

from . import jobs

__all__ = ["jobs"]
