"""
API Dependencies package.

Cross-cutting concerns injected into routes.
"""

from .service import get_scheduler_service

__all__ = ["get_scheduler_service"]
