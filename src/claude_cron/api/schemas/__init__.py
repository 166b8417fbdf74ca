"""
API Schemas package.

Pydantic models for request/response validation.
"""

from .jobs import (
    JobCreateRequest,
    JobUpdateRequest,
    JobResponse,
    JobListResponse,
    RunResponse,
    RunListResponse,
    MessageResponse,
    HealthResponse,
)

__all__ = [
    "JobCreateRequest",
    "JobUpdateRequest",
    "JobResponse",
    "JobListResponse",
    "RunResponse",
    "RunListResponse",
    "MessageResponse",
    "HealthResponse",
]
