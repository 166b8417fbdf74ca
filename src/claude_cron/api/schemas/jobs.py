"""
Job API schemas.

Request/response models for the /jobs endpoints and /health.
"""

from typing import List, Optional
from pydantic import BaseModel, Field


# =============================================================================
# Job Schemas
# =============================================================================


class JobCreateRequest(BaseModel):
    """Request to create a scheduled job."""

    name: str = Field(..., description="Display name", json_schema_extra={"examples": ["Nightly review"]})
    expression: str = Field(
        ...,
        description="5-field cron expression (minute hour day month weekday)",
        json_schema_extra={"examples": ["0 3 * * *", "*/15 * * * *"]},
    )
    prompt: str = Field(..., description="Prompt passed to the CLI")
    cwd: str = Field(..., description="Working directory for the CLI process")
    model: Optional[str] = Field(default=None, description="Model alias (default: sonnet)")
    permission_mode: Optional[str] = Field(
        default=None,
        description="CLI permission mode (default: bypassPermissions)",
    )
    max_budget: Optional[float] = Field(default=None, description="Per-run cost cap in USD")
    timeout_ms: Optional[int] = Field(default=None, description="Wall-clock limit in milliseconds")
    allowed_tools: Optional[List[str]] = Field(default=None, description="Tool allow-list")
    append_system_prompt: Optional[str] = Field(default=None, description="Extra system prompt text")
    session_limit_threshold: Optional[int] = Field(
        default=None,
        description="Percent of a usage cap at which runs are skipped (1-100, default 90)",
    )
    daily_budget_usd: Optional[float] = Field(default=None, description="Daily spend cap in USD")
    block_token_limit: Optional[int] = Field(default=None, description="Token cap for the active usage block")


class JobUpdateRequest(BaseModel):
    """
    Request to update a job.

    Only fields present in the body are changed. Nullable limits can be
    cleared by sending null.
    """

    name: Optional[str] = None
    expression: Optional[str] = None
    prompt: Optional[str] = None
    cwd: Optional[str] = None
    model: Optional[str] = None
    permission_mode: Optional[str] = None
    max_budget: Optional[float] = None
    timeout_ms: Optional[int] = None
    allowed_tools: Optional[List[str]] = None
    append_system_prompt: Optional[str] = None
    session_limit_threshold: Optional[int] = None
    daily_budget_usd: Optional[float] = None
    block_token_limit: Optional[int] = None


class RunResponse(BaseModel):
    """Response representing a Run."""

    id: int = Field(..., description="Run ID")
    job_id: int = Field(..., description="Owning job ID")
    status: str = Field(..., description="running/success/failed/skipped")
    started_at: str = Field(..., description="Start timestamp (ISO format)")
    finished_at: Optional[str] = Field(default=None, description="Finish timestamp (ISO format)")
    exit_code: Optional[int] = None
    duration_ms: Optional[int] = None
    log_file: Optional[str] = None
    error: Optional[str] = Field(default=None, description="Failure or skip reason")
    cost_usd: Optional[float] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class JobResponse(BaseModel):
    """Response representing a Job with its schedule state."""

    id: int = Field(..., description="Job ID")
    name: str
    expression: str
    prompt: str
    cwd: str
    model: str
    permission_mode: str
    max_budget: Optional[float] = None
    timeout_ms: int
    allowed_tools: List[str] = Field(default_factory=list)
    append_system_prompt: Optional[str] = None
    session_limit_threshold: int
    daily_budget_usd: Optional[float] = None
    block_token_limit: Optional[int] = None
    paused: bool = False
    is_running: bool = False
    created_at: str = Field(..., description="Creation timestamp (ISO format)")
    scheduled: bool = Field(default=False, description="Whether a trigger is bound")
    next_run: Optional[str] = Field(default=None, description="Next fire time (ISO format)")
    last_run: Optional[RunResponse] = None
    run_count: int = 0


class JobListResponse(BaseModel):
    """Response from job list endpoint."""

    jobs: List[JobResponse] = Field(default_factory=list)
    total: int


class RunListResponse(BaseModel):
    """Response from run history endpoint."""

    runs: List[RunResponse] = Field(default_factory=list)
    total: int = Field(..., description="Total matching runs (ignores limit/offset)")
    limit: int
    offset: int


class MessageResponse(BaseModel):
    """Simple acknowledgement for lifecycle operations."""

    job_id: int
    success: bool = True
    message: str


class HealthResponse(BaseModel):
    """Service health summary."""

    status: str
    jobs: int = Field(..., description="Registered jobs")
    running: int = Field(..., description="Jobs currently executing")
    version: str
