"""
Scheduler Domain Entities.

- Job: Scheduled unit of work with an execution profile and usage guards
- Run: Historical record of a single execution attempt
- ActiveBlock: External usage window snapshot (never persisted)
- ResultRecord: Structured completion record parsed from CLI output

Run status values are lowercase strings as stored in the ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Optional

from ..config import (
    DEFAULT_MODEL,
    DEFAULT_PERMISSION_MODE,
    DEFAULT_SESSION_LIMIT_THRESHOLD,
    DEFAULT_TIMEOUT_MS,
)


class RunStatus(str, Enum):
    """
    Run status values.

    - RUNNING: Subprocess launched, not yet finalized
    - SUCCESS: Process exited with code 0
    - FAILED: Nonzero exit, spawn failure, or timeout
    - SKIPPED: Rejected at admission, no subprocess launched
    """

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


def to_iso(dt: datetime) -> str:
    """Format an aware datetime as a UTC ISO string with millisecond precision."""
    utc = dt.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def now_iso() -> str:
    """Get current time as ISO format string."""
    return to_iso(datetime.now(timezone.utc))


def local_midnight(now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> datetime:
    """Start of the current calendar day in tz (host zone when None), as an aware datetime."""
    local_now = (now or datetime.now(timezone.utc)).astimezone(tz)
    return local_now.replace(hour=0, minute=0, second=0, microsecond=0)


# Fields a caller may set when creating or updating a job
JOB_FIELDS = (
    "name",
    "expression",
    "prompt",
    "cwd",
    "model",
    "permission_mode",
    "max_budget",
    "timeout_ms",
    "allowed_tools",
    "append_system_prompt",
    "session_limit_threshold",
    "daily_budget_usd",
    "block_token_limit",
)


@dataclass
class Job:
    """
    Scheduled unit of work.

    Persisted fields mirror the `jobs` table. `is_running` is runtime-only
    state owned by the registry and the process runner; it is never stored
    and never compared.
    """

    id: int
    name: str
    expression: str
    prompt: str
    cwd: str
    model: str = DEFAULT_MODEL
    permission_mode: str = DEFAULT_PERMISSION_MODE
    max_budget: Optional[float] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    allowed_tools: list = field(default_factory=list)
    append_system_prompt: str = ""
    session_limit_threshold: int = DEFAULT_SESSION_LIMIT_THRESHOLD
    daily_budget_usd: Optional[float] = None
    block_token_limit: Optional[int] = None
    paused: bool = False
    created_at: str = field(default_factory=now_iso)
    is_running: bool = field(default=False, compare=False, repr=False)

    def to_dict(self) -> dict:
        """Serializable view of the persisted fields plus runtime state."""
        return {
            "id": self.id,
            "name": self.name,
            "expression": self.expression,
            "prompt": self.prompt,
            "cwd": self.cwd,
            "model": self.model,
            "permission_mode": self.permission_mode,
            "max_budget": self.max_budget,
            "timeout_ms": self.timeout_ms,
            "allowed_tools": list(self.allowed_tools),
            "append_system_prompt": self.append_system_prompt or None,
            "session_limit_threshold": self.session_limit_threshold,
            "daily_budget_usd": self.daily_budget_usd,
            "block_token_limit": self.block_token_limit,
            "paused": self.paused,
            "is_running": self.is_running,
            "created_at": self.created_at,
        }


@dataclass
class Run:
    """
    Record of a single execution attempt.

    Mutability rules:
    - id, job_id, started_at, log_file: Immutable
    - status, finished_at, exit_code, duration_ms, error, cost/token fields:
      written once by the terminal update
    """

    id: int
    job_id: int
    started_at: str
    status: RunStatus = RunStatus.RUNNING
    finished_at: Optional[str] = None
    exit_code: Optional[int] = None
    duration_ms: Optional[int] = None
    log_file: Optional[str] = None
    error: Optional[str] = None
    cost_usd: Optional[float] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    def is_terminal(self) -> bool:
        """Check if run has a terminal status."""
        return self.status in (
            RunStatus.SUCCESS,
            RunStatus.FAILED,
            RunStatus.SKIPPED,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "log_file": self.log_file,
            "error": self.error,
            "status": self.status.value,
            "cost_usd": self.cost_usd,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


@dataclass(frozen=True)
class ActiveBlock:
    """Snapshot of the external usage block for the current billing window."""

    id: str
    start_time: str
    end_time: str
    is_active: bool
    total_tokens: int
    cost_usd: float
    projection: Optional[dict] = None


@dataclass(frozen=True)
class ResultRecord:
    """Terminal result record emitted by the CLI in structured output mode."""

    result: str
    cost_usd: Optional[float] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    is_error: bool = False
    subtype: Optional[str] = None
    session_id: Optional[str] = None
    num_turns: Optional[int] = None


def format_number(value: float) -> str:
    """Render a number without trailing zeros (50.0 -> "50", 2.5 -> "2.5")."""
    text = f"{value:f}".rstrip("0").rstrip(".")
    return text or "0"
