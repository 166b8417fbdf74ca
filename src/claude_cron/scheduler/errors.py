"""
Scheduler-specific exceptions.

Admission skips are not represented here: a skip is a recorded,
terminal run, not an error.
"""


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""
    pass


class InvalidScheduleError(SchedulerError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, expression: str, reason: str = ""):
        self.expression = expression
        self.reason = reason
        message = f"Invalid cron expression: {expression!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ValidationError(SchedulerError):
    """
    Raised when job fields are malformed.

    Examples:
    - Missing name/expression/prompt/cwd
    - session_limit_threshold outside 1..100
    - Non-positive timeout
    """

    def __init__(self, message: str, field: str = None):
        self.field = field
        super().__init__(message)


class JobNotFoundError(SchedulerError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class RunNotFoundError(SchedulerError):
    """Raised when a requested run (or its log file) does not exist."""

    def __init__(self, run_id, message: str = None):
        self.run_id = run_id
        super().__init__(message or f"Run not found: {run_id}")


class AlreadyRunningError(SchedulerError):
    """Raised when a manual trigger targets a job that is already running."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job is already running: {job_id}")


class InvalidOperationError(SchedulerError):
    """
    Raised when an operation violates ledger invariants.

    Example: finalizing a run that already has a terminal status.
    """
    pass


class UsageUnavailableError(SchedulerError):
    """
    Raised when the external usage source cannot be queried.

    Never surfaced to API callers: admission treats it as fail-open.
    """
    pass
