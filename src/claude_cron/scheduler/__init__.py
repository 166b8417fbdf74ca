"""
Cron Scheduler Core Module.

Cron-triggered execution of Claude CLI prompts:
- Job registry bound to APScheduler cron triggers
- Admission control (single-flight, parallel cap, usage guards)
- Supervised CLI execution with per-run log files
- SQLite job and run ledger
"""

from .entities import (
    RunStatus,
    Job,
    Run,
    ActiveBlock,
    ResultRecord,
)
from .errors import (
    SchedulerError,
    InvalidScheduleError,
    ValidationError,
    JobNotFoundError,
    RunNotFoundError,
    AlreadyRunningError,
    InvalidOperationError,
    UsageUnavailableError,
)
from .persistence import PersistenceAdapter
from .triggers import CronTriggerFactory, Trigger
from .registry import JobRegistry, Reservation
from .result_extractor import extract_result
from .usage import UsageSource, CcusageUsageSource
from .executor import ProcessRunner, build_command
from .admission import AdmissionController
from .service import SchedulerService

__all__ = [
    # Entities
    "RunStatus",
    "Job",
    "Run",
    "ActiveBlock",
    "ResultRecord",
    # Errors
    "SchedulerError",
    "InvalidScheduleError",
    "ValidationError",
    "JobNotFoundError",
    "RunNotFoundError",
    "AlreadyRunningError",
    "InvalidOperationError",
    "UsageUnavailableError",
    # Persistence
    "PersistenceAdapter",
    # Triggers
    "CronTriggerFactory",
    "Trigger",
    # Registry
    "JobRegistry",
    "Reservation",
    # Execution
    "extract_result",
    "UsageSource",
    "CcusageUsageSource",
    "ProcessRunner",
    "build_command",
    # Admission
    "AdmissionController",
    # Service
    "SchedulerService",
]
