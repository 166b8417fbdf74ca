"""
Scheduler Service - Main entry point for the cron engine.

This service orchestrates all scheduler components:
- PersistenceAdapter (job and run ledger)
- CronTriggerFactory (APScheduler-backed cron bindings)
- JobRegistry (live jobs and their triggers)
- AdmissionController (single-flight, parallel cap, usage guards)
- ProcessRunner (CLI supervision)

Usage:
    service = SchedulerService.create(settings)
    service.start()
    # ... triggers fire in background threads ...
    service.stop()
"""

import logging
import numbers
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from ..config import Settings
from .admission import AdmissionController
from .entities import JOB_FIELDS, Job, Run, RunStatus, to_iso
from .errors import (
    AlreadyRunningError,
    JobNotFoundError,
    RunNotFoundError,
    ValidationError,
)
from .executor import ProcessRunner
from .persistence import PersistenceAdapter
from .registry import JobRegistry
from .triggers import DEFAULT_MAX_WORKERS, CronTriggerFactory
from .usage import CcusageUsageSource, UsageSource


logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "expression", "prompt", "cwd")

# Fields an update may clear by sending null
NULLABLE_FIELDS = (
    "max_budget",
    "allowed_tools",
    "append_system_prompt",
    "daily_budget_usd",
    "block_token_limit",
)

# Manual triggers only hand work to admission; a small pool is enough
MANUAL_TRIGGER_WORKERS = 4


class SchedulerService:
    """
    Main service that coordinates all scheduler components.

    Provides:
    - Component initialization and wiring
    - Startup with orphaned-run recovery and job reload
    - Shutdown of triggers and the manual trigger pool
    - API-friendly methods for job operations
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        trigger_factory: CronTriggerFactory,
        registry: JobRegistry,
        runner: ProcessRunner,
        admission: AdmissionController,
    ):
        """
        Initialize SchedulerService with all components.

        Use SchedulerService.create() for convenient construction.
        """
        self.persistence = persistence
        self.trigger_factory = trigger_factory
        self.registry = registry
        self.runner = runner
        self.admission = admission

        self._manual_pool: Optional[ThreadPoolExecutor] = None
        self._started = False

    @classmethod
    def create(
        cls,
        settings: Settings,
        usage_source: Optional[UsageSource] = None,
        trigger_factory: Optional[CronTriggerFactory] = None,
    ) -> "SchedulerService":
        """
        Create a SchedulerService with all components wired together.

        Args:
            settings: Runtime settings
            usage_source: Usage block provider (defaults to the ccusage CLI)
            trigger_factory: Pre-built trigger factory (for testing)

        Returns:
            Configured SchedulerService
        """
        persistence = PersistenceAdapter(settings.db_path)

        if trigger_factory is None:
            trigger_factory = CronTriggerFactory(
                timezone=settings.timezone,
                max_workers=max(DEFAULT_MAX_WORKERS, settings.max_parallel_jobs * 2),
            )

        registry = JobRegistry(trigger_factory, persistence)

        runner = ProcessRunner(
            persistence=persistence,
            logs_dir=settings.logs_dir,
            command=settings.claude_command,
        )

        if usage_source is None:
            usage_source = CcusageUsageSource(
                command=settings.usage_command,
                timeout=settings.usage_timeout,
            )

        admission = AdmissionController(
            registry=registry,
            persistence=persistence,
            runner=runner,
            usage_source=usage_source,
            max_parallel_jobs=settings.max_parallel_jobs,
            timezone=ZoneInfo(settings.timezone) if settings.timezone else None,
        )

        # Wire components
        registry.set_fire_handler(admission.consider)

        return cls(
            persistence=persistence,
            trigger_factory=trigger_factory,
            registry=registry,
            runner=runner,
            admission=admission,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> int:
        """
        Start the scheduler service.

        Returns:
            Number of orphaned runs finalized during recovery
        """
        if self._started:
            raise RuntimeError("Scheduler already started")

        logger.info("Starting scheduler service...")

        recovered = self.persistence.fail_orphaned_runs()

        self._manual_pool = ThreadPoolExecutor(
            max_workers=MANUAL_TRIGGER_WORKERS,
            thread_name_prefix="manual-trigger",
        )
        self.trigger_factory.start()

        for job in self.persistence.list_jobs():
            try:
                self.registry.register(job)
            except Exception:
                logger.exception(f"Could not schedule job \"{job.name}\" (id={job.id})")

        self._started = True
        logger.info(f"Scheduler service started with {len(self.registry)} job(s)")
        return recovered

    def stop(self) -> None:
        """Stop firing triggers. Executions in flight finish on their own."""
        if not self._started:
            return

        logger.info("Stopping scheduler service...")
        self.registry.clear()
        self.trigger_factory.shutdown(wait=False)
        if self._manual_pool is not None:
            self._manual_pool.shutdown(wait=False)
            self._manual_pool = None
        self._started = False
        logger.info("Scheduler service stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._started and self.trigger_factory.running

    # =========================================================================
    # Job Operations
    # =========================================================================

    def list_jobs(self) -> list[Job]:
        return self.registry.list_all()

    def get_job(self, job_id: int) -> Job:
        """
        Raises:
            JobNotFoundError: Unknown job id
        """
        job = self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def create_job(self, fields: dict) -> Job:
        """
        Validate, persist and schedule a new job.

        Raises:
            ValidationError: Missing or malformed fields
            InvalidScheduleError: Expression cannot be parsed
        """
        fields = {k: v for k, v in fields.items() if k in JOB_FIELDS and v is not None}

        for name in REQUIRED_FIELDS:
            if not isinstance(fields.get(name), str) or not fields[name].strip():
                raise ValidationError(f"Field '{name}' is required", field=name)

        self._validate(fields)
        self.trigger_factory.validate(fields["expression"])

        job = self.persistence.create_job(fields)
        try:
            self.registry.register(job)
        except Exception:
            self.persistence.delete_job(job.id)
            raise

        logger.info(f"Job created: \"{job.name}\" (id={job.id})")
        return job

    def update_job(self, job_id: int, changes: dict) -> Job:
        """
        Apply changes to a job; the trigger is replaced only if the
        expression changed.

        Raises:
            JobNotFoundError: Unknown job id
            ValidationError: Malformed fields
            InvalidScheduleError: New expression cannot be parsed
        """
        job = self.get_job(job_id)
        changes = {k: v for k, v in changes.items() if k in JOB_FIELDS}

        for name, value in changes.items():
            if value is None and name not in NULLABLE_FIELDS:
                raise ValidationError(f"Field '{name}' cannot be null", field=name)
            if name in REQUIRED_FIELDS and (not isinstance(value, str) or not value.strip()):
                raise ValidationError(f"Field '{name}' cannot be empty", field=name)

        self._validate(changes)

        expression = changes.pop("expression", job.expression)
        rescheduled = self.registry.reschedule(job, expression)

        for key, value in changes.items():
            if key == "allowed_tools":
                value = list(value or [])
            elif key == "append_system_prompt":
                value = value or ""
            setattr(job, key, value)

        if rescheduled:
            changes["expression"] = job.expression
        self.persistence.update_job(job_id, **changes)

        logger.info(f"Job updated: \"{job.name}\" (id={job.id})")
        return job

    def delete_job(self, job_id: int) -> Job:
        """
        Unschedule a job and delete it with its run history.

        Raises:
            JobNotFoundError: Unknown job id
        """
        job = self.get_job(job_id)
        self.registry.unregister(job_id)
        self.persistence.delete_job(job_id)
        logger.info(f"Job deleted: \"{job.name}\" (id={job_id})")
        return job

    def pause(self, job_id: int) -> Job:
        job = self.get_job(job_id)
        self.registry.pause(job)
        return job

    def resume(self, job_id: int) -> Job:
        job = self.get_job(job_id)
        self.registry.resume(job)
        return job

    def trigger(self, job_id: int) -> Job:
        """
        Run a job now, outside its schedule.

        Admission still applies. Returns immediately; the run happens on
        the manual trigger pool.

        Raises:
            JobNotFoundError: Unknown job id
            AlreadyRunningError: Job is currently executing
        """
        job = self.get_job(job_id)
        if job.is_running:
            raise AlreadyRunningError(job_id)

        if self._manual_pool is None:
            raise RuntimeError("Scheduler is not started")

        logger.info(f"Manual trigger: \"{job.name}\" (id={job.id})")
        self._manual_pool.submit(self._run_manual, job)
        return job

    def _run_manual(self, job: Job) -> Optional[Run]:
        try:
            return self.admission.consider(job)
        except Exception:
            logger.exception(f"Manual trigger of job {job.id} failed")
            return None

    # =========================================================================
    # Run Operations
    # =========================================================================

    def list_runs(
        self,
        job_id: int,
        limit: int = 20,
        offset: int = 0,
        status: Optional[str] = None,
    ) -> tuple[list[Run], int]:
        """
        Page through a job's run history, newest first.

        Returns:
            (runs, total) where total counts all matching runs
        """
        self.get_job(job_id)

        run_status = None
        if status:
            try:
                run_status = RunStatus(status)
            except ValueError as e:
                raise ValidationError(f"Unknown run status: {status}", field="status") from e

        runs = self.persistence.list_runs(job_id, limit=limit, offset=offset, status=run_status)
        total = self.persistence.count_runs(job_id, status=run_status)
        return runs, total

    def get_log(self, job_id: int, run_id: Optional[int] = None) -> str:
        """
        Read the log file of a run (the latest run when run_id is None).

        Raises:
            JobNotFoundError: Unknown job id
            RunNotFoundError: No such run, or the run has no log file
        """
        self.get_job(job_id)

        if run_id is not None:
            run = self.persistence.get_run(run_id, job_id=job_id)
            if run is None:
                raise RunNotFoundError(run_id)
        else:
            run = self.persistence.get_latest_run(job_id)
            if run is None:
                raise RunNotFoundError(None, f"No runs found for job {job_id}")

        if not run.log_file or not Path(run.log_file).exists():
            raise RunNotFoundError(run.id, f"Log file not found for run {run.id}")

        return Path(run.log_file).read_text(encoding="utf-8", errors="replace")

    # =========================================================================
    # Views
    # =========================================================================

    def describe_job(self, job: Job) -> dict:
        """Job fields plus schedule state, last run and run count."""
        next_run = self.registry.next_fire_time(job)
        last_run = self.persistence.get_latest_run(job.id)

        data = job.to_dict()
        data.update({
            "scheduled": self.registry.is_scheduled(job),
            "next_run": to_iso(next_run) if next_run else None,
            "last_run": last_run.to_dict() if last_run else None,
            "run_count": self.persistence.count_runs(job.id),
        })
        return data

    def health(self) -> dict:
        return {
            "status": "ok",
            "jobs": len(self.registry),
            "running": self.registry.running_count(),
        }

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def _validate(fields: dict) -> None:
        """Range checks for the optional numeric fields present in `fields`."""
        threshold = fields.get("session_limit_threshold")
        if threshold is not None:
            if not _is_number(threshold) or not 1 <= threshold <= 100:
                raise ValidationError(
                    "session_limit_threshold must be between 1 and 100",
                    field="session_limit_threshold",
                )

        timeout_ms = fields.get("timeout_ms")
        if timeout_ms is not None:
            if not _is_number(timeout_ms) or timeout_ms <= 0:
                raise ValidationError("timeout_ms must be positive", field="timeout_ms")

        for name in ("max_budget", "daily_budget_usd", "block_token_limit"):
            value = fields.get(name)
            if value is not None and (not _is_number(value) or value < 0):
                raise ValidationError(f"{name} must be non-negative", field=name)

        tools = fields.get("allowed_tools")
        if tools is not None and (
            not isinstance(tools, (list, tuple)) or not all(isinstance(t, str) for t in tools)
        ):
            raise ValidationError("allowed_tools must be a list of strings", field="allowed_tools")


def _is_number(value) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)
