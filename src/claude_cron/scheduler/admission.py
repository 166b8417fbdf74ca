"""
Admission Controller.

Decides whether a fired job may run. Checks, in order:
1. Single-flight: a job already running is a silent no-op
2. Parallel cap: too many running jobs -> skipped run
3. Usage guard: block-token limit first, then the daily budget;
   a failing or empty usage source falls through (fail-open)

Admitted jobs are handed to the ProcessRunner. Skips are recorded as
terminal SKIPPED runs and never retried; the next fire is the retry.
"""

import logging
from datetime import tzinfo
from typing import Optional

from ..config import DEFAULT_MAX_PARALLEL_JOBS
from .entities import Job, Run, format_number
from .errors import UsageUnavailableError
from .executor import ProcessRunner
from .persistence import PersistenceAdapter
from .registry import JobRegistry, Reservation
from .usage import UsageSource


logger = logging.getLogger(__name__)


class AdmissionController:
    """Gatekeeper between trigger fires and the process runner."""

    def __init__(
        self,
        registry: JobRegistry,
        persistence: PersistenceAdapter,
        runner: ProcessRunner,
        usage_source: Optional[UsageSource] = None,
        max_parallel_jobs: int = DEFAULT_MAX_PARALLEL_JOBS,
        timezone: Optional[tzinfo] = None,
    ):
        self.registry = registry
        self.persistence = persistence
        self.runner = runner
        self.usage_source = usage_source
        self.max_parallel_jobs = max_parallel_jobs
        # Calendar day for the daily budget; same zone the cron triggers use
        self.timezone = timezone

    def consider(self, job: Job) -> Optional[Run]:
        """
        Evaluate a fired job and either run it or record a skip.

        Returns:
            The finalized Run (success/failed/skipped), or None when the
            fire was dropped because the job is already running
        """
        outcome, running = self.registry.reserve(job, self.max_parallel_jobs)

        if outcome == Reservation.BUSY:
            logger.info(
                f"[SKIP] Job \"{job.name}\" (id={job.id}) is already running, skipping"
            )
            return None

        if outcome == Reservation.AT_CAPACITY:
            return self._skip(
                job, f"Parallel limit reached ({running}/{self.max_parallel_jobs})"
            )

        try:
            reason = self.check_usage(job)
        except Exception:
            self.registry.release(job)
            raise

        if reason is not None:
            self.registry.release(job)
            return self._skip(job, reason)

        return self.runner.execute(job)

    def check_usage(self, job: Job) -> Optional[str]:
        """
        Apply the usage guards in priority order.

        Returns:
            Skip reason, or None if the job may run
        """
        threshold = job.session_limit_threshold
        pct = format_number(threshold)

        if job.block_token_limit is not None:
            block = self._active_block(job)
            if block is not None and block.is_active:
                limit = job.block_token_limit * (threshold / 100)
                if block.total_tokens >= limit:
                    return (
                        f"Block tokens {block.total_tokens} >= threshold "
                        f"{format_number(limit)} ({pct}% of {job.block_token_limit})"
                    )

        if job.daily_budget_usd is not None:
            usage = self.persistence.daily_usage(tz=self.timezone)
            limit = job.daily_budget_usd * (threshold / 100)
            if usage >= limit:
                return (
                    f"Daily usage ${usage:.2f} >= threshold ${limit:.2f} "
                    f"({pct}% of ${format_number(job.daily_budget_usd)})"
                )

        return None

    def _active_block(self, job: Job):
        if self.usage_source is None:
            return None
        try:
            return self.usage_source.get_active_block()
        except UsageUnavailableError as e:
            logger.warning(
                f"Usage source unavailable for job {job.id}, falling through: {e}"
            )
            return None

    def _skip(self, job: Job, reason: str) -> Run:
        logger.info(f"[SKIP] Job \"{job.name}\" (id={job.id}): {reason}")
        return self.persistence.record_skipped_run(job.id, reason)
