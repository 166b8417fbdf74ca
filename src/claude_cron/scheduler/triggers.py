"""
Cron triggers.

Wraps APScheduler so the rest of the scheduler only sees a small
interface: a factory that validates expressions and binds callbacks,
and a Trigger handle with next_fire_time/pause/resume/stop.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .errors import InvalidScheduleError


logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 10

# Fires that arrive more than this many seconds late are dropped
MISFIRE_GRACE_SECONDS = 60


class Trigger:
    """Handle for a single cron binding."""

    def __init__(self, scheduler: BackgroundScheduler, binding_id: str, expression: str):
        self._scheduler = scheduler
        self._binding_id = binding_id
        self.expression = expression
        self._stopped = False

    @property
    def binding_id(self) -> str:
        return self._binding_id

    def next_fire_time(self) -> Optional[datetime]:
        """Next fire time, or None when paused or stopped."""
        if self._stopped:
            return None
        aps_job = self._scheduler.get_job(self._binding_id)
        if aps_job is None:
            return None
        # Unset until the scheduler has started
        return getattr(aps_job, "next_run_time", None)

    def is_paused(self) -> bool:
        return not self._stopped and self.next_fire_time() is None

    def is_stopped(self) -> bool:
        return self._stopped

    def pause(self) -> None:
        if not self._stopped:
            self._scheduler.pause_job(self._binding_id)

    def resume(self) -> None:
        if not self._stopped:
            self._scheduler.resume_job(self._binding_id)

    def stop(self) -> None:
        """Remove the binding. No further fires after this returns."""
        if self._stopped:
            return
        self._stopped = True
        try:
            self._scheduler.remove_job(self._binding_id)
        except JobLookupError:
            logger.debug(f"Trigger {self._binding_id} already removed")


class CronTriggerFactory:
    """
    Creates cron triggers on a shared BackgroundScheduler.

    Fire callbacks run on the scheduler's thread pool, so different jobs
    can execute concurrently. The pool must be larger than the parallel
    job cap so the cap, not the pool, bounds concurrency.
    """

    def __init__(
        self,
        timezone: Optional[str] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        """
        Args:
            timezone: IANA zone name for cron evaluation (None = local zone)
            max_workers: Thread pool size for fire callbacks
            scheduler: Pre-built scheduler (for testing)
        """
        if scheduler is None:
            config = {
                "executors": {"default": ThreadPoolExecutor(max_workers)},
                "job_defaults": {
                    "coalesce": True,
                    "max_instances": 1,
                    "misfire_grace_time": MISFIRE_GRACE_SECONDS,
                },
            }
            if timezone:
                config["timezone"] = timezone
            scheduler = BackgroundScheduler(**config)
        self.scheduler = scheduler

    def parse(self, expression: str) -> CronTrigger:
        """
        Parse a 5-field crontab expression.

        Raises:
            InvalidScheduleError: Expression cannot be parsed
        """
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidScheduleError(str(expression), "empty expression")
        try:
            return CronTrigger.from_crontab(expression, timezone=self.scheduler.timezone)
        except (ValueError, TypeError, KeyError) as e:
            raise InvalidScheduleError(expression, str(e)) from e

    def validate(self, expression: str) -> None:
        self.parse(expression)

    def create(self, expression: str, callback: Callable[[], None], name: str = "") -> Trigger:
        """
        Bind a callback to a cron expression.

        Raises:
            InvalidScheduleError: Expression cannot be parsed
        """
        cron = self.parse(expression)
        binding_id = uuid.uuid4().hex
        self.scheduler.add_job(
            callback,
            trigger=cron,
            id=binding_id,
            name=name or binding_id,
        )
        return Trigger(self.scheduler, binding_id, expression)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
