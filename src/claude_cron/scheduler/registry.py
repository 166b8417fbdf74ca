"""
Job Registry.

Owns the live set of jobs, each bound to a cron trigger:
- register / unregister bindings
- pause / resume firing (paused flag persisted)
- reschedule by replacing the trigger, never mutating it
- atomic single-flight + parallel-cap reservation for admission

The map is keyed by job id and guarded by a lock. Reads take a
point-in-time snapshot; running counts are advisory.
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from .entities import Job
from .persistence import PersistenceAdapter
from .triggers import CronTriggerFactory, Trigger


logger = logging.getLogger(__name__)


class Reservation(str, Enum):
    """Outcome of an admission slot reservation."""

    RESERVED = "RESERVED"
    BUSY = "BUSY"
    AT_CAPACITY = "AT_CAPACITY"


class JobRegistry:
    """In-memory registry of scheduled jobs."""

    def __init__(
        self,
        trigger_factory: CronTriggerFactory,
        persistence: Optional[PersistenceAdapter] = None,
    ):
        """
        Args:
            trigger_factory: Creates cron bindings
            persistence: Ledger used to persist the paused flag (optional)
        """
        self._triggers = trigger_factory
        self._persistence = persistence
        self._jobs: dict[int, Job] = {}
        self._bindings: dict[int, Trigger] = {}
        self._lock = threading.RLock()
        self._on_fire: Optional[Callable[[Job], Any]] = None

    def set_fire_handler(self, handler: Callable[[Job], Any]) -> None:
        """
        Set the callback invoked with the job on each trigger fire.

        Normally AdmissionController.consider.
        """
        self._on_fire = handler

    # =========================================================================
    # Lookup
    # =========================================================================

    def get(self, job_id: int) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_all(self) -> list[Job]:
        """Snapshot of all jobs in registration order."""
        with self._lock:
            return list(self._jobs.values())

    def running_count(self) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.is_running)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._jobs

    def next_fire_time(self, job: Job) -> Optional[datetime]:
        with self._lock:
            binding = self._bindings.get(job.id)
        return binding.next_fire_time() if binding else None

    def is_scheduled(self, job: Job) -> bool:
        """True while the job holds a live (possibly paused) binding."""
        with self._lock:
            binding = self._bindings.get(job.id)
        return binding is not None and not binding.is_stopped()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _fire(self, job_id: int) -> None:
        job = self.get(job_id)
        if job is None or self._on_fire is None:
            return
        try:
            self._on_fire(job)
        except Exception:
            logger.exception(f"Unhandled error while firing job {job_id}")

    def _bind(self, job: Job, expression: str) -> Trigger:
        binding = self._triggers.create(
            expression,
            lambda job_id=job.id: self._fire(job_id),
            name=f"job-{job.id}",
        )
        if job.paused:
            binding.pause()
        return binding

    def register(self, job: Job) -> Job:
        """
        Bind the job's expression to a trigger and store the job.

        A job whose paused flag is set is bound and immediately paused.

        Raises:
            InvalidScheduleError: Expression cannot be parsed (nothing stored)
        """
        binding = self._bind(job, job.expression)

        with self._lock:
            previous = self._bindings.get(job.id)
            self._jobs[job.id] = job
            self._bindings[job.id] = binding

        if previous is not None:
            previous.stop()

        logger.info(f"Registered job \"{job.name}\" (id={job.id}) [{job.expression}]")
        return job

    def unregister(self, job_id: int) -> Optional[Job]:
        """
        Stop the job's trigger and remove it.

        Returns:
            The removed job, or None if the id was not registered
        """
        with self._lock:
            job = self._jobs.pop(job_id, None)
            binding = self._bindings.pop(job_id, None)

        if binding is not None:
            binding.stop()

        if job is not None:
            logger.info(f"Unregistered job \"{job.name}\" (id={job_id})")

        return job

    def pause(self, job: Job) -> None:
        """Suspend firing; the binding is kept."""
        with self._lock:
            binding = self._bindings.get(job.id)
            if binding is not None:
                binding.pause()
            job.paused = True

        if self._persistence is not None:
            self._persistence.set_job_paused(job.id, True)

        logger.info(f"Job paused: \"{job.name}\" (id={job.id})")

    def resume(self, job: Job) -> None:
        """Continue firing a paused job."""
        with self._lock:
            binding = self._bindings.get(job.id)
            if binding is not None:
                binding.resume()
            job.paused = False

        if self._persistence is not None:
            self._persistence.set_job_paused(job.id, False)

        logger.info(f"Job resumed: \"{job.name}\" (id={job.id})")

    def reschedule(self, job: Job, expression: str) -> bool:
        """
        Replace the job's trigger if the expression changed.

        Returns:
            True if a new binding was created

        Raises:
            InvalidScheduleError: New expression invalid (job untouched)
        """
        if expression == job.expression:
            return False

        self._triggers.validate(expression)
        binding = self._bind(job, expression)

        with self._lock:
            previous = self._bindings.get(job.id)
            self._bindings[job.id] = binding
            job.expression = expression

        if previous is not None:
            previous.stop()

        logger.info(f"Job rescheduled: \"{job.name}\" (id={job.id}) [{expression}]")
        return True

    def clear(self) -> None:
        """Stop every binding and forget all jobs."""
        with self._lock:
            bindings = list(self._bindings.values())
            self._bindings.clear()
            self._jobs.clear()

        for binding in bindings:
            binding.stop()

    # =========================================================================
    # Admission support
    # =========================================================================

    def reserve(self, job: Job, max_parallel: int) -> Tuple[Reservation, int]:
        """
        Atomically apply single-flight and the parallel cap, then mark running.

        Returns:
            (outcome, running_count) where running_count is the number of
            running jobs observed before the reservation
        """
        with self._lock:
            if job.is_running:
                return Reservation.BUSY, self.running_count()

            running = self.running_count()
            if running >= max_parallel:
                return Reservation.AT_CAPACITY, running

            job.is_running = True
            return Reservation.RESERVED, running

    def release(self, job: Job) -> None:
        """Clear a reservation that did not lead to execution."""
        with self._lock:
            job.is_running = False
