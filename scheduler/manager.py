"""
Job lifecycle: validate, persist, and install or remove backend schedules.

One-shot jobs go to the exact AlarmClock. Recurring and conditional jobs go
to the PeriodicWorkQueue under a unique name derived from the job ID, so
re-scheduling the same job always replaces its previous periodic work.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from croniter import croniter

from scheduler.backends.alarm import AlarmClock
from scheduler.backends.base import ExistingWorkPolicy
from scheduler.backends.periodic import PeriodicWorkQueue, unique_work_name
from scheduler.errors import NotFoundError, ValidationError
from scheduler.models import (
    CONDITIONAL_INTERVAL_MINUTES,
    MIN_INTERVAL_MINUTES,
    Conditional,
    ExecutionLog,
    Job,
    OneTime,
    Recurring,
    ensure_utc,
    utcnow,
)
from scheduler.store import JobStore

logger = logging.getLogger(__name__)


def validate_job(job: Job, now: Optional[datetime] = None) -> None:
    """
    Raise ValidationError if the job must not be scheduled.

    Runs before any store or backend call, so a rejected job leaves no trace.
    """
    now = now or utcnow()

    if not job.instruction or not job.instruction.strip():
        raise ValidationError("instruction must not be empty")

    if job.max_executions is not None and job.max_executions < 1:
        raise ValidationError("maxExecutions must be at least 1")

    schedule = job.schedule
    if isinstance(schedule, OneTime):
        if ensure_utc(schedule.execute_at) <= now:
            raise ValidationError("executeAt must be in the future")

    elif isinstance(schedule, Recurring):
        has_interval = schedule.interval_minutes is not None
        has_cron = bool(schedule.cron_expression)
        if not has_interval and not has_cron:
            raise ValidationError(
                "Either intervalMinutes or cronExpression must be set for RECURRING cronjobs"
            )
        if has_interval and has_cron:
            raise ValidationError(
                "Only one of intervalMinutes or cronExpression may be set for RECURRING cronjobs"
            )
        if has_interval and schedule.interval_minutes < MIN_INTERVAL_MINUTES:
            raise ValidationError(
                f"Minimum interval is {MIN_INTERVAL_MINUTES} minutes for battery optimization"
            )
        if has_cron and not croniter.is_valid(schedule.cron_expression):
            raise ValidationError(f"Invalid cron expression: {schedule.cron_expression!r}")

    elif not isinstance(schedule, Conditional):
        raise ValidationError(f"Unsupported schedule type: {type(schedule).__name__}")


class JobManager:
    """Scheduling API over the job store and the two backends."""

    def __init__(
        self,
        store: JobStore,
        alarms: AlarmClock,
        work_queue: PeriodicWorkQueue,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.alarms = alarms
        self.work_queue = work_queue
        self._clock = clock
        # execute_at each alarm of this process was armed for
        self._armed_for: Dict[str, datetime] = {}

    # =========================================================================
    # Lifecycle operations
    # =========================================================================

    def schedule(self, job: Job) -> str:
        """Validate, persist and install a job. Returns the job ID."""
        validate_job(job, self._clock())
        self.store.create(job)
        self._install(job)
        logger.info("Scheduled job %s (%s)", job.id, job.schedule_kind)
        return job.id

    def cancel(self, job_id: str) -> None:
        """
        Remove every backend schedule for a job and disable it.

        Both paths are tried regardless of the job's current schedule kind,
        since an update may have changed it. Unknown IDs are a no-op.
        """
        job = self.store.get_by_id(job_id)
        self._uninstall(job_id, job.backend_handle if job else None)
        if job is None:
            return
        self.store.update_enabled(job_id, False)
        self.store.update_backend_handle(job_id, None)
        logger.info("Cancelled job %s", job_id)

    def set_enabled(self, job_id: str, enabled: bool) -> Job:
        """Enable (re-validate and reinstall) or disable (cancel) a job."""
        job = self._require(job_id)
        if not enabled:
            self.cancel(job_id)
            return self._require(job_id)

        job = job.copy(enabled=True)
        validate_job(job, self._clock())
        self.store.update_enabled(job_id, True)
        self._install(job)
        logger.info("Enabled job %s", job_id)
        return self._require(job_id)

    def update(self, job: Job) -> Job:
        """Replace a job's definition and reinstall its schedule if enabled."""
        existing = self._require(job.id)
        validate_job(job, self._clock())
        self._uninstall(job.id, existing.backend_handle)
        job = job.copy(backend_handle=None)
        self.store.update(job)
        if job.enabled:
            self._install(job)
        logger.info("Updated job %s", job.id)
        return self._require(job.id)

    def delete(self, job_id: str) -> bool:
        """Cancel then delete a job; its execution history goes with it."""
        self.cancel(job_id)
        deleted = self.store.delete_by_id(job_id)
        if deleted:
            logger.info("Deleted job %s", job_id)
        return deleted

    def reschedule_alarms(self) -> int:
        """
        Rebuild exact alarms after a restart.

        Enabled one-shot jobs still in the future are re-armed. One whose
        time passed while the process was down is armed to fire now if it
        never ran, and disabled otherwise. Returns the number of alarms armed.
        """
        now = self._clock()
        armed = 0
        for job in self.store.list_by_kind(OneTime.kind, enabled_only=True):
            execute_at = ensure_utc(job.schedule.execute_at)
            if execute_at > now:
                self._arm(job.id, execute_at, execute_at)
                armed += 1
            elif self._never_ran(job):
                logger.info("One-shot job %s was due at %s and never ran; firing now",
                            job.id, execute_at.isoformat())
                self._arm(job.id, execute_at, now)
                armed += 1
            else:
                logger.info("One-shot job %s expired at %s while offline; disabling",
                            job.id, execute_at.isoformat())
                self.store.update_enabled(job.id, False)
        if armed:
            logger.info("Re-armed %d alarm(s)", armed)
        return armed

    def sync_alarms(self) -> int:
        """
        Bring this process's alarms in line with the store.

        Jobs scheduled, edited or disabled by another process (the CLI) only
        reach the store; the daemon calls this on every tick. A one-shot job
        this process has not armed for its current execute_at gets an alarm,
        at once if that time has already passed and the job never ran.
        Alarms of jobs that are gone or disabled are dropped. Returns the
        number of alarms armed or moved.
        """
        now = self._clock()
        changed = 0
        wanted = set()
        for job in self.store.list_by_kind(OneTime.kind, enabled_only=True):
            wanted.add(job.id)
            execute_at = ensure_utc(job.schedule.execute_at)
            if self._armed_for.get(job.id) == execute_at:
                # Pending, fired, or waiting on a retry
                continue
            if execute_at > now:
                self._arm(job.id, execute_at, execute_at)
                changed += 1
            elif self._never_ran(job):
                logger.info("One-shot job %s is overdue (due %s); firing now", job.id, execute_at.isoformat())
                self._arm(job.id, execute_at, now)
                changed += 1
        for job_id in list(self._armed_for):
            if job_id not in wanted:
                self._armed_for.pop(job_id, None)
                self.alarms.cancel(job_id)
        for alarm in self.alarms.pending():
            if alarm.job_id not in wanted:
                self.alarms.cancel(alarm.job_id)
        return changed

    # =========================================================================
    # Read helpers
    # =========================================================================

    def get_by_id(self, job_id: str) -> Optional[Job]:
        return self.store.get_by_id(job_id)

    def list_enabled(self) -> List[Job]:
        return self.store.list_enabled()

    def list_all(self) -> List[Job]:
        return self.store.list_all()

    def list_disabled(self, limit: int = 50, offset: int = 0) -> List[Job]:
        return self.store.list_disabled(limit, offset)

    def logs_for_job(self, job_id: str, limit: Optional[int] = None, offset: int = 0) -> List[ExecutionLog]:
        return self.store.logs_for_job(job_id, limit, offset)

    # =========================================================================
    # Backend plumbing
    # =========================================================================

    def _require(self, job_id: str) -> Job:
        job = self.store.get_by_id(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def _never_ran(self, job: Job) -> bool:
        # A started run leaves a log row even if the process died mid-run
        if job.execution_count or job.last_executed_at is not None:
            return False
        return not self.store.logs_for_job(job.id, limit=1)

    def _arm(self, job_id: str, execute_at: datetime, fire_at: datetime) -> None:
        self.alarms.set_exact(job_id, fire_at)
        self._armed_for[job_id] = execute_at

    def _install(self, job: Job) -> None:
        schedule = job.schedule
        if isinstance(schedule, OneTime):
            execute_at = ensure_utc(schedule.execute_at)
            self._arm(job.id, execute_at, execute_at)
            return

        if isinstance(schedule, Recurring):
            interval = schedule.effective_interval_minutes
        else:
            interval = CONDITIONAL_INTERVAL_MINUTES
        work = self.work_queue.enqueue_unique_periodic(
            unique_work_name(job.id),
            job.id,
            interval,
            job.constraints,
            policy=ExistingWorkPolicy.REPLACE,
        )
        self.store.update_backend_handle(job.id, work.work_id)

    def _uninstall(self, job_id: str, backend_handle: Optional[str]) -> None:
        self.alarms.cancel(job_id)
        self._armed_for.pop(job_id, None)
        if backend_handle:
            self.work_queue.cancel_work_by_id(backend_handle)
        self.work_queue.cancel_unique_work(unique_work_name(job_id))
