"""
Trigger dispatch.

The alarm thread and the periodic ticker call into TriggerDispatcher. Each
entry point checks the job, hands the run to a thread pool and returns at
once; the pool thread drives the async worker with asyncio.run() and reports
the worker's result back to whichever backend fired.

Pool threads are not daemon threads, so the interpreter waits for in-flight
runs at exit instead of cutting them off mid-call.
"""

import asyncio
import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from scheduler.backends.alarm import AlarmClock
from scheduler.backends.base import RetryPolicy, WorkResult
from scheduler.backends.periodic import PeriodicWorkQueue, WorkRequest
from scheduler.errors import NotFoundError
from scheduler.models import utcnow
from scheduler.store import JobStore
from scheduler.worker import AgentTaskWorker, Trigger, TriggerSource

logger = logging.getLogger(__name__)


class TriggerDispatcher:
    def __init__(
        self,
        store: JobStore,
        worker: AgentTaskWorker,
        alarms: AlarmClock,
        work_queue: PeriodicWorkQueue,
        retry_policy: Optional[RetryPolicy] = None,
        max_workers: int = 2,
        allow_overlap: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.worker = worker
        self.alarms = alarms
        self.work_queue = work_queue
        self.retry_policy = retry_policy or RetryPolicy()
        self.allow_overlap = allow_overlap
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job-run")
        self._in_flight: Counter = Counter()
        self._lock = threading.Lock()

    # =========================================================================
    # Entry points
    # =========================================================================

    def on_alarm_fired(self, job_id: str, attempt: int = 0) -> Optional[Future]:
        """AlarmClock receiver for one-shot jobs."""
        job = self.store.get_by_id(job_id)
        if job is None or not job.enabled:
            logger.debug("Alarm for job %s discarded (%s)", job_id, "missing" if job is None else "disabled")
            return None
        if not self._acquire(job_id):
            logger.warning("Alarm for job %s skipped: a run is already in progress", job_id)
            return None
        trigger = Trigger(job_id=job_id, source=TriggerSource.ALARM, fired_at=self._clock(), attempt=attempt)
        return self._submit(trigger)

    def on_periodic_work_due(self, work: WorkRequest) -> Optional[Future]:
        """Called by the ticker for each claimed periodic work item."""
        job = self.store.get_by_id(work.job_id)
        if job is None:
            logger.debug("Periodic work %s has no job; removing it", work.unique_name)
            self.work_queue.cancel_work_by_id(work.work_id)
            return None
        if not job.enabled:
            logger.debug("Periodic work %s discarded: job disabled", work.unique_name)
            self.work_queue.complete(work.work_id, WorkResult.SUCCESS, self._clock())
            return None
        if not self._acquire(job.id):
            logger.warning("Periodic run of job %s skipped: previous run still in progress", job.id)
            self.work_queue.complete(work.work_id, WorkResult.SUCCESS, self._clock())
            return None
        trigger = Trigger(
            job_id=job.id,
            source=TriggerSource.PERIODIC,
            fired_at=self._clock(),
            work_id=work.work_id,
            attempt=work.run_attempt,
        )
        return self._submit(trigger)

    def run_now(self, job_id: str) -> Future:
        """
        Run a job immediately, whether or not it is enabled.

        Manual runs are never skipped for overlap and never retried.
        """
        if self.store.get_by_id(job_id) is None:
            raise NotFoundError(f"Job not found: {job_id}")
        self._acquire(job_id, force=True)
        trigger = Trigger(job_id=job_id, source=TriggerSource.MANUAL, fired_at=self._clock())
        return self._submit(trigger, bypass_enabled=True)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def in_flight(self) -> List[str]:
        """IDs of jobs with a run in progress."""
        with self._lock:
            return sorted(self._in_flight)

    # =========================================================================
    # Run body
    # =========================================================================

    def _submit(self, trigger: Trigger, bypass_enabled: bool = False) -> Future:
        try:
            return self._pool.submit(self._run, trigger, bypass_enabled)
        except RuntimeError:
            # Pool already shut down
            self._release(trigger.job_id)
            raise

    def _run(self, trigger: Trigger, bypass_enabled: bool) -> WorkResult:
        try:
            result = asyncio.run(self.worker.do_work(trigger, bypass_enabled=bypass_enabled))
        except Exception:
            logger.exception("Run of job %s crashed", trigger.job_id)
            result = WorkResult.RETRY
        finally:
            self._release(trigger.job_id)

        try:
            self._report(trigger, result)
        except Exception:
            logger.exception("Could not report %s for job %s", result.value, trigger.job_id)
        return result

    def _report(self, trigger: Trigger, result: WorkResult) -> None:
        if trigger.source == TriggerSource.PERIODIC:
            self.work_queue.complete(trigger.work_id, result, self._clock())
            return

        if trigger.source == TriggerSource.ALARM and result == WorkResult.RETRY:
            attempt = trigger.attempt + 1
            if not self.retry_policy.should_retry(attempt):
                logger.warning("Job %s: giving up after %d retries", trigger.job_id, trigger.attempt)
                return
            job = self.store.get_by_id(trigger.job_id)
            if job is None or not job.enabled:
                return
            fire_at = self._clock() + timedelta(seconds=self.retry_policy.delay_for(attempt))
            self.alarms.set_exact(trigger.job_id, fire_at, attempt=attempt)
            logger.info("Job %s: retry %d/%d at %s", trigger.job_id, attempt,
                        self.retry_policy.max_attempts, fire_at.isoformat())

    # =========================================================================
    # Same-job overlap guard
    # =========================================================================

    def _acquire(self, job_id: str, force: bool = False) -> bool:
        with self._lock:
            if self._in_flight[job_id] and not (self.allow_overlap or force):
                return False
            self._in_flight[job_id] += 1
            return True

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._in_flight[job_id] -= 1
            if self._in_flight[job_id] <= 0:
                del self._in_flight[job_id]
