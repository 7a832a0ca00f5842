"""
Execution accounting: log rows per run, run counts, and auto-disable.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from scheduler.models import ExecutionStatus, Job, utcnow
from scheduler.store import JobStore

logger = logging.getLogger(__name__)


class ExecutionAccountant:
    """
    Records the start and end of every run.

    `cancel_schedule` is the adapter's cancel path (JobManager.cancel). It is
    called once a job has used up its max_executions so no further triggers
    arrive for it.
    """

    def __init__(
        self,
        store: JobStore,
        cancel_schedule: Callable[[str], None],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cancel_schedule = cancel_schedule
        self._clock = clock

    def record_start(self, job_id: str, conversation_id: Optional[str] = None) -> int:
        """Insert a placeholder row (CANCELLED until completed). Returns the log ID."""
        log_id = self.store.insert_log(
            job_id,
            started_at=self._clock(),
            status=ExecutionStatus.CANCELLED,
            conversation_id=conversation_id,
        )
        logger.debug("Job %s: run started (log %s)", job_id, log_id)
        return log_id

    def record_complete(
        self,
        log_id: int,
        status: ExecutionStatus,
        summary: Optional[str] = None,
        error: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Optional[Job]:
        job = self.store.finish_execution(
            log_id,
            status,
            summary=summary,
            error=error,
            completed_at=self._clock(),
            conversation_id=conversation_id,
        )
        if job is None:
            return None

        logger.info("Job %s: run %d finished with %s", job.id, job.execution_count, status.value)

        if job.is_exhausted and job.enabled:
            logger.info("Job %s reached max executions (%d); disabling", job.id, job.max_executions)
            self.cancel_schedule(job.id)
            job = self.store.get_by_id(job.id)
        return job
