"""
The body of a scheduled run.

AgentTaskWorker.do_work() is what the dispatcher executes in its pool for
every trigger: re-check the job, record the start, call the agent executor,
record the outcome, notify, and tell the backend whether to retry.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from scheduler.accounting import ExecutionAccountant
from scheduler.backends.base import WorkResult
from scheduler.errors import FatalError
from scheduler.executor import AgentExecutor, FailureKind, TaskFailure, TaskResult, TaskSuccess
from scheduler.models import ExecutionStatus, utcnow
from scheduler.store import JobStore

logger = logging.getLogger(__name__)


class TriggerSource(Enum):
    ALARM = "alarm"
    PERIODIC = "periodic"
    MANUAL = "manual"


@dataclass(frozen=True)
class Trigger:
    job_id: str
    source: TriggerSource
    fired_at: datetime = field(default_factory=utcnow)
    work_id: Optional[str] = None
    attempt: int = 0


# =============================================================================
# Notifications
# =============================================================================

class TaskCompletionNotifier(ABC):
    @abstractmethod
    async def on_task_completed(self, title: str, summary: str) -> None:
        ...

    @abstractmethod
    async def on_task_failed(self, title: str, error: str) -> None:
        ...


class LoggingNotifier(TaskCompletionNotifier):
    """Default notifier: writes completions to the scheduler log."""

    async def on_task_completed(self, title: str, summary: str) -> None:
        logger.info("Task completed: %s: %s", title[:50], summary[:200])

    async def on_task_failed(self, title: str, error: str) -> None:
        logger.warning("Task failed: %s: %s", title[:50], error)


# =============================================================================
# Worker
# =============================================================================

class AgentTaskWorker:
    def __init__(
        self,
        store: JobStore,
        executor: AgentExecutor,
        accountant: ExecutionAccountant,
        notifier: Optional[TaskCompletionNotifier] = None,
    ):
        self.store = store
        self.executor = executor
        self.accountant = accountant
        self.notifier = notifier or LoggingNotifier()

    async def do_work(self, trigger: Trigger, bypass_enabled: bool = False) -> WorkResult:
        """
        Run one job and report how the backend should proceed.

        A job that vanished is a FAILURE (nothing to retry). A disabled job is
        a no-op SUCCESS unless this is a manual run. Otherwise the outcome
        maps to SUCCESS, RETRY (executor failure) or FAILURE (fatal failure).
        """
        job = self.store.get_by_id(trigger.job_id)
        if job is None:
            logger.debug("Job %s no longer exists; dropping %s trigger", trigger.job_id, trigger.source.value)
            return WorkResult.FAILURE

        if not job.enabled and not bypass_enabled:
            logger.debug("Job %s is disabled; dropping %s trigger", job.id, trigger.source.value)
            return WorkResult.SUCCESS

        display_name = job.display_name
        logger.info("Running job '%s' (ID: %s, trigger: %s, attempt: %d)",
                    display_name[:50], job.id, trigger.source.value, trigger.attempt)

        log_id = self.accountant.record_start(job.id)

        try:
            result: TaskResult = await self.executor.execute_task(
                instruction=job.instruction,
                job_id=job.id,
                trigger_time=trigger.fired_at,
                conversation_id=job.origin_conversation_id,
                agent_name=job.agent_name,
            )
        except FatalError as e:
            logger.error("Executor gave up on job %s: %s", job.id, e)
            result = TaskFailure(error=str(e), kind=FailureKind.FATAL)
        except Exception as e:
            logger.exception("Executor raised for job %s", job.id)
            result = TaskFailure(error=f"{type(e).__name__}: {e}", kind=FailureKind.EXECUTION)

        if isinstance(result, TaskSuccess):
            self.accountant.record_complete(
                log_id,
                ExecutionStatus.SUCCESS,
                summary=result.summary,
                conversation_id=result.conversation_id,
            )
            if job.notify_on_completion:
                await self._notify(self.notifier.on_task_completed, display_name, result.summary)
            logger.info("Job '%s' completed successfully", display_name[:50])
            return WorkResult.SUCCESS

        if isinstance(result, TaskFailure):
            self.accountant.record_complete(log_id, ExecutionStatus.FAILED, error=result.error)
            if job.notify_on_completion:
                await self._notify(self.notifier.on_task_failed, display_name, result.error)
            logger.error("Job '%s' failed (%s): %s", display_name[:50], result.kind.value, result.error)
            if result.kind == FailureKind.EXECUTION:
                return WorkResult.RETRY
            return WorkResult.FAILURE

        raise TypeError(f"Executor returned {type(result).__name__}, expected TaskSuccess or TaskFailure")

    async def _notify(self, send, title: str, text: str) -> None:
        try:
            await send(title, text)
        except Exception:
            logger.exception("Completion notification failed for '%s'", title[:50])
