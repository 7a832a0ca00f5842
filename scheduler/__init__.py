"""
Job scheduling for autonomous agent runs.

Jobs are stored in SQLite and fire either once (an exact alarm) or
periodically (persistent periodic work). Each firing runs the job's
instruction through an AgentExecutor in a durable worker pool, records the
outcome in the execution log, and retries transient failures with backoff.

Jobs run from the scheduler daemon:
    agent-scheduler daemon       # Run in foreground
    agent-scheduler tick         # Or run due work once (e.g. from system cron)

The daemon ticks the periodic queue every 60 seconds. A file lock prevents
duplicate execution if multiple processes overlap.
"""

from scheduler.errors import (
    CorruptRecordError,
    ExecutionError,
    FatalError,
    NotFoundError,
    SchedulerError,
    ValidationError,
)
from scheduler.executor import AgentExecutor, FailureKind, TaskFailure, TaskSuccess
from scheduler.manager import JobManager, validate_job
from scheduler.models import (
    Conditional,
    Constraints,
    ExecutionLog,
    ExecutionStatus,
    Job,
    OneTime,
    Recurring,
    new_job,
)
from scheduler.store import JobStore

__all__ = [
    "AgentExecutor",
    "Conditional",
    "Constraints",
    "CorruptRecordError",
    "ExecutionError",
    "ExecutionLog",
    "ExecutionStatus",
    "FailureKind",
    "FatalError",
    "Job",
    "JobManager",
    "JobStore",
    "NotFoundError",
    "OneTime",
    "Recurring",
    "SchedulerError",
    "TaskFailure",
    "TaskSuccess",
    "ValidationError",
    "new_job",
    "validate_job",
]
