"""
Scheduling backends: exact alarms for one-shot jobs and a persistent
periodic work queue for recurring jobs.
"""

from scheduler.backends.alarm import AlarmClock, alarm_key
from scheduler.backends.base import ExistingWorkPolicy, RetryPolicy, WorkResult
from scheduler.backends.periodic import (
    ConstraintChecker,
    PeriodicWorkQueue,
    WorkRequest,
    unique_work_name,
)

__all__ = [
    "AlarmClock",
    "alarm_key",
    "ConstraintChecker",
    "ExistingWorkPolicy",
    "PeriodicWorkQueue",
    "RetryPolicy",
    "WorkRequest",
    "WorkResult",
    "unique_work_name",
]
