"""
Error taxonomy for the scheduler.

ValidationError and CorruptRecordError also subclass ValueError so callers
that only care about "bad input" can keep catching the builtin.
"""


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class ValidationError(SchedulerError, ValueError):
    """A job definition is malformed and must not be persisted or scheduled."""


class NotFoundError(SchedulerError, LookupError):
    """A job ID does not exist (or no longer exists)."""


class ExecutionError(SchedulerError):
    """A run failed in a way that may succeed on retry (e.g. the model API kept erroring)."""


class FatalError(SchedulerError):
    """A run failed in a way no retry can fix (bad credentials, unknown model, broken setup)."""


class CorruptRecordError(SchedulerError, ValueError):
    """A persisted row could not be parsed back into a model object."""
