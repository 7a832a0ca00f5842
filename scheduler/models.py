"""
Data model for scheduled jobs and their execution history.

Schedules are a tagged union (OneTime / Recurring / Conditional). On disk they
are stored as JSON with an explicit "kind" discriminator; anything that does
not parse cleanly raises CorruptRecordError instead of silently defaulting.

All timestamps are timezone-aware UTC datetimes.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from scheduler.errors import CorruptRecordError


# Battery policy floor for periodic work
MIN_INTERVAL_MINUTES = 15

# Conditional jobs are not evaluated yet; they poll on the shortest period
CONDITIONAL_INTERVAL_MINUTES = 15

# Cron expressions are syntax-checked but not evaluated; they run hourly
CRON_FALLBACK_INTERVAL_MINUTES = 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    # Fixed precision keeps stored values lexically sortable
    return ensure_utc(dt).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if value is None:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise CorruptRecordError(f"Invalid timestamp {value!r}: {e}") from e
    return ensure_utc(dt)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# =============================================================================
# Schedule tagged union
# =============================================================================

@dataclass(frozen=True)
class OneTime:
    """Run once at an absolute time."""
    execute_at: datetime

    kind = "one_time"


@dataclass(frozen=True)
class Recurring:
    """Run periodically. Exactly one of the two fields is set."""
    interval_minutes: Optional[int] = None
    cron_expression: Optional[str] = None

    kind = "recurring"

    @property
    def effective_interval_minutes(self) -> int:
        if self.interval_minutes is not None:
            return self.interval_minutes
        return CRON_FALLBACK_INTERVAL_MINUTES


@dataclass(frozen=True)
class Conditional:
    """Reserved. Currently runs as a short-interval recurring job."""

    kind = "conditional"


Schedule = Union[OneTime, Recurring, Conditional]

SCHEDULE_KINDS = (OneTime.kind, Recurring.kind, Conditional.kind)


def schedule_to_dict(schedule: Schedule) -> Dict[str, Any]:
    if isinstance(schedule, OneTime):
        return {"kind": OneTime.kind, "execute_at": to_iso(schedule.execute_at)}
    if isinstance(schedule, Recurring):
        return {
            "kind": Recurring.kind,
            "interval_minutes": schedule.interval_minutes,
            "cron_expression": schedule.cron_expression,
        }
    if isinstance(schedule, Conditional):
        return {"kind": Conditional.kind}
    raise TypeError(f"Unsupported schedule type: {type(schedule).__name__}")


def schedule_from_dict(data: Any) -> Schedule:
    """Parse a stored schedule. Unknown or incomplete records fail loudly."""
    if not isinstance(data, dict):
        raise CorruptRecordError(f"Schedule must be an object, got {type(data).__name__}")

    kind = data.get("kind")
    if kind == OneTime.kind:
        if not data.get("execute_at"):
            raise CorruptRecordError("one_time schedule is missing execute_at")
        return OneTime(execute_at=from_iso(data["execute_at"]))

    if kind == Recurring.kind:
        interval = data.get("interval_minutes")
        if interval is not None and not isinstance(interval, int):
            raise CorruptRecordError(f"interval_minutes must be an integer, got {interval!r}")
        return Recurring(
            interval_minutes=interval,
            cron_expression=data.get("cron_expression"),
        )

    if kind == Conditional.kind:
        return Conditional()

    raise CorruptRecordError(f"Unknown schedule kind: {kind!r}")


# =============================================================================
# Constraints
# =============================================================================

@dataclass(frozen=True)
class Constraints:
    """Conditions the periodic backend checks before running a job."""
    requires_network: bool = False
    requires_charging: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "requiresNetwork": self.requires_network,
            "requiresCharging": self.requires_charging,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Constraints":
        data = data or {}
        return cls(
            requires_network=bool(data.get("requiresNetwork", False)),
            requires_charging=bool(data.get("requiresCharging", False)),
        )


# =============================================================================
# Execution status
# =============================================================================

class ExecutionStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


_STATUS_BY_VALUE = {status.value: status for status in ExecutionStatus}


def parse_status(value: Any) -> ExecutionStatus:
    try:
        return _STATUS_BY_VALUE[value]
    except (KeyError, TypeError):
        raise CorruptRecordError(f"Unknown execution status: {value!r}") from None


# =============================================================================
# Job and execution log
# =============================================================================

@dataclass
class Job:
    id: str
    instruction: str
    schedule: Schedule
    title: str = ""
    description: Optional[str] = None
    constraints: Constraints = field(default_factory=Constraints)
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_executed_at: Optional[datetime] = None
    execution_count: int = 0
    max_executions: Optional[int] = None
    notify_on_completion: bool = True
    backend_handle: Optional[str] = None
    origin_conversation_id: Optional[str] = None
    agent_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        """Title if set, otherwise the instruction."""
        return self.title.strip() or self.instruction

    @property
    def schedule_kind(self) -> str:
        return self.schedule.kind

    @property
    def is_exhausted(self) -> bool:
        return self.max_executions is not None and self.execution_count >= self.max_executions

    def copy(self, **changes) -> "Job":
        return replace(self, **changes)


def new_job_id() -> str:
    return str(uuid.uuid4())


def new_job(
    instruction: str,
    schedule: Schedule,
    title: str = "",
    description: Optional[str] = None,
    constraints: Optional[Constraints] = None,
    max_executions: Optional[int] = None,
    notify_on_completion: bool = True,
    origin_conversation_id: Optional[str] = None,
    agent_name: Optional[str] = None,
) -> Job:
    """Build a fresh, enabled job with a generated ID."""
    return Job(
        id=new_job_id(),
        instruction=instruction,
        schedule=schedule,
        title=title,
        description=description,
        constraints=constraints or Constraints(),
        max_executions=max_executions,
        notify_on_completion=notify_on_completion,
        origin_conversation_id=origin_conversation_id,
        agent_name=agent_name,
    )


@dataclass
class ExecutionLog:
    job_id: str
    started_at: datetime
    status: ExecutionStatus = ExecutionStatus.CANCELLED
    id: Optional[int] = None
    completed_at: Optional[datetime] = None
    result_summary: Optional[str] = None
    error_message: Optional[str] = None
    conversation_id: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
