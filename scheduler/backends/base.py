"""
Types shared by the scheduling backends.
"""

from dataclasses import dataclass
from enum import Enum


class WorkResult(Enum):
    """Outcome a worker reports back to the backend that triggered it."""
    SUCCESS = "success"
    FAILURE = "failure"
    RETRY = "retry"


class ExistingWorkPolicy(Enum):
    """What to do when periodic work with the same unique name already exists."""
    REPLACE = "replace"
    KEEP = "keep"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attempt numbers start at 1 for the first retry. delay_for() doubles the
    initial backoff per attempt and caps it at max_backoff_seconds.
    """
    max_attempts: int = 3
    initial_backoff_seconds: float = 30.0
    max_backoff_seconds: float = 5 * 60 * 60

    def delay_for(self, attempt: int) -> float:
        attempt = max(1, attempt)
        return min(self.initial_backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)

    def should_retry(self, attempt: int) -> bool:
        return attempt <= self.max_attempts

    @classmethod
    def from_config(cls, cfg: dict) -> "RetryPolicy":
        cfg = cfg or {}
        return cls(
            max_attempts=int(cfg.get("max_attempts", cls.max_attempts)),
            initial_backoff_seconds=float(cfg.get("initial_backoff_seconds", cls.initial_backoff_seconds)),
            max_backoff_seconds=float(cfg.get("max_backoff_seconds", cls.max_backoff_seconds)),
        )
