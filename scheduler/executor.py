"""
Contract between the scheduler and whatever actually carries out a job.

The scheduler never sees exceptions from an executor: implementations return
a TaskSuccess or a TaskFailure, and the worker maps the failure kind to a
retry decision.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class FailureKind(Enum):
    # The reasoning engine itself failed; worth retrying with backoff
    EXECUTION = "execution"
    # The coordinator broke before or around the engine call; retrying won't help
    FATAL = "fatal"


@dataclass(frozen=True)
class TaskSuccess:
    summary: str
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class TaskFailure:
    error: str
    kind: FailureKind = FailureKind.EXECUTION


TaskResult = Union[TaskSuccess, TaskFailure]


class AgentExecutor(ABC):
    """
    Runs one job instruction to completion.

    Must be safe to call concurrently for different job IDs and must not keep
    per-job state beyond a single call.
    """

    @abstractmethod
    async def execute_task(
        self,
        instruction: str,
        job_id: str,
        trigger_time: datetime,
        conversation_id: Optional[str] = None,
        agent_name: Optional[str] = None,
    ) -> TaskResult:
        """
        Args:
            instruction: Natural-language task body.
            job_id: The job being run.
            trigger_time: When the backend fired.
            conversation_id: Conversation to post the result to, if any.
            agent_name: Agent profile to use; None means the active one.
        """
