"""
Execution coordinator for scheduled jobs.

ScheduledAgentExecutor runs one job instruction through the reasoning loop
without touching any interactive session:

1. a hidden conversation is created just for this run;
2. the tool registry is snapshotted;
3. model, temperature, iteration cap and allowed tools are resolved (profile,
   then config) and a dedicated ToolExecutor is bound to the snapshot;
4. the system prompt is assembled from base prompt, skills and memory;
5. the loop runs in scheduled context;
6. on success the summary is posted to the job's origin conversation;
7. the tool executor is released and the hidden conversation deleted,
   whatever happened before.

Failures come back as TaskFailure, never as exceptions: FatalError from the
loop and any error outside it are FATAL, other loop errors are EXECUTION.
"""

import logging
import random
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from agent.conversations import ConversationStore
from agent.loop import AgentLoop, ExecutionContext, OpenAIToolLoop
from agent.memory import load_memory_context
from agent.preferences import ModelPreferences
from agent.profiles import AgentProfileRepository, resolve_run_config
from agent.prompt_builder import build_system_prompt
from agent.skills import SkillRepository
from agent.tool_registry import ToolExecutor, ToolRegistry
from scheduler.errors import FatalError
from scheduler.executor import AgentExecutor, FailureKind, TaskFailure, TaskResult, TaskSuccess

logger = logging.getLogger(__name__)

SCHEDULED_TITLE_PREFIX = "[Scheduled] "
RESULT_PREFIX = "[Scheduled Task] "


def isolated_conversation_id(job_id: str) -> str:
    return f"scheduled_{job_id}_{int(time.time() * 1000)}_{random.randint(0, 99999):05d}"


class ScheduledAgentExecutor(AgentExecutor):
    def __init__(
        self,
        conversations: ConversationStore,
        registry: ToolRegistry,
        preferences: ModelPreferences,
        profiles: AgentProfileRepository,
        skills: SkillRepository,
        memory_dir: Path,
        loop: Optional[AgentLoop] = None,
        env_loader: Optional[Callable[[], object]] = None,
    ):
        self.conversations = conversations
        self.registry = registry
        self.preferences = preferences
        self.profiles = profiles
        self.skills = skills
        self.memory_dir = Path(memory_dir)
        self.loop = loop
        self.env_loader = env_loader

    def _refresh(self) -> None:
        # Pick up .env, config.yaml, agents/ and skills/ edits made since the last run
        if self.env_loader is not None:
            self.env_loader()
        self.preferences.reload()
        self.profiles.reload()
        self.skills.disabled = set(self.preferences.disabled_skills())
        self.skills.reload()

    def _loop(self) -> AgentLoop:
        if self.loop is not None:
            return self.loop
        return OpenAIToolLoop.from_provider(self.conversations, self.preferences.provider())

    async def execute_task(
        self,
        instruction: str,
        job_id: str,
        trigger_time: datetime,
        conversation_id: Optional[str] = None,
        agent_name: Optional[str] = None,
    ) -> TaskResult:
        session_id = None
        tool_executor = None
        try:
            self._refresh()

            session_id = isolated_conversation_id(job_id)
            self.conversations.create_conversation(
                conversation_id=session_id,
                title=SCHEDULED_TITLE_PREFIX + instruction[:40],
                hidden=True,
            )

            run_registry = self.registry.snapshot()

            profile = self.profiles.resolve(agent_name or self.preferences.active_agent())
            run_config = resolve_run_config(profile, self.preferences)
            tool_executor = ToolExecutor(
                run_registry,
                self.conversations,
                allowed=run_config.allowed_tools,
                include_interactive=False,
            )

            system_prompt = build_system_prompt(
                run_config.system_prompt,
                self.skills.enabled_skills(only=run_config.enabled_skills),
                load_memory_context(self.memory_dir),
            )

            logger.info("Running job %s with agent '%s' (model=%s)", job_id, profile.name, run_config.model)
            try:
                result = await self._loop().run(
                    instruction=instruction,
                    system_prompt=system_prompt,
                    run_config=run_config,
                    conversation_id=session_id,
                    registry=run_registry,
                    tool_executor=tool_executor,
                    context=ExecutionContext.scheduled(job_id, trigger_time),
                )
            except FatalError as e:
                logger.error("Reasoning loop gave up on job %s: %s", job_id, e)
                return TaskFailure(str(e), kind=FailureKind.FATAL)
            except Exception as e:
                logger.warning("Reasoning loop failed for job %s: %s", job_id, e)
                return TaskFailure(f"{type(e).__name__}: {e}", kind=FailureKind.EXECUTION)

            summary = result.final_response
            if conversation_id:
                self.conversations.post_result(
                    conversation_id,
                    f"{RESULT_PREFIX}{instruction}\n\n{summary}",
                    summary,
                )
            return TaskSuccess(summary, conversation_id=conversation_id)

        except Exception as e:
            logger.exception("Scheduled run of job %s failed outside the reasoning loop", job_id)
            return TaskFailure(f"{type(e).__name__}: {e}", kind=FailureKind.FATAL)

        finally:
            if tool_executor is not None:
                try:
                    tool_executor.cleanup()
                except Exception as e:
                    logger.warning("Tool executor cleanup failed for job %s: %s", job_id, e)
            if session_id is not None:
                try:
                    self.conversations.delete_conversation(session_id)
                except Exception as e:
                    logger.warning("Could not delete session %s: %s", session_id, e)
