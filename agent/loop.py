"""
Reasoning loop used by scheduled runs.

AgentLoop is the seam between the coordinator and whatever model drives the
run. The shipped OpenAIToolLoop talks to any OpenAI-compatible
chat-completions endpoint: it offers the run's tools, executes tool calls
through the run's ToolExecutor, and stops when the model answers without
calling a tool or when the iteration cap is reached.

Every message of the run is stored in the run's own (hidden) conversation.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, AuthenticationError, BadRequestError, NotFoundError, PermissionDeniedError

from agent.conversations import ConversationStore
from agent.profiles import RunConfig
from agent.tool_registry import ToolCall, ToolExecutor, ToolRegistry
from scheduler.errors import ExecutionError, FatalError

logger = logging.getLogger(__name__)

API_TIMEOUT = 60.0
API_MAX_RETRIES = 3

# Resending the same request cannot fix these
NON_RETRYABLE_API_ERRORS = (AuthenticationError, PermissionDeniedError, NotFoundError, BadRequestError)

MAX_ITERATIONS_MESSAGE = "I've reached the maximum number of iterations. Here's what I found so far."

INTERACTIVE = "interactive"
SCHEDULED = "scheduled"


@dataclass(frozen=True)
class ExecutionContext:
    """Where a run comes from. Scheduled runs have no user to talk to."""

    mode: str = INTERACTIVE
    job_id: Optional[str] = None
    trigger_time: Optional[datetime] = None

    @classmethod
    def interactive(cls) -> "ExecutionContext":
        return cls()

    @classmethod
    def scheduled(cls, job_id: str, trigger_time: datetime) -> "ExecutionContext":
        return cls(mode=SCHEDULED, job_id=job_id, trigger_time=trigger_time)

    @property
    def is_scheduled(self) -> bool:
        return self.mode == SCHEDULED


@dataclass(frozen=True)
class LoopResult:
    final_response: str
    api_calls: int = 0
    completed: bool = True


class AgentLoop(ABC):
    @abstractmethod
    async def run(
        self,
        instruction: str,
        system_prompt: str,
        run_config: RunConfig,
        conversation_id: str,
        registry: ToolRegistry,
        tool_executor: ToolExecutor,
        context: ExecutionContext,
    ) -> LoopResult:
        """
        Drive the run to a final answer.

        Raise FatalError for failures a retry cannot fix; any other
        exception is treated as transient.
        """


class OpenAIToolLoop(AgentLoop):
    """
    Chat-completions tool loop.

    The client is built per run from the provider settings so an edited
    .env or config.yaml applies to the next run without a restart.
    """

    def __init__(
        self,
        conversations: ConversationStore,
        base_url: Optional[str] = None,
        api_key_env: str = "OPENAI_API_KEY",
        client: Optional[AsyncOpenAI] = None,
    ):
        self.conversations = conversations
        self.base_url = base_url
        self.api_key_env = api_key_env
        self._client = client

    @classmethod
    def from_provider(cls, conversations: ConversationStore, provider: Dict[str, Any]) -> "OpenAIToolLoop":
        return cls(
            conversations,
            base_url=provider.get("base_url") or None,
            api_key_env=provider.get("api_key_env") or "OPENAI_API_KEY",
        )

    def _make_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client
        client_kwargs: Dict[str, Any] = {"timeout": API_TIMEOUT}
        if self.base_url:
            client_kwargs["base_url"] = self.base_url
        client_kwargs["api_key"] = os.getenv(self.api_key_env, "dummy-key")
        return AsyncOpenAI(**client_kwargs)

    def _tools(self, run_config: RunConfig, registry: ToolRegistry,
               tool_executor: ToolExecutor, context: ExecutionContext) -> List[Dict[str, Any]]:
        definitions = registry.tool_definitions(
            allowed=run_config.allowed_tools,
            include_interactive=not context.is_scheduled,
        )
        meta = tool_executor.activate_tools_definition()
        if meta is not None:
            definitions.append(meta)
        return [d.to_openai() for d in definitions]

    async def _create(self, client: AsyncOpenAI, **kwargs):
        retry_count = 0
        while True:
            try:
                return await client.chat.completions.create(**kwargs)
            except NON_RETRYABLE_API_ERRORS as api_error:
                raise FatalError(f"{type(api_error).__name__}: {api_error}") from api_error
            except Exception as api_error:
                retry_count += 1
                if retry_count > API_MAX_RETRIES:
                    raise ExecutionError(
                        f"API call failed after {API_MAX_RETRIES} retries: {type(api_error).__name__}: {api_error}"
                    ) from api_error
                wait_time = min(2 ** retry_count, 10)
                logger.warning("API retry %d/%d after error: %s", retry_count, API_MAX_RETRIES, api_error)
                await asyncio.sleep(wait_time)

    async def run(
        self,
        instruction: str,
        system_prompt: str,
        run_config: RunConfig,
        conversation_id: str,
        registry: ToolRegistry,
        tool_executor: ToolExecutor,
        context: ExecutionContext,
    ) -> LoopResult:
        client = self._make_client()
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": instruction})
        self.conversations.add_message(conversation_id, role="user", content=instruction)

        api_call_count = 0
        final_response = None

        while api_call_count < run_config.max_iterations:
            api_call_count += 1
            # Tool activations change the offer between calls
            tools = self._tools(run_config, registry, tool_executor, context)
            logger.debug("API call #%d: model=%s messages=%d tools=%d",
                         api_call_count, run_config.model, len(messages), len(tools))

            request: Dict[str, Any] = {
                "model": run_config.model,
                "messages": messages,
                "temperature": run_config.temperature,
            }
            if tools:
                request["tools"] = tools
            response = await self._create(client, **request)
            assistant_message = response.choices[0].message

            if not assistant_message.tool_calls:
                final_response = assistant_message.content or ""
                messages.append({"role": "assistant", "content": final_response})
                self.conversations.add_message(conversation_id, role="assistant", content=final_response)
                logger.debug("Conversation completed after %d API call(s)", api_call_count)
                break

            tool_calls = [
                {
                    "id": tool_call.id,
                    "type": "function",
                    "function": {
                        "name": tool_call.function.name,
                        "arguments": tool_call.function.arguments,
                    },
                }
                for tool_call in assistant_message.tool_calls
            ]
            messages.append({"role": "assistant", "content": assistant_message.content, "tool_calls": tool_calls})
            self.conversations.add_message(
                conversation_id, role="assistant", content=assistant_message.content, tool_calls=tool_calls,
            )

            for tool_call in assistant_message.tool_calls:
                result = await tool_executor.execute(
                    conversation_id,
                    ToolCall(
                        id=tool_call.id,
                        name=tool_call.function.name,
                        arguments=tool_call.function.arguments or "{}",
                    ),
                )
                messages.append({"role": "tool", "content": result.output, "tool_call_id": tool_call.id})

        if final_response is None:
            logger.warning("Reached maximum iterations (%d)", run_config.max_iterations)
            return LoopResult(MAX_ITERATIONS_MESSAGE, api_calls=api_call_count, completed=False)

        return LoopResult(final_response, api_calls=api_call_count, completed=True)
