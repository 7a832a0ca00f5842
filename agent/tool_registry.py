"""
Tool registry and per-run tool executor.

The registry is process-wide and may be mutated at any time by an
interactive session (tools registered, categories activated). A scheduled
run never touches it directly: it takes snapshot() once, under the lock, and
binds its own ToolExecutor to that copy. Activations made during the run
(the activate_tools meta-tool) only change the snapshot.

Tools in the "core" category are always offered to the model. Other
categories are on demand: the model has to call activate_tools first.
"""

import asyncio
import copy
import inspect
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from agent.conversations import ConversationStore

logger = logging.getLogger(__name__)

CORE_CATEGORY = "core"
ACTIVATE_TOOLS = "activate_tools"

TOOL_EXECUTION_TIMEOUT = 120.0
MAX_STORED_RESULT_LENGTH = 16_384

ToolHandler = Callable[[Dict[str, Any]], Union[str, Awaitable[str]]]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    category: str = CORE_CATEGORY
    # Hidden from scheduled runs (e.g. tools that ask the user a question)
    interactive_only: bool = False
    timeout: Optional[float] = None

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class RegisteredTool:
    provider_id: str
    definition: ToolDefinition
    handler: ToolHandler

    @property
    def category(self) -> str:
        return self.definition.category


class ToolRegistry:
    def __init__(self):
        self._lock = threading.RLock()
        self._tools: Dict[str, RegisteredTool] = {}
        self._category_descriptions: Dict[str, str] = {}
        self._active_categories: Set[str] = set()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(
        self,
        definition: ToolDefinition,
        handler: ToolHandler,
        provider_id: str = "builtin",
        category_description: Optional[str] = None,
    ) -> None:
        """Register a tool. A tool with the same name is overwritten."""
        with self._lock:
            self._tools[definition.name] = RegisteredTool(provider_id, definition, handler)
            if definition.category != CORE_CATEGORY and category_description:
                self._category_descriptions[definition.category] = category_description

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._tools.pop(name, None) is not None

    def unregister_provider(self, provider_id: str) -> int:
        with self._lock:
            names = [name for name, tool in self._tools.items() if tool.provider_id == provider_id]
            for name in names:
                del self._tools[name]
            return len(names)

    def clear(self) -> None:
        with self._lock:
            self._tools.clear()
            self._category_descriptions.clear()
            self._active_categories.clear()

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_tool(self, name: str) -> Optional[RegisteredTool]:
        with self._lock:
            return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return self.get_tool(name) is not None

    def all_tools(self) -> List[RegisteredTool]:
        with self._lock:
            return list(self._tools.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def tool_definitions(
        self,
        active_categories: Optional[Iterable[str]] = None,
        allowed: Optional[Iterable[str]] = None,
        include_interactive: bool = True,
    ) -> List[ToolDefinition]:
        """
        Definitions to offer the model: core tools plus tools of the active
        categories (the registry's own activation state unless given).
        """
        with self._lock:
            active = set(self._active_categories if active_categories is None else active_categories)
            tools = list(self._tools.values())
        allowed_set = set(allowed) if allowed is not None else None
        result = []
        for tool in tools:
            if tool.category != CORE_CATEGORY and tool.category not in active:
                continue
            if allowed_set is not None and tool.definition.name not in allowed_set:
                continue
            if tool.definition.interactive_only and not include_interactive:
                continue
            result.append(tool.definition)
        return result

    def on_demand_categories(self) -> Set[str]:
        with self._lock:
            return {tool.category for tool in self._tools.values() if tool.category != CORE_CATEGORY}

    def category_description(self, category: str) -> str:
        with self._lock:
            return self._category_descriptions.get(category, category)

    # -------------------------------------------------------------------------
    # Activation state
    # -------------------------------------------------------------------------

    @property
    def active_categories(self) -> Set[str]:
        with self._lock:
            return set(self._active_categories)

    def activate_categories(self, categories: Iterable[str]) -> List[str]:
        """Activate known on-demand categories. Returns the ones newly activated."""
        with self._lock:
            known = {tool.category for tool in self._tools.values() if tool.category != CORE_CATEGORY}
            added = [c for c in categories if c in known and c not in self._active_categories]
            self._active_categories.update(added)
            return added

    def deactivate_categories(self, categories: Iterable[str]) -> None:
        with self._lock:
            self._active_categories.difference_update(categories)

    # -------------------------------------------------------------------------
    # Isolation
    # -------------------------------------------------------------------------

    def snapshot(self) -> "ToolRegistry":
        """
        Point-in-time copy. Later changes to either registry are invisible
        to the other. Handlers themselves are shared, not copied.
        """
        clone = ToolRegistry()
        with self._lock:
            clone._tools = dict(self._tools)
            clone._category_descriptions = dict(self._category_descriptions)
            clone._active_categories = set(self._active_categories)
        return clone


# =============================================================================
# Executor
# =============================================================================

@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class ToolExecutionResult:
    tool_call: ToolCall
    output: str
    success: bool = True


class ToolExecutor:
    """
    Runs tool calls against one registry (normally a snapshot) and stores
    each result as a "tool" message in the run's conversation.

    Only tools the run offers can be dispatched: core tools and tools of
    activated categories, narrowed to `allowed` when given, and without
    interactive-only tools when `include_interactive` is False.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        conversations: ConversationStore,
        allowed: Optional[Iterable[str]] = None,
        include_interactive: bool = True,
    ):
        self.registry = registry
        self.conversations = conversations
        self.allowed = set(allowed) if allowed is not None else None
        self.include_interactive = include_interactive
        self._closed = False

    def offered_definitions(self) -> List[ToolDefinition]:
        return self.registry.tool_definitions(
            allowed=self.allowed, include_interactive=self.include_interactive,
        )

    def activate_tools_definition(self) -> Optional[ToolDefinition]:
        """The activate_tools meta-tool, or None when nothing is on demand."""
        inactive = sorted(self.registry.on_demand_categories() - self.registry.active_categories)
        if not inactive:
            return None
        listing = "; ".join(f"{c}: {self.registry.category_description(c)}" for c in inactive)
        return ToolDefinition(
            name=ACTIVATE_TOOLS,
            description=f"Enable additional tool categories for this task. Available: {listing}",
            parameters={
                "type": "object",
                "properties": {
                    "categories": {"type": "array", "items": {"type": "string", "enum": inactive}},
                },
                "required": ["categories"],
            },
        )

    async def execute(self, conversation_id: str, tool_call: ToolCall) -> ToolExecutionResult:
        if self._closed:
            raise RuntimeError("ToolExecutor used after cleanup()")

        result = await self._run(tool_call)
        stored = result.output
        if len(stored) > MAX_STORED_RESULT_LENGTH:
            stored = stored[:MAX_STORED_RESULT_LENGTH] + f"\n\n[Truncated: {len(result.output)} chars total]"
        self.conversations.add_message(
            conversation_id,
            role="tool",
            content=stored,
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
        )
        return result

    async def _run(self, tool_call: ToolCall) -> ToolExecutionResult:
        try:
            arguments = json.loads(tool_call.arguments or "{}")
        except json.JSONDecodeError as e:
            return ToolExecutionResult(tool_call, f"Error: Invalid JSON arguments: {e}", success=False)
        if not isinstance(arguments, dict):
            return ToolExecutionResult(tool_call, "Error: arguments must be a JSON object", success=False)

        if tool_call.name == ACTIVATE_TOOLS:
            requested = arguments.get("categories") or []
            if isinstance(requested, str):
                requested = [requested]
            added = self.registry.activate_categories(requested)
            if not added:
                return ToolExecutionResult(tool_call, "No new tool categories were activated.")
            return ToolExecutionResult(tool_call, f"Activated tool categories: {', '.join(added)}")

        tool = self.registry.get_tool(tool_call.name)
        if tool is None:
            logger.warning("Tool '%s' not found in registry", tool_call.name)
            return ToolExecutionResult(tool_call, f"Error: Tool '{tool_call.name}' not found", success=False)
        if tool_call.name not in {d.name for d in self.offered_definitions()}:
            logger.warning("Refusing tool '%s': not offered in this run", tool_call.name)
            return ToolExecutionResult(
                tool_call, f"Error: Tool '{tool_call.name}' is not available in this run", success=False,
            )

        timeout = tool.definition.timeout or TOOL_EXECUTION_TIMEOUT
        try:
            if inspect.iscoroutinefunction(tool.handler):
                coro = tool.handler(copy.deepcopy(arguments))
            else:
                coro = asyncio.to_thread(tool.handler, copy.deepcopy(arguments))
            output = await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            return ToolExecutionResult(tool_call, f"Error: Tool execution timed out ({int(timeout)}s)", success=False)
        except Exception as e:
            logger.warning("Tool '%s' raised: %s", tool_call.name, e)
            return ToolExecutionResult(tool_call, f"Error: {type(e).__name__}: {e}", success=False)

        return ToolExecutionResult(tool_call, output if isinstance(output, str) else json.dumps(output))

    def cleanup(self) -> None:
        self._closed = True
