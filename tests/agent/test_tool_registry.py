"""Tests for agent.tool_registry -- snapshots, activation and tool execution."""

import asyncio
import json

import pytest

from agent.conversations import ConversationStore
from agent.tool_registry import (
    ACTIVATE_TOOLS,
    MAX_STORED_RESULT_LENGTH,
    ToolCall,
    ToolDefinition,
    ToolExecutor,
    ToolRegistry,
)


def _echo(args):
    return f"echo: {args.get('text', '')}"


@pytest.fixture()
def registry():
    reg = ToolRegistry()
    reg.register(ToolDefinition("echo", "Echo text"), _echo)
    reg.register(ToolDefinition("ask_user", "Ask the user", interactive_only=True), _echo)
    reg.register(
        ToolDefinition("web_search", "Search the web", category="web"),
        lambda args: "results",
        category_description="Web search and fetch",
    )
    return reg


@pytest.fixture()
def conversations():
    store = ConversationStore(":memory:")
    store.create_conversation("run-1", hidden=True)
    yield store
    store.close()


def _names(definitions):
    return sorted(d.name for d in definitions)


class TestRegistry:
    def test_core_tools_offered_by_default(self, registry):
        assert _names(registry.tool_definitions()) == ["ask_user", "echo"]

    def test_interactive_tools_hidden(self, registry):
        assert _names(registry.tool_definitions(include_interactive=False)) == ["echo"]

    def test_allowed_list_narrows(self, registry):
        registry.activate_categories(["web"])
        assert _names(registry.tool_definitions(allowed=["web_search"])) == ["web_search"]

    def test_activate_unknown_category_is_ignored(self, registry):
        assert registry.activate_categories(["web", "nope"]) == ["web"]
        assert registry.activate_categories(["web"]) == []

    def test_unregister_provider(self, registry):
        registry.register(ToolDefinition("mcp_a", "A"), _echo, provider_id="mcp")
        registry.register(ToolDefinition("mcp_b", "B"), _echo, provider_id="mcp")
        assert registry.unregister_provider("mcp") == 2
        assert not registry.has_tool("mcp_a")


class TestSnapshot:
    def test_snapshot_is_isolated_both_ways(self, registry):
        snap = registry.snapshot()
        snap.activate_categories(["web"])
        registry.register(ToolDefinition("late", "Registered after"), _echo)

        assert "web" not in registry.active_categories
        assert not snap.has_tool("late")
        assert "web_search" in _names(snap.tool_definitions())
        assert "web_search" not in _names(registry.tool_definitions())

    def test_snapshot_keeps_activation_state(self, registry):
        registry.activate_categories(["web"])
        assert registry.snapshot().active_categories == {"web"}


class TestToolExecutor:
    @pytest.mark.asyncio
    async def test_result_stored_as_tool_message(self, registry, conversations):
        executor = ToolExecutor(registry, conversations)
        result = await executor.execute("run-1", ToolCall("c1", "echo", json.dumps({"text": "hi"})))

        assert result.success
        assert result.output == "echo: hi"
        [message] = conversations.messages("run-1")
        assert message.role == "tool"
        assert message.tool_call_id == "c1"
        assert message.tool_name == "echo"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry, conversations):
        result = await ToolExecutor(registry, conversations).execute("run-1", ToolCall("c1", "missing"))
        assert not result.success
        assert "not found" in result.output

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, registry, conversations):
        result = await ToolExecutor(registry, conversations).execute("run-1", ToolCall("c1", "echo", "{oops"))
        assert not result.success
        assert "Invalid JSON" in result.output

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_error_output(self, registry, conversations):
        def boom(args):
            raise RuntimeError("kaput")

        registry.register(ToolDefinition("boom", "Fails"), boom)
        result = await ToolExecutor(registry, conversations).execute("run-1", ToolCall("c1", "boom"))
        assert not result.success
        assert "RuntimeError: kaput" in result.output

    @pytest.mark.asyncio
    async def test_timeout(self, registry, conversations):
        async def slow(args):
            await asyncio.sleep(5)
            return "late"

        registry.register(ToolDefinition("slow", "Slow", timeout=0.05), slow)
        result = await ToolExecutor(registry, conversations).execute("run-1", ToolCall("c1", "slow"))
        assert not result.success
        assert "timed out" in result.output

    @pytest.mark.asyncio
    async def test_long_output_truncated_in_storage_only(self, registry, conversations):
        registry.register(ToolDefinition("big", "Big"), lambda args: "x" * (MAX_STORED_RESULT_LENGTH + 10))
        result = await ToolExecutor(registry, conversations).execute("run-1", ToolCall("c1", "big"))
        assert len(result.output) == MAX_STORED_RESULT_LENGTH + 10
        stored = conversations.messages("run-1")[0].content
        assert stored.startswith("x" * MAX_STORED_RESULT_LENGTH)
        assert "[Truncated:" in stored

    @pytest.mark.asyncio
    async def test_activate_tools_changes_only_the_bound_registry(self, registry, conversations):
        snap = registry.snapshot()
        executor = ToolExecutor(snap, conversations)
        meta = executor.activate_tools_definition()
        assert meta is not None and meta.name == ACTIVATE_TOOLS
        assert "web: Web search and fetch" in meta.description

        result = await executor.execute(
            "run-1", ToolCall("c1", ACTIVATE_TOOLS, json.dumps({"categories": ["web"]}))
        )
        assert "Activated tool categories: web" in result.output
        assert snap.active_categories == {"web"}
        assert registry.active_categories == set()
        assert executor.activate_tools_definition() is None

    @pytest.mark.asyncio
    async def test_use_after_cleanup_raises(self, registry, conversations):
        executor = ToolExecutor(registry, conversations)
        executor.cleanup()
        with pytest.raises(RuntimeError):
            await executor.execute("run-1", ToolCall("c1", "echo"))


class TestOfferedToolsOnly:
    @pytest.mark.asyncio
    async def test_interactive_tool_refused_in_scheduled_executor(self, registry, conversations):
        called = []
        registry.register(ToolDefinition("ask_user", "Ask", interactive_only=True), called.append)
        executor = ToolExecutor(registry, conversations, include_interactive=False)

        result = await executor.execute("run-1", ToolCall("c1", "ask_user", '{"question": "ok?"}'))

        assert not result.success
        assert "not available in this run" in result.output
        assert called == []
        assert conversations.messages("run-1")[0].tool_name == "ask_user"

    @pytest.mark.asyncio
    async def test_tool_outside_allowed_list_refused(self, registry, conversations):
        registry.register(ToolDefinition("delete_files", "Deletes"), lambda args: "deleted")
        executor = ToolExecutor(registry, conversations, allowed=["echo"])

        refused = await executor.execute("run-1", ToolCall("c1", "delete_files"))
        allowed = await executor.execute("run-1", ToolCall("c2", "echo", '{"text": "hi"}'))

        assert not refused.success
        assert "not available in this run" in refused.output
        assert allowed.output == "echo: hi"
        assert _names(executor.offered_definitions()) == ["echo"]

    @pytest.mark.asyncio
    async def test_inactive_category_needs_activation_first(self, registry, conversations):
        executor = ToolExecutor(registry.snapshot(), conversations)

        before = await executor.execute("run-1", ToolCall("c1", "web_search"))
        await executor.execute("run-1", ToolCall("c2", ACTIVATE_TOOLS, json.dumps({"categories": ["web"]})))
        after = await executor.execute("run-1", ToolCall("c3", "web_search"))

        assert not before.success
        assert after.success and after.output == "results"
