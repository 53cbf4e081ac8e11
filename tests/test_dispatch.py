"""Tests for ToolRouter routing, argument shaping, and observation text."""

import json

import pytest

from autoreact.api.models import (
    ChatCompletionRequest,
    ContentType,
    ToolCall,
    ToolCallFunction,
    ToolFunctionSpec,
    ToolSpec,
)
from autoreact.react.dispatch import convert_action_args_to_map, process_action_args

FRONTEND_SPEC = ToolSpec(ToolFunctionSpec(
    name="ui.show",
    description="Show a dialog",
    parameters={
        "type": "object",
        "properties": {"title": {"type": "string"}, "body": {"type": "string"}},
    },
))


def _request(frontend: bool = False) -> ChatCompletionRequest:
    return ChatCompletionRequest(session_id="s1", frontend_tools=[FRONTEND_SPEC] if frontend else None)


class Recorder:
    def __init__(self) -> None:
        self.chunks = []

    def __call__(self, chunk) -> None:
        self.chunks.append(chunk)

    def types(self):
        return [c.type for c in self.chunks]


# ---------------------------------------------------------------------------
# Text directives
# ---------------------------------------------------------------------------


class TestExecuteAction:
    @pytest.mark.asyncio
    async def test_backend_success(self, router):
        emit = Recorder()
        result = await router.execute_action("calc.add(1, 2)", _request(), "s1", emit=emit)
        assert result == "✅ Tool call succeeded: 3"
        assert emit.types() == [ContentType.ACTION_START, ContentType.ACTION_END]
        assert emit.chunks[0].content == "Executing tool..."
        assert emit.chunks[1].content == "success"

    @pytest.mark.asyncio
    async def test_single_mapping_spread_onto_params(self, router):
        result = await router.execute_action('calc.add({"a": 1, "b": 4})', _request(), "s1")
        assert result == "✅ Tool call succeeded: 5"

    @pytest.mark.asyncio
    async def test_unknown_tool_lists_available(self, router):
        emit = Recorder()
        result = await router.execute_action("nope(1)", _request(), "s1", emit=emit)
        assert result == (
            "❌ Tool call failed: Tool not found: nope. "
            "Available tools: calc.add, calc.fail, autoai.tool_detail"
        )
        assert emit.chunks[-1].content == "error"

    @pytest.mark.asyncio
    async def test_handler_error(self, router):
        result = await router.execute_action('calc.fail("x")', _request(), "s1")
        assert result.startswith("❌ Tool call failed: Execution error: ")
        assert "boom" in result

    @pytest.mark.asyncio
    async def test_unparseable(self, router):
        emit = Recorder()
        result = await router.execute_action("!!!", _request(), "s1", emit=emit)
        assert result == (
            '❌ Tool call failed: Unable to parse action: !!!. Correct format: ToolName("param1", "param2")'
        )
        assert emit.chunks == []

    @pytest.mark.asyncio
    async def test_tool_detail(self, router):
        result = await router.execute_action('autoai.tool_detail("calc.add")', _request(), "s1")
        prefix = "✅ Tool call succeeded: "
        assert result.startswith(prefix)
        detail = json.loads(result[len(prefix):])
        assert detail["name"] == "calc.add"
        assert detail["methodSignature"] == "calc.add(integer a, integer b)"

    @pytest.mark.asyncio
    async def test_tool_detail_without_name(self, router):
        result = await router.execute_action("autoai.tool_detail()", _request(), "s1")
        assert result == "✅ Tool call succeeded: Tool name is empty"

    @pytest.mark.asyncio
    async def test_frontend_call_round_trip(self, router, bridge):
        emit = Recorder()

        def resolve_on_notify(chunk):
            emit(chunk)
            if chunk.type is ContentType.ACTION:
                payload = json.loads(chunk.content.split(" ", 1)[1])
                assert json.loads(payload["toolCall"]["function"]["arguments"]) == {"title": "Hello", "body": "x"}
                bridge.resolve("s1", payload["callId"], result="shown")

        result = await router.execute_action('ui.show("Hello", "x")', _request(frontend=True), "s1", emit=resolve_on_notify)

        assert result == "✅ Tool call succeeded: shown"
        assert emit.types() == [ContentType.ACTION_START, ContentType.ACTION, ContentType.ACTION_END]


# ---------------------------------------------------------------------------
# Structured tool calls
# ---------------------------------------------------------------------------


class TestExecuteToolCall:
    @pytest.mark.asyncio
    async def test_backend_success(self, router):
        call = ToolCall(ToolCallFunction("calc.add", '{"a": 2, "b": 5}'))
        assert await router.execute_tool_call(call, _request(), "s1") == "✅ Tool call succeeded: 7"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, router):
        call = ToolCall(ToolCallFunction("nope", "{}"))
        assert await router.execute_tool_call(call, _request(), "s1") == "❌ Tool call failed: Unknown tool: nope"

    @pytest.mark.asyncio
    async def test_missing_name(self, router):
        call = ToolCall(ToolCallFunction("", "{}"))
        result = await router.execute_tool_call(call, _request(), "s1")
        assert result == "❌ Tool call failed: Missing tool call definition"

    @pytest.mark.asyncio
    async def test_bad_arguments_json(self, router):
        call = ToolCall(ToolCallFunction("calc.add", "{not json"))
        result = await router.execute_tool_call(call, _request(), "s1")
        assert result.startswith("❌ Tool call failed: Tool execution failed: Invalid tool arguments JSON")

    @pytest.mark.asyncio
    async def test_missing_required_argument(self, router):
        call = ToolCall(ToolCallFunction("calc.add", '{"a": 1}'))
        result = await router.execute_tool_call(call, _request(), "s1")
        assert result == "❌ Tool call failed: Tool execution failed: Missing required argument: b"

    @pytest.mark.asyncio
    async def test_tool_detail_errors(self, router):
        missing = ToolCall(ToolCallFunction("autoai.tool_detail", '{"name": "ghost"}'))
        empty = ToolCall(ToolCallFunction("autoai.tool_detail", ""))
        broken = ToolCall(ToolCallFunction("autoai.tool_detail", "{"))

        assert await router.execute_tool_call(missing, _request(), "s1") == (
            "✅ Tool call succeeded: Tool details not found: ghost"
        )
        assert await router.execute_tool_call(empty, _request(), "s1") == "✅ Tool call succeeded: Tool name is empty"
        result = await router.execute_tool_call(broken, _request(), "s1")
        assert "Tool detail parameter parsing failed" in result

    @pytest.mark.asyncio
    async def test_tool_detail_repeatable(self, router):
        call = ToolCall(ToolCallFunction("autoai.tool_detail", '{"name": "calc.add"}'))
        first = await router.execute_tool_call(call, _request(), "s1")
        second = await router.execute_tool_call(call, _request(), "s1")
        assert first == second

    @pytest.mark.asyncio
    async def test_frontend_detail_preferred(self, router):
        call = ToolCall(ToolCallFunction("autoai.tool_detail", '{"name": "ui.show"}'))
        result = await router.execute_tool_call(call, _request(frontend=True), "s1")
        assert json.loads(result.split(": ", 1)[1])["type"] == "frontend"

    @pytest.mark.asyncio
    async def test_frontend_timeout_is_failure(self, router, bridge):
        bridge._timeout = 0.05
        call = ToolCall(ToolCallFunction("ui.show", '{"title": "x"}'))
        result = await router.execute_tool_call(call, _request(frontend=True), "s1", emit=Recorder())
        assert result.startswith("❌ Tool call timeout")


# ---------------------------------------------------------------------------
# Argument shaping
# ---------------------------------------------------------------------------


class TestArgumentShaping:
    def test_single_key_mapping_unwrapped(self):
        assert process_action_args([{"order": {"id": 1}}], ["order"]) == [{"id": 1}]

    def test_single_param_other_mapping_kept(self):
        assert process_action_args([{"id": 1}], ["order"]) == [{"id": 1}]

    def test_mapping_spread_with_missing_marker(self):
        assert process_action_args([{"b": 2}], ["a", "b"]) == [None, 2]

    def test_positional_unchanged(self):
        assert process_action_args([1, 2], ["a", "b"]) == [1, 2]

    def test_frontend_map_variants(self):
        assert convert_action_args_to_map([], FRONTEND_SPEC) == {}
        assert convert_action_args_to_map([{"title": "t"}], FRONTEND_SPEC) == {"title": "t"}
        assert convert_action_args_to_map(["t"], FRONTEND_SPEC) == {"title": "t"}
        assert convert_action_args_to_map(["t", "b"], FRONTEND_SPEC) == {"title": "t", "body": "b"}

    def test_frontend_map_without_schema(self):
        bare = ToolSpec(ToolFunctionSpec("ui.ping"))
        assert convert_action_args_to_map(["x"], bare) == {"arg0": "x"}
        assert convert_action_args_to_map(["x", "y"], bare) == {}
