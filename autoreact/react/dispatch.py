"""Tool routing -- every tool call of a turn goes through here.

Two entry points: execute_tool_call() for structured tool calls from the
model, execute_action() for a parsed `ACTION: Name(args)` directive. Both
route to the introspection tool, a frontend tool of the current request,
or a backend tool of the registry, and always return an observation
string prefixed with a success or failure marker.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from autoreact.api.models import (
    ChatCompletionRequest,
    ContentType,
    RequestContext,
    ToolCall,
    ToolCallFunction,
    ToolSpec,
    TypedChunk,
)
from autoreact.api.tools import ToolInvoker, ToolRegistry, serialize_result
from autoreact.i18n import Translator
from autoreact.react.directives import parse_action_call
from autoreact.react.frontend import FrontendToolBridge
from autoreact.react.prompts import TOOL_DETAIL_NAME, backend_tool_detail, frontend_tool_detail

logger = logging.getLogger(__name__)

Emit = Callable[[TypedChunk], None]


class ToolRouter:
    """Routes tool calls and formats their observations."""

    def __init__(
        self,
        registry: ToolRegistry,
        invoker: ToolInvoker,
        bridge: FrontendToolBridge,
        translator: Translator,
    ) -> None:
        self._registry = registry
        self._invoker = invoker
        self._bridge = bridge
        self._t = translator

    # ------------------------------------------------------------------
    # Observation formatting
    # ------------------------------------------------------------------

    def _ok(self, text: str) -> str:
        return f"✅ {self._t.get('react.tool_call_success')}: {text}"

    def _fail(self, text: str) -> str:
        return f"❌ {self._t.get('react.tool_call_failed')}: {text}"

    @staticmethod
    def _send(emit: Emit | None, chunk_type: ContentType, text: str) -> None:
        if emit is not None:
            emit(TypedChunk(chunk_type, text))

    # ------------------------------------------------------------------
    # Structured tool calls
    # ------------------------------------------------------------------

    async def execute_tool_call(
        self,
        tool_call: ToolCall,
        request: ChatCompletionRequest,
        session_id: str,
        context: RequestContext | None = None,
        emit: Emit | None = None,
    ) -> str:
        function = tool_call.function
        if function is None or not function.name:
            return self._fail("Missing tool call definition")

        name = function.name
        logger.info("Executing tool call: %s", name)
        self._send(emit, ContentType.ACTION_START, self._t.get("react.action_start"))

        if name == TOOL_DETAIL_NAME:
            self._send(emit, ContentType.ACTION_END, "success")
            return self._ok(self.fetch_tool_detail(function.arguments, request))

        if request.find_frontend_tool(name) is not None:
            result = await self._bridge.invoke(tool_call, session_id, emit)
            self._send(emit, ContentType.ACTION_END, "success")
            return result

        definition = self._registry.get_definition(name)
        if definition is None:
            self._send(emit, ContentType.ACTION_END, "error")
            return self._fail(f"Unknown tool: {name}")

        try:
            result = await self._invoker.invoke(definition, function.arguments, context)
        except Exception as e:
            logger.exception("Tool call failed: %s", name)
            self._send(emit, ContentType.ACTION_END, "error")
            return self._fail(f"Tool execution failed: {e}")

        self._send(emit, ContentType.ACTION_END, "success")
        return self._ok(serialize_result(result))

    # ------------------------------------------------------------------
    # Text directives
    # ------------------------------------------------------------------

    async def execute_action(
        self,
        action: str,
        request: ChatCompletionRequest,
        session_id: str,
        context: RequestContext | None = None,
        emit: Emit | None = None,
    ) -> str:
        call = parse_action_call(action)
        if call is None:
            return self._fail(
                f"Unable to parse action: {action}. Correct format: ToolName(\"param1\", \"param2\")"
            )

        name, args = call.tool_name, call.args
        logger.info("Executing action: %s", name)
        self._send(emit, ContentType.ACTION_START, self._t.get("react.action_start"))

        if name == TOOL_DETAIL_NAME:
            self._send(emit, ContentType.ACTION_END, "success")
            return self._ok(self.tool_detail_from_args(args, request))

        frontend = request.find_frontend_tool(name)
        if frontend is not None:
            arguments = json.dumps(convert_action_args_to_map(args, frontend), ensure_ascii=False)
            result = await self._bridge.invoke(ToolCall(ToolCallFunction(name, arguments)), session_id, emit)
            self._send(emit, ContentType.ACTION_END, "success")
            return result

        definition = self._registry.get_definition(name)
        if definition is None:
            self._send(emit, ContentType.ACTION_END, "error")
            available = ", ".join([*self._registry.names(), TOOL_DETAIL_NAME])
            return self._fail(f"Tool not found: {name}. Available tools: {available}")

        try:
            processed = process_action_args(args, [p.name for p in definition.params])
            result = await self._invoker.invoke_with_args(definition, processed, context)
        except Exception as e:
            logger.exception("Action failed: %s", name)
            self._send(emit, ContentType.ACTION_END, "error")
            return self._fail(f"Execution error: {e}")

        self._send(emit, ContentType.ACTION_END, "success")
        return self._ok(serialize_result(result))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def tool_detail_from_args(self, args: list[Any], request: ChatCompletionRequest) -> str:
        if not args:
            return self.fetch_tool_detail(None, request)
        first = args[0]
        if isinstance(first, dict):
            return self.fetch_tool_detail(json.dumps(first, ensure_ascii=False), request)
        return self.fetch_tool_detail(json.dumps({"name": str(first)}, ensure_ascii=False), request)

    def fetch_tool_detail(self, arguments: str | None, request: ChatCompletionRequest) -> str:
        """JSON metadata of a frontend or backend tool, or an error sentence."""
        if not arguments or not arguments.strip():
            return "Tool name is empty"
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse tool detail arguments: %s", e)
            return f"Tool detail parameter parsing failed: {e}"
        name = parsed.get("name") if isinstance(parsed, dict) else None
        if not name:
            return "Tool name is empty"

        frontend = request.find_frontend_tool(name)
        if frontend is not None:
            return json.dumps(frontend_tool_detail(frontend), ensure_ascii=False)

        definition = self._registry.get_detail(name)
        if definition is None:
            return f"Tool details not found: {name}"
        return json.dumps(backend_tool_detail(definition), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Argument shaping
# ---------------------------------------------------------------------------


def convert_action_args_to_map(args: list[Any], spec: ToolSpec) -> dict[str, Any]:
    """Positional directive args as a frontend argument object."""
    if not args:
        return {}
    if len(args) == 1 and isinstance(args[0], dict):
        return args[0]

    params = spec.function.parameters if isinstance(spec.function.parameters, dict) else {}
    names = list((params.get("properties") or {}).keys())
    if len(args) == 1:
        return {names[0] if names else "arg0": args[0]}
    if names:
        return {name: args[i] for i, name in enumerate(names) if i < len(args)}
    return {}


def process_action_args(args: list[Any], param_names: list[str]) -> list[Any]:
    """Unwrap a single object argument onto the declared parameters."""
    if len(args) != 1 or not isinstance(args[0], dict):
        return args
    mapping = args[0]
    if len(param_names) == 1:
        if len(mapping) == 1 and param_names[0] in mapping:
            return [mapping[param_names[0]]]
        return args
    if len(param_names) > 1:
        return [mapping.get(name) for name in param_names]
    return args
