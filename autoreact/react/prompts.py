"""System prompt, tool specs and the prompt cache.

The system prompt lists every tool available in the turn and teaches the
directive format. Building it is not free, so PromptCache keeps one
(detailed, simple) pair keyed by the tool names plus the prompt-affecting
settings. Environment context lines travel as their own system message
right after the prompt.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from autoreact.api.models import ChatMessage, ToolFunctionSpec, ToolSpec
from autoreact.api.tools import ToolDefinition, ToolRegistry
from autoreact.config import Settings
from autoreact.i18n import Translator

logger = logging.getLogger(__name__)

TOOL_DETAIL_NAME = "autoai.tool_detail"
ENV_CONTEXT_MARKER = "[ENV_CONTEXT]"

_BACKEND_COMPLEX_HINT = " (Complex object, use autoai.tool_detail to get detailed structure)"
_FRONTEND_COMPLEX_HINT = " (complex object, use autoai.tool_detail to get detailed structure)"

# ------------------------------------------------------------------
# Prompt template
# ------------------------------------------------------------------

SYSTEM_PROMPT_TEMPLATE = """\
You are an intelligent assistant that solves problems through reasoning and tool invocation.

## Language Preference
{language_instruction}

## Available Tools
{tool_descriptions}
## Workflow

### Step 1: Determine Question Type
- **Simple questions** (greetings, casual chat, general knowledge, calculations, etc.): Answer directly without tools, output `ANSWER: [direct answer]`
- **Complex questions** (requiring data lookup, operations, external information, etc.): Use tools
- **Insufficient information** (need user to provide more details): Ask the user

### Step 2: Tool Invocation Format
If tools are needed, output in the following format, each part must be on a separate line:

```
THINK: [Analyze the problem, determine which tool to use]
ACTION: ToolFullName("param1", "param2", ...)
```

### Step 3: After Getting Results
- If the problem is solved: Output `ANSWER: [final answer]`
- If more information is needed: Continue calling tools
- If user input is required: Output `ASK: [your question]`

## Tool Invocation Rules
1. Use complete tool names (including prefix)
2. String parameters in double quotes: `"text"`
3. Numbers written directly: `123`, `45.67`
4. Boolean values: `true`, `false`
5. Complex objects: Pass object content directly, no wrapping
   - Correct: `orders.batch_update({{"updates":[...],"reason":"..."}})`
   - Incorrect: `orders.batch_update({{"request":{{...}}}})`
6. Call only one tool at a time

## User Interaction Rules
Use the `ASK:` marker to ask the user when:
1. The user's question is unclear or missing necessary parameters
2. User needs to make a choice (e.g., multiple matching options)
3. **Mandatory confirmation for sensitive operations**:
   - Deleting data (files, records, directories, etc.)
   - Modifying important data (configurations, critical data, etc.)
   - Executing irreversible operations (clearing data, overwriting files, etc.)
   **Confirmation format**: First describe the operation, then ask "Confirm to execute?"
   Example: `ASK: You are about to delete file /path/to/file. This operation cannot be undone. Confirm to execute?`
4. Tool execution failed and requires additional user information

Format: `ASK: [your question]`

## Common Issue Handling
- **Tool call failed**: Check error message, adjust parameters and retry
- **Parameter structure uncertain**: Call `autoai.tool_detail("ToolName")` to view details
- **Result not as expected**: Adjust strategy based on observation

## ⚠️ Format Enforcement
- Must strictly follow the above format, do not use other formats
- Parameters must use function call format, do not use XML or other formats (e.g., `<argkey>` or `<parameter>` tags)
- ACTION line must be complete, tool name and parameters on the same line

## Notes
- Keep thinking concise, focus on next action
- Do not repeat failed attempts
- Must output `ANSWER:` marker on the last line when task is completed
- Use `ASK:` marker when user input is needed, the process will interrupt and wait for user response
- **Avoid translation of names or department names**: Output them as they are, without translation, to avoid confusion.


Now, please handle the user's question.
"""


# ------------------------------------------------------------------
# Tool specs presented to the model
# ------------------------------------------------------------------


def tool_detail_spec() -> ToolSpec:
    """Spec of the built-in introspection tool."""
    return ToolSpec(ToolFunctionSpec(
        name=TOOL_DETAIL_NAME,
        description="Get tool details (supports frontend tools and backend tools)",
        parameters={
            "type": "object",
            "properties": {"name": {"type": "string", "description": "Tool name"}},
            "required": ["name"],
        },
    ))


def basic_schema(definition: ToolDefinition) -> dict[str, Any]:
    """Flat parameter schema: types, descriptions and simple examples only.

    Complex object parameters get a hint pointing at the introspection tool
    instead of their nested structure.
    """
    properties: dict[str, Any] = {}
    required: list[str] = []
    for param in definition.params:
        prop: dict[str, Any] = {"type": param.type}
        if param.description is not None:
            prop["description"] = param.description
        if param.is_complex:
            prop["description"] = ((param.description or "") + _BACKEND_COMPLEX_HINT).strip()
        elif param.example is not None:
            prop["example"] = param.example
        properties[param.name] = prop
        if param.required:
            required.append(param.name)

    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _is_complex_frontend_param(definition: dict[str, Any]) -> bool:
    return definition.get("type") == "object" and bool(definition.get("properties"))


def simplify_frontend_spec(spec: ToolSpec) -> ToolSpec:
    """Frontend spec reduced to the same shape as backend basic schemas."""
    original = spec.function.parameters
    if not isinstance(original, dict):
        return ToolSpec(ToolFunctionSpec(spec.function.name, spec.function.description), spec.type)

    properties: dict[str, Any] = {}
    for name, definition in (original.get("properties") or {}).items():
        definition = definition if isinstance(definition, dict) else {}
        prop: dict[str, Any] = {"type": definition.get("type")}
        if "description" in definition:
            description = definition["description"]
            if _is_complex_frontend_param(definition):
                prop["description"] = f"{description}{_FRONTEND_COMPLEX_HINT}".strip()
            else:
                prop["description"] = description
                if "example" in definition:
                    prop["example"] = definition["example"]
        properties[name] = prop

    schema: dict[str, Any] = {"type": original.get("type"), "properties": properties}
    if "required" in original:
        schema["required"] = original["required"]
    return ToolSpec(ToolFunctionSpec(spec.function.name, spec.function.description, schema), spec.type)


def build_tool_specs(registry: ToolRegistry, frontend_tools: Sequence[ToolSpec] | None = None) -> list[ToolSpec]:
    """Introspection tool first, then backend tools, then the turn's frontend tools."""
    specs = [tool_detail_spec()]
    for summary in registry.list_summaries():
        definition = registry.get_definition(summary.name)
        parameters = basic_schema(definition) if definition else {"type": "object", "properties": {}}
        specs.append(ToolSpec(ToolFunctionSpec(summary.name, summary.description, parameters)))
    for spec in frontend_tools or []:
        specs.append(simplify_frontend_spec(spec))
    return specs


# ------------------------------------------------------------------
# Prompt text
# ------------------------------------------------------------------


class SystemPromptBuilder:
    """Renders the system prompt for a tool list."""

    def __init__(self, registry: ToolRegistry, translator: Translator) -> None:
        self._registry = registry
        self._t = translator

    def build(self, detailed: bool, tool_specs: Sequence[ToolSpec], frontend_names: set[str]) -> str:
        backend_lines: list[str] = []
        frontend_lines: list[str] = []

        for spec in tool_specs:
            name = spec.function.name
            is_frontend = name in frontend_names
            entry = f"- {name}: {spec.function.description or ''}"
            if detailed and not is_frontend:
                definition = self._registry.get_detail(name)
                if definition is not None:
                    entry += f"\n  Example: {request_example(definition)}"
            (frontend_lines if is_frontend else backend_lines).append(entry + "\n")

        descriptions = ""
        if backend_lines:
            descriptions += "### Backend Tools\n" + "".join(backend_lines)
        if frontend_lines:
            if backend_lines:
                descriptions += "\n"
            descriptions += "### Frontend Tools (Browser API Calls)\n" + "".join(frontend_lines)

        return SYSTEM_PROMPT_TEMPLATE.format(
            language_instruction=self._t.get("ai.language_instruction"),
            tool_descriptions=descriptions,
        )


# ------------------------------------------------------------------
# Cache
# ------------------------------------------------------------------


@dataclass(frozen=True)
class PromptCacheEntry:
    version: str
    detailed: str
    simple: str

    def prompt(self, detailed: bool) -> str:
        return self.detailed if detailed else self.simple


class PromptCache:
    """Single-entry cache of the (detailed, simple) prompt pair."""

    def __init__(self, builder: SystemPromptBuilder, settings: Settings) -> None:
        self._builder = builder
        self._settings = settings
        self._entry: PromptCacheEntry | None = None

    def version(self, tool_specs: Sequence[ToolSpec]) -> str:
        key = "".join(spec.function.name for spec in tool_specs)
        key += self._settings.system_prompt + self._settings.language
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def get_or_build(self, tool_specs: Sequence[ToolSpec], frontend_names: set[str] | None = None) -> PromptCacheEntry:
        version = self.version(tool_specs)
        entry = self._entry
        if entry is not None and entry.version == version:
            return entry

        names = frontend_names or set()
        entry = PromptCacheEntry(
            version=version,
            detailed=self._builder.build(True, tool_specs, names),
            simple=self._builder.build(False, tool_specs, names),
        )
        self._entry = entry
        logger.debug("Rebuilt system prompt cache (%d tools)", len(tool_specs))
        return entry

    def clear(self) -> None:
        self._entry = None

    @property
    def entry(self) -> PromptCacheEntry | None:
        return self._entry


# ------------------------------------------------------------------
# Session placement
# ------------------------------------------------------------------


def apply_system_prompt(messages: list[ChatMessage], prompt: str, custom_prompt: str = "") -> None:
    """Put the prompt at index 0, replacing an existing system message there."""
    if custom_prompt and custom_prompt.strip():
        prompt = f"{custom_prompt}\n{prompt}"
    if messages and messages[0].role == "system":
        messages[0] = ChatMessage.system(prompt)
    else:
        messages.insert(0, ChatMessage.system(prompt))


def environment_context_message(lines: Sequence[str]) -> str:
    body = "".join(f"• {line.strip()}\n" for line in lines if line and line.strip())
    return (
        f"{ENV_CONTEXT_MARKER}\n"
        "[Current Environment Information - Take this as authoritative]\n"
        f"{body}"
        "Note: The above is the latest environment information. If there is a conflict with "
        "environment information mentioned in previous conversations, please take this as authoritative."
    )


def _find_environment_context(messages: Sequence[ChatMessage]) -> int:
    for i, message in enumerate(messages):
        if message.role == "system" and (message.content or "").startswith(ENV_CONTEXT_MARKER):
            return i
    return -1


def apply_environment_context(messages: list[ChatMessage], lines: Sequence[str] | None) -> None:
    """Replace, insert (index 1) or remove the environment context message."""
    index = _find_environment_context(messages)
    if not lines:
        if index >= 0:
            del messages[index]
        return

    message = ChatMessage.system(environment_context_message(lines))
    if index >= 0:
        messages[index] = message
    elif messages:
        messages.insert(1, message)
    else:
        messages.append(message)


# ------------------------------------------------------------------
# Introspection payloads
# ------------------------------------------------------------------

_SOURCE_SUFFIX = {
    "path_variable": "[URL path parameter]",
    "request_param": "[URL query parameter]",
    "request_body": "[Request body parameter]",
}


def _default_for_type(schema_type: str | None) -> Any:
    if schema_type == "string":
        return "Example value"
    if schema_type in ("integer", "number"):
        return 0
    if schema_type == "boolean":
        return True
    if schema_type == "array":
        return []
    if schema_type == "object":
        return {}
    return None


def example_from_properties(properties: dict[str, Any] | None) -> dict[str, Any] | None:
    """Example object built from property examples or type placeholders."""
    if not properties:
        return None
    example: dict[str, Any] = {}
    for key, prop in properties.items():
        prop = prop if isinstance(prop, dict) else {}
        if "example" in prop:
            example[key] = prop["example"]
            continue
        schema_type = prop.get("type")
        if schema_type == "string":
            example[key] = "Example text"
        elif schema_type in ("integer", "number"):
            example[key] = 1
        elif schema_type == "boolean":
            example[key] = True
        elif schema_type == "array":
            items = prop.get("items") if isinstance(prop.get("items"), dict) else {}
            example[key] = [items["example"]] if "example" in items else ["Example element"]
        elif schema_type == "object":
            nested = example_from_properties(prop.get("properties"))
            example[key] = nested if nested is not None else "Complex object example"
        else:
            example[key] = "Example value"
    return example


def request_example(definition: ToolDefinition) -> str:
    """Declared example, or a JSON argument object built from the parameters."""
    if definition.request_example is not None:
        return definition.request_example
    example: dict[str, Any] = {}
    for param in definition.params:
        if param.example is not None:
            example[param.name] = param.example
        elif param.is_complex:
            example[param.name] = example_from_properties(param.properties)
        else:
            example[param.name] = _default_for_type(param.type)
    return _to_json(example)


def frontend_tool_detail(spec: ToolSpec) -> dict[str, Any]:
    detail: dict[str, Any] = {
        "name": spec.function.name,
        "description": spec.function.description,
        "type": "frontend",
        "parameters": spec.function.parameters,
    }
    params = spec.function.parameters
    if isinstance(params, dict) and "properties" in params:
        example = {}
        for name, prop in (params.get("properties") or {}).items():
            prop = prop if isinstance(prop, dict) else {}
            example[name] = prop["example"] if "example" in prop else _default_for_type(prop.get("type"))
        detail["example"] = example
    return detail


def _property_schema(param: Any) -> dict[str, Any]:
    prop: dict[str, Any] = {"type": param.type}
    source = param.source.value
    if source in _SOURCE_SUFFIX:
        prop["paramSource"] = source
        prefix = f"{param.description} " if param.description else ""
        prop["description"] = prefix + _SOURCE_SUFFIX[source]
    elif param.description is not None:
        prop["description"] = param.description

    if param.type == "object" and param.properties:
        prop["properties"] = copy.deepcopy(param.properties)
        example = example_from_properties(param.properties)
        if example is not None:
            prop["example"] = example
    elif param.example is not None:
        prop["example"] = param.example
    return prop


def json_schema(definition: ToolDefinition) -> dict[str, Any]:
    properties = {p.name: _property_schema(p) for p in definition.params}
    required = [p.name for p in definition.params if p.required]
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def backend_tool_detail(definition: ToolDefinition) -> dict[str, Any]:
    """Full metadata of a registered tool for the introspection tool."""
    detail: dict[str, Any] = {
        "name": definition.name,
        "description": definition.description,
        "methodSignature": definition.method_signature,
    }
    parameters = json_schema(definition)
    detail["parameters"] = parameters
    props = parameters["properties"]

    only = next(iter(props.values())) if len(props) == 1 else None
    if only is not None and only.get("type") == "object" and "properties" in only:
        # A lone object parameter is presented by its fields.
        unwrapped: dict[str, Any] = {"type": "object", "properties": only["properties"]}
        if "required" in parameters:
            unwrapped["required"] = True
        detail["parameters"] = unwrapped
        example = example_from_properties(only["properties"])
        if example is not None:
            detail["requestExample"] = _to_json(example)
    else:
        examples = {name: prop["example"] for name, prop in props.items() if "example" in prop}
        if examples:
            detail["requestExample"] = _to_json(examples)
    if "requestExample" not in detail and definition.request_example is not None:
        detail["requestExample"] = definition.request_example

    if definition.returns is not None:
        returns: dict[str, Any] = {
            "type": definition.returns.type,
            "description": definition.returns.description,
        }
        if definition.response_example is not None:
            returns["example"] = definition.response_example
        detail["returns"] = returns

    usage = (
        "When using this tool, please construct parameters according to the structure in parameters. "
        "For complex object parameters, refer to the format in requestExample."
    )
    if definition.has_rest_params:
        usage += (
            "\n\nNote: This tool includes REST API parameters. Path parameters (paramSource=path_variable) "
            "and query parameters (paramSource=request_param) must be simple values (numbers, strings), "
            "do not use objects."
        )
    detail["usage"] = usage
    return detail


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)
