"""Shared data models for the API layer.

OpenAI-compatible chat protocol types plus the typed-chunk contract used
by the streaming path. Kept dependency-free so every layer can import it.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ContentType(Enum):
    """Semantic role of a streamed chunk."""

    THINKING = "Thinking"
    REASONING = "Reasoning"
    ACTION = "Action"
    ACTION_START = "Action Start"
    ACTION_END = "Action End"
    OBSERVATION = "Observation"
    ANSWER = "Answer"
    ASK = "Ask"
    CONTENT = "Content"
    ERROR = "Error"

    @property
    def display_name(self) -> str:
        return self.value

    @property
    def marker(self) -> str:
        return f"[{self.value}]"

    @classmethod
    def from_marker(cls, marker: str | None) -> ContentType:
        for member in cls:
            if member.marker == marker:
                return member
        return cls.CONTENT

    @classmethod
    def from_display_name(cls, name: str | None) -> ContentType:
        for member in cls:
            if member.value == name:
                return member
        return cls.CONTENT


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    ABORTED = "aborted"


@dataclass
class TypedChunk:
    """One classified piece of streamed output."""

    type: ContentType
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"content": self.content, "type": self.type.name}


@dataclass
class ToolCallFunction:
    name: str
    arguments: str = "{}"  # JSON-encoded argument object


@dataclass
class ToolCall:
    """A structured tool-call request emitted by the model."""

    function: ToolCallFunction
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4()}")
    type: str = "function"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        fn = data.get("function") or {}
        arguments = fn.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        return cls(
            id=data.get("id") or f"call_{uuid.uuid4()}",
            type=data.get("type", "function"),
            function=ToolCallFunction(name=fn.get("name", ""), arguments=arguments),
        )


@dataclass
class ChatMessage:
    """A single message in a session."""

    role: str  # "system", "user" or "assistant"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> ChatMessage:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str | None) -> ChatMessage:
        return cls(role="assistant", content=content)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        tool_calls = data.get("tool_calls")
        return cls(
            role=data.get("role", "user"),
            content=data.get("content"),
            tool_calls=[ToolCall.from_dict(tc) for tc in tool_calls] if tool_calls else None,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


@dataclass
class ToolFunctionSpec:
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


@dataclass
class ToolSpec:
    """Tool description in OpenAI `tools` format."""

    function: ToolFunctionSpec
    type: str = "function"

    @property
    def name(self) -> str:
        return self.function.name

    def to_dict(self) -> dict[str, Any]:
        fn: dict[str, Any] = {"name": self.function.name}
        if self.function.description is not None:
            fn["description"] = self.function.description
        if self.function.parameters is not None:
            fn["parameters"] = self.function.parameters
        return {"type": self.type, "function": fn}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolSpec:
        # Frontend tools may arrive flattened, without the "function" wrapper.
        fn = data.get("function") or data
        return cls(
            type=data.get("type", "function"),
            function=ToolFunctionSpec(
                name=fn.get("name", ""),
                description=fn.get("description"),
                parameters=fn.get("parameters"),
            ),
        )


@dataclass
class ChatCompletionRequest:
    """One chat turn as submitted by a client (and as forwarded to a model)."""

    messages: list[ChatMessage] = field(default_factory=list)
    model: str | None = None
    tools: list[ToolSpec] | None = None
    tool_choice: Any = None
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False
    session_id: str | None = None
    frontend_tools: list[ToolSpec] | None = None
    environment_context: list[str] | None = None

    def find_frontend_tool(self, name: str) -> ToolSpec | None:
        for spec in self.frontend_tools or []:
            if spec.function.name == name:
                return spec
        return None

    def to_payload(self) -> dict[str, Any]:
        """Body for an OpenAI-compatible /chat/completions call."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.tools:
            payload["tools"] = [t.to_dict() for t in self.tools]
            payload["tool_choice"] = self.tool_choice or "auto"
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.stream:
            payload["stream"] = True
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatCompletionRequest:
        frontend_tools = data.get("frontendTools", data.get("frontend_tools"))
        environment = data.get("environmentContext", data.get("environment_context"))
        if isinstance(environment, str):
            environment = [environment]
        tools = data.get("tools")
        return cls(
            messages=[ChatMessage.from_dict(m) for m in data.get("messages") or []],
            model=data.get("model"),
            tools=[ToolSpec.from_dict(t) for t in tools] if tools else None,
            tool_choice=data.get("tool_choice"),
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
            stream=bool(data.get("stream", False)),
            session_id=data.get("sessionId", data.get("session_id")),
            frontend_tools=[ToolSpec.from_dict(t) for t in frontend_tools] if frontend_tools else None,
            environment_context=environment,
        )


@dataclass
class ChatCompletionChoice:
    message: ChatMessage
    finish_reason: str = FinishReason.STOP.value
    index: int = 0


@dataclass
class ChatCompletionResponse:
    choices: list[ChatCompletionChoice] = field(default_factory=list)
    model: str | None = None
    id: str = field(default_factory=lambda: f"chatcmpl_{uuid.uuid4()}")
    object: str = "chat.completion"
    created: int = field(default_factory=lambda: int(time.time()))
    usage: dict[str, int] | None = None

    @classmethod
    def of(cls, model: str | None, message: ChatMessage, finish_reason: str) -> ChatCompletionResponse:
        return cls(model=model, choices=[ChatCompletionChoice(message=message, finish_reason=finish_reason)])

    def first_message(self) -> ChatMessage | None:
        if not self.choices:
            return None
        return self.choices[0].message

    @property
    def finish_reason(self) -> str | None:
        return self.choices[0].finish_reason if self.choices else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "object": self.object,
            "created": self.created,
            "model": self.model,
            "choices": [
                {"index": c.index, "message": c.message.to_dict(), "finish_reason": c.finish_reason}
                for c in self.choices
            ],
        }
        if self.usage:
            data["usage"] = self.usage
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatCompletionResponse:
        choices = [
            ChatCompletionChoice(
                index=c.get("index", i),
                message=ChatMessage.from_dict(c.get("message") or {"role": "assistant"}),
                finish_reason=c.get("finish_reason") or FinishReason.STOP.value,
            )
            for i, c in enumerate(data.get("choices") or [])
        ]
        return cls(
            id=data.get("id") or f"chatcmpl_{uuid.uuid4()}",
            object=data.get("object", "chat.completion"),
            created=data.get("created") or int(time.time()),
            model=data.get("model"),
            choices=choices,
            usage=data.get("usage"),
        )


@dataclass
class RequestContext:
    """Caller HTTP context forwarded to REST-backed tools."""

    cookies: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    base_url: str | None = None

    @classmethod
    def from_request(cls, request: Any) -> RequestContext:
        """Build from a Starlette request."""
        url = request.url
        base_url = f"{url.scheme}://{url.netloc}"
        return cls(
            cookies=dict(request.cookies),
            headers={k: v for k, v in request.headers.items()},
            base_url=base_url,
        )
