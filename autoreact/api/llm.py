"""Chat models -- OpenAI-compatible httpx client, demo model, registry.

The engine only depends on ChatModel.chat() and ChatModel.chat_stream();
providers plug in by subclassing ChatModel and registering an instance
in ModelRegistry.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from autoreact.api.models import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    FinishReason,
    ToolCall,
    ToolCallFunction,
)
from autoreact.config import Settings

logger = logging.getLogger(__name__)

_RETRY_STATUSES = (429, 500, 502, 503, 529)
_MAX_RETRY_AFTER = 30.0  # seconds


class ModelError(RuntimeError):
    """The model provider failed to produce a response."""


class NoModelAvailableError(RuntimeError):
    """No model is registered under the requested name or as a default."""


@dataclass
class ModelStreamEvent:
    """A single event from a streaming model call."""

    type: str  # text, done
    text: str = ""
    response: ChatCompletionResponse | None = None


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class ChatModel:
    """Base class for chat models."""

    def __init__(self, name: str) -> None:
        self.name = name

    async def start(self) -> None:
        """Acquire resources. No-op by default."""

    async def close(self) -> None:
        """Release resources. No-op by default."""

    async def chat(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        raise NotImplementedError

    async def chat_stream(self, request: ChatCompletionRequest) -> AsyncIterator[ModelStreamEvent]:
        """Stream a response. Default: one text event with the full content."""
        response = await self.chat(request)
        message = response.first_message()
        if message is not None and message.content:
            yield ModelStreamEvent(type="text", text=message.content)
        yield ModelStreamEvent(type="done", response=response)


# ---------------------------------------------------------------------------
# OpenAI-compatible model
# ---------------------------------------------------------------------------


class OpenAIChatModel(ChatModel):
    """Model served by an OpenAI-compatible /chat/completions endpoint."""

    def __init__(self, name: str, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        super().__init__(name)
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        headers = {"content-type": "application/json"}
        if settings.llm_api_key:
            headers["authorization"] = f"Bearer {settings.llm_api_key}"
        else:
            logger.warning("OPENAI_API_KEY is not set -- calls to model %s may fail", self.name)

        timeout = httpx.Timeout(
            connect=settings.llm_timeout_connect,
            read=settings.llm_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.llm_base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        self._owns_http = True
        logger.info("httpx client initialized for model %s", self.name)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    def _build_payload(self, request: ChatCompletionRequest, stream: bool) -> dict[str, Any]:
        payload = request.to_payload()
        payload["model"] = self.name
        if stream:
            payload["stream"] = True
        else:
            payload.pop("stream", None)
        return payload

    async def chat(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        """POST /chat/completions with one retry for rate limits and server errors.

        Raises ModelError on persistent errors.
        """
        if not self._http:
            raise ModelError("httpx client not initialized -- call start() first")

        payload = self._build_payload(request, stream=False)

        last_error: Exception | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/chat/completions", json=payload)

                if response.status_code == 200:
                    return ChatCompletionResponse.from_dict(response.json())

                error_msg = _error_message(response)
                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    retry_after = _retry_after(response)
                    logger.warning(
                        "Model API error %d, retrying in %.1fs: %s",
                        response.status_code,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = ModelError(f"Model API error ({response.status_code}): {error_msg}")
                break

            except httpx.TimeoutException as e:
                last_error = ModelError(f"Model request timed out: {e}")
                if attempt == 0:
                    logger.warning("Model API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = ModelError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or ModelError("Model call failed with unknown error")

    async def chat_stream(self, request: ChatCompletionRequest) -> AsyncIterator[ModelStreamEvent]:
        """Stream /chat/completions, accumulating text and tool-call deltas.

        Only `data:` lines are processed; `[DONE]` ends the stream.
        """
        if not self._http:
            raise ModelError("httpx client not initialized -- call start() first")

        payload = self._build_payload(request, stream=True)
        content_parts: list[str] = []
        calls: dict[int, dict[str, Any]] = {}
        finish_reason: str | None = None
        response_id: str | None = None

        try:
            async with self._http.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise ModelError(
                        f"Model API error ({response.status_code}): {body.decode(errors='replace')[:500]}"
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data_str = line[5:].strip()
                    if data_str == "[DONE]":
                        break
                    if not data_str:
                        continue
                    try:
                        data = json.loads(data_str)
                    except json.JSONDecodeError as e:
                        raise ModelError(f"Malformed stream frame: {data_str[:200]}") from e
                    if "error" in data:
                        raise ModelError(f"Model stream error: {data['error']}")
                    response_id = response_id or data.get("id")
                    for choice in data.get("choices") or []:
                        delta = choice.get("delta") or {}
                        text = delta.get("content")
                        if text:
                            content_parts.append(text)
                            yield ModelStreamEvent(type="text", text=text)
                        for tc in delta.get("tool_calls") or []:
                            _merge_tool_call_delta(calls, tc)
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.HTTPError as e:
            raise ModelError(f"HTTP error: {e}") from e

        tool_calls = []
        for _, c in sorted(calls.items()):
            call = ToolCall(function=ToolCallFunction(c["name"], c["arguments"] or "{}"))
            if c["id"]:
                call.id = c["id"]
            tool_calls.append(call)
        message = ChatMessage.assistant("".join(content_parts) or None)
        if tool_calls:
            message.tool_calls = tool_calls
        final = ChatCompletionResponse.of(self.name, message, finish_reason or FinishReason.STOP.value)
        if response_id:
            final.id = response_id
        yield ModelStreamEvent(type="done", response=final)


def _merge_tool_call_delta(calls: dict[int, dict[str, Any]], delta: dict[str, Any]) -> None:
    index = delta.get("index", len(calls))
    entry = calls.setdefault(index, {"id": None, "name": "", "arguments": ""})
    if delta.get("id"):
        entry["id"] = delta["id"]
    fn = delta.get("function") or {}
    if fn.get("name"):
        entry["name"] += fn["name"]
    if fn.get("arguments"):
        entry["arguments"] += fn["arguments"]


def _error_message(response: httpx.Response) -> str:
    try:
        error = response.json().get("error")
    except (json.JSONDecodeError, AttributeError):
        return f"HTTP {response.status_code}: {response.text[:500]}"
    if isinstance(error, dict):
        return f"{error.get('type', 'unknown')} - {error.get('message', 'unknown error')}"
    return str(error or response.text[:500])


def _retry_after(response: httpx.Response) -> float:
    try:
        value = float(response.headers.get("retry-after", "1"))
    except ValueError:
        value = 1.0
    return min(max(value, 0.0), _MAX_RETRY_AFTER)


# ---------------------------------------------------------------------------
# Demo model
# ---------------------------------------------------------------------------


_ADD_RE = re.compile(r"(\d+)\s*\+\s*(\d+)")
_OBSERVATION_RE = re.compile(r"^(?:OBSERVE|Observation)[:：]\s*", re.IGNORECASE)
_STATUS_PREFIX_RE = re.compile(r"^[✅❌]\s*[^:]*:\s*")


class RuleBasedDemoModel(ChatModel):
    """Deterministic model for demos and tests.

    Answers observations directly, turns "a + b" into a demo.add action,
    and echoes anything else as an answer.
    """

    async def chat(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        last = request.messages[-1] if request.messages else None
        if last is None or last.content is None:
            return self._reply(request, "THINK: No input\nANSWER: None")

        content = last.content
        if _OBSERVATION_RE.match(content):
            observation = _STATUS_PREFIX_RE.sub("", _OBSERVATION_RE.sub("", content, count=1), count=1).strip()
            return self._reply(request, f"THINK: Got observation result\nANSWER: {observation}")

        match = _ADD_RE.search(content)
        if match:
            a, b = match.groups()
            return self._reply(
                request,
                f"THINK: Need to call tool to complete calculation\nACTION: demo.add({a}, {b})",
            )

        return self._reply(request, f"THINK: Received input\nANSWER: Received: {content}")

    def _reply(self, request: ChatCompletionRequest, content: str) -> ChatCompletionResponse:
        return ChatCompletionResponse.of(
            request.model or self.name, ChatMessage.assistant(content), FinishReason.STOP.value
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ModelRegistry:
    """Named chat models available to the engine."""

    def __init__(self) -> None:
        self._models: dict[str, ChatModel] = {}

    def register(self, model: ChatModel) -> None:
        self._models[model.name] = model

    def get(self, name: str | None) -> ChatModel | None:
        if not name or not name.strip():
            return None
        return self._models.get(name)

    def list(self) -> list[ChatModel]:
        return list(self._models.values())

    def names(self) -> list[str]:
        return list(self._models)

    def resolve(self, name: str | None, default: str | None = None) -> ChatModel:
        """Requested name, else the default, else the first registered model."""
        model = self.get(name) or self.get(default)
        if model is None and self._models:
            model = next(iter(self._models.values()))
        if model is None:
            raise NoModelAvailableError("No chat model is registered")
        if name and model.name != name:
            logger.debug("Model %s not registered, using %s", name, model.name)
        return model

    async def start_all(self) -> None:
        for model in self._models.values():
            await model.start()

    async def close_all(self) -> None:
        for model in reversed(list(self._models.values())):
            await model.close()
