"""Shared fixtures: settings, a scripted chat model, and a wired engine."""

from __future__ import annotations

import pytest

from autoreact.api.llm import ChatModel, ModelRegistry
from autoreact.api.models import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    FinishReason,
    ToolCall,
    ToolCallFunction,
)
from autoreact.api.tools import ToolInvoker, ToolParam, ToolRegistry
from autoreact.config import Settings
from autoreact.i18n import Translator
from autoreact.react.dispatch import ToolRouter
from autoreact.react.engine import ReActEngine
from autoreact.react.frontend import FrontendToolBridge

# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


class ScriptedModel(ChatModel):
    """Replays a fixed list of replies and records every request it receives.

    A reply is either a string (assistant text) or a list of (name, arguments)
    pairs (structured tool calls with no text).
    """

    def __init__(self, replies: list, name: str = "scripted") -> None:
        super().__init__(name)
        self.replies = list(replies)
        self.requests: list[ChatCompletionRequest] = []

    async def chat(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError("ScriptedModel ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, str):
            message = ChatMessage.assistant(reply)
        else:
            message = ChatMessage.assistant(None)
            message.tool_calls = [
                ToolCall(ToolCallFunction(name, arguments), id=f"call_{i}")
                for i, (name, arguments) in enumerate(reply)
            ]
        return ChatCompletionResponse.of(self.name, message, FinishReason.STOP.value)


def make_settings(**overrides) -> Settings:
    values = {
        "max_steps": 5,
        "enable_session_expiration": False,
        "llm_models": "",
        "frontend_tool_timeout": 2.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool(
        "calc.add",
        "Add two integers",
        params=[ToolParam("a", "integer", "First addend"), ToolParam("b", "integer", "Second addend")],
        request_example="calc.add(1, 2)",
    )
    def add(a, b):
        return a + b

    @registry.tool("calc.fail", "Always fails", params=[ToolParam("x", "string", "Ignored", required=False)])
    def fail(x=None):
        raise ValueError("boom")

    return registry


def make_engine(model: ChatModel, settings: Settings | None = None, registry: ToolRegistry | None = None):
    """Engine wired with real components around the given model."""
    settings = settings or make_settings()
    translator = Translator(settings.language)
    models = ModelRegistry()
    models.register(model)
    registry = registry if registry is not None else make_registry()
    bridge = FrontendToolBridge(translator, timeout=settings.frontend_tool_timeout)
    router = ToolRouter(registry, ToolInvoker(), bridge, translator)
    engine = ReActEngine(settings, models, registry, router, bridge, translator)
    return engine, bridge


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def translator() -> Translator:
    return Translator("en")


@pytest.fixture
def registry() -> ToolRegistry:
    return make_registry()


@pytest.fixture
def bridge(translator) -> FrontendToolBridge:
    return FrontendToolBridge(translator, timeout=2.0)


@pytest.fixture
def router(registry, bridge, translator) -> ToolRouter:
    return ToolRouter(registry, ToolInvoker(), bridge, translator)
