"""autoreact entry point.

Initializes all components and starts the server:
  Settings -> Translator -> Models -> Tools -> Bridge/Router -> Engine -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from autoreact.api.builtin_tools import register_builtin_tools
from autoreact.api.llm import ModelRegistry, OpenAIChatModel, RuleBasedDemoModel
from autoreact.api.tools import ToolInvoker, ToolRegistry
from autoreact.config import Settings
from autoreact.i18n import Translator
from autoreact.react.compaction import SessionCompressor
from autoreact.react.dispatch import ToolRouter
from autoreact.react.engine import ReActEngine, cancel_detached_turns
from autoreact.react.frontend import FrontendToolBridge
from autoreact.react.sessions import SessionStore, SessionSweeper
from autoreact.react.tasks import ChatTaskManager

logger = logging.getLogger(__name__)

DEMO_MODEL_NAME = "demo"


def build_models(settings: Settings) -> ModelRegistry:
    models = ModelRegistry()
    if settings.demo_model_enabled:
        models.register(RuleBasedDemoModel(DEMO_MODEL_NAME))
    for name in settings.model_names:
        models.register(OpenAIChatModel(name, settings))
    return models


async def create_components(
    settings: Settings,
    models: ModelRegistry | None = None,
    tools: ToolRegistry | None = None,
) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage. Callers may pass
    their own model or tool registry; built-in tools are registered either way.
    """
    translator = Translator(settings.language)

    models = models if models is not None else build_models(settings)
    await models.start_all()

    tools = tools if tools is not None else ToolRegistry()
    register_builtin_tools(tools, settings)

    tool_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=60, write=10, pool=10),
    )
    invoker = ToolInvoker(tool_http, settings.tool_base_url)
    bridge = FrontendToolBridge(translator, timeout=settings.frontend_tool_timeout)
    router = ToolRouter(tools, invoker, bridge, translator)

    sessions = SessionStore()
    engine = ReActEngine(
        settings,
        models,
        tools,
        router,
        bridge,
        translator,
        sessions=sessions,
        compressor=SessionCompressor(settings),
    )
    tasks = ChatTaskManager(expire_seconds=settings.task_expire_minutes * 60)

    sweeper = None
    if settings.enable_session_expiration:
        sweeper = SessionSweeper(
            sessions,
            max_idle_seconds=settings.session_expire_seconds,
            interval=settings.session_cleanup_interval_seconds,
        )
        sweeper.on_expired(bridge.cleanup_session)
        await sweeper.start()

    return {
        "translator": translator,
        "models": models,
        "tools": tools,
        "tool_http": tool_http,
        "bridge": bridge,
        "router": router,
        "engine": engine,
        "tasks": tasks,
        "sweeper": sweeper,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down autoreact...")

    sweeper = components.get("sweeper")
    if sweeper:
        await sweeper.stop()

    await cancel_detached_turns()

    tool_http = components.get("tool_http")
    if tool_http:
        await tool_http.aclose()

    models = components.get("models")
    if models:
        await models.close_all()

    logger.info("autoreact shutdown complete.")


def build_app(
    settings: Settings,
    models: ModelRegistry | None = None,
    tools: ToolRegistry | None = None,
) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings, models, tools))
        app.state.components = components

        logger.info(
            "autoreact started: models=%s tools=%d max_steps=%d",
            components["models"].names(),
            len(components["tools"]),
            settings.max_steps,
        )
        yield

        await shutdown_components(components)

    from autoreact.api.rest import create_app

    return create_app(
        engine=_lazy_component(components, "engine"),
        tasks=_lazy_component(components, "tasks"),
        bridge=_lazy_component(components, "bridge"),
        tools=_lazy_component(components, "tools"),
        models=_lazy_component(components, "models"),
        translator=_lazy_component(components, "translator"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Forwards attribute access to a component created later in lifespan."""

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)

    def __len__(self):
        return len(self._resolve())


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting autoreact on %s:%d%s", settings.host, settings.port, settings.base_path)
    logger.info("Models: %s", ", ".join(settings.model_names) or "(none)")
    logger.info("Compression: %s", "enabled" if settings.enable_compression else "disabled")

    if not settings.llm_api_key and not settings.demo_model_enabled:
        logger.warning("OPENAI_API_KEY is not set and the demo model is off -- chat endpoints will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
