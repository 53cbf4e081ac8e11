"""REST API for the ReAct engine.

Endpoints (mounted under settings.base_path):
  POST   /chat/completions        - Run a turn, get a chat completion
  POST   /chat/stream             - Run a turn as SSE typed chunks
  DELETE /chat/stream/{task_id}   - Abort a streaming turn
  POST   /chat/tool-result        - Deliver a frontend tool result
  DELETE /chat/{session_id}       - Clear a session
  GET    /models                  - Registered models
  GET    /tools                   - Backend tool summaries
  GET    /tools/{name}            - Backend tool detail
  GET    /i18n/messages           - Message catalog
  GET    /health                  - Health check
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Mount, Route

from autoreact.api.llm import ModelRegistry
from autoreact.api.models import ChatCompletionRequest, ContentType, RequestContext, TypedChunk
from autoreact.api.tools import ToolRegistry
from autoreact.config import Settings
from autoreact.i18n import Translator
from autoreact.react.engine import ReActEngine, resolve_session_id
from autoreact.react.frontend import FrontendToolBridge
from autoreact.react.prompts import backend_tool_detail
from autoreact.react.tasks import ChatTaskManager

logger = logging.getLogger(__name__)

_INTERNAL_TAG_RE = re.compile(r"</?(?:think|reasoning|arg_value)>")


def strip_internal_tags(text: str) -> str:
    return _INTERNAL_TAG_RE.sub("", text)


def _sse(payload: dict[str, Any] | str) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n"


async def _read_json(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    engine: ReActEngine,
    tasks: ChatTaskManager,
    bridge: FrontendToolBridge,
    tools: ToolRegistry,
    models: ModelRegistry,
    translator: Translator,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat_completions(request: Request) -> JSONResponse:
        """POST /chat/completions - Run one turn."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        chat_request = ChatCompletionRequest.from_dict(body)
        if not chat_request.messages:
            return JSONResponse({"error": "Missing required field: messages"}, status_code=400)

        try:
            response = await engine.chat(chat_request, RequestContext.from_request(request))
        except Exception as e:
            logger.exception("Chat error")
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(response.to_dict())

    async def chat_stream(request: Request) -> StreamingResponse:
        """POST /chat/stream - SSE streaming turn."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        chat_request = ChatCompletionRequest.from_dict(body)
        if not chat_request.messages:
            return JSONResponse({"error": "Missing required field: messages"}, status_code=400)
        chat_request.stream = True

        tasks.cleanup_expired()
        chat_request.session_id = resolve_session_id(chat_request.session_id)
        token = tasks.create(chat_request.session_id)
        context = RequestContext.from_request(request)

        async def event_generator():
            finished = False
            yield _sse({"type": "TASK_INFO", "taskId": token.task_id, "sessionId": chat_request.session_id})
            turn = engine.stream_chat(chat_request, context, token)
            try:
                async for chunk in turn:
                    text = strip_internal_tags(chunk.content)
                    if text:
                        yield _sse(TypedChunk(chunk.type, text).to_dict())
                if token.cancelled:
                    yield _sse(TypedChunk(ContentType.ANSWER, translator.get("stream.task_aborted")).to_dict())
                finished = True
            except Exception as e:
                logger.error("Stream error: %s", e)
                message = translator.get("stream.content_process_error")
                yield _sse(TypedChunk(ContentType.ERROR, f"{message}: {e}").to_dict())
                finished = True
            finally:
                if not finished:
                    logger.info("Client disconnected from task %s", token.task_id)
                    token.mark_connection_closed()
                    await turn.aclose()
                tasks.remove(token.task_id)
            yield _sse("[DONE]")

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def abort_stream(request: Request) -> JSONResponse:
        """DELETE /chat/stream/{task_id} - Abort a running turn."""
        task_id = request.path_params["task_id"]
        if tasks.abort(task_id):
            return JSONResponse({"success": True, "message": translator.get("task.abort_success")})
        return JSONResponse(
            {"success": False, "message": translator.get("task.abort_not_found")}, status_code=404
        )

    async def tool_result(request: Request) -> JSONResponse:
        """POST /chat/tool-result - Frontend tool result callback."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        session_id = body.get("sessionId")
        tool_call = body.get("toolCall")
        if not session_id or not isinstance(tool_call, dict) or not tool_call.get("callId"):
            return JSONResponse(
                {"success": False, "message": translator.get("task.missing_parameters")}, status_code=400
            )

        resolved = bridge.resolve(
            session_id,
            tool_call["callId"],
            result=tool_call.get("result"),
            error=tool_call.get("error"),
            is_error=bool(tool_call.get("isError", False)),
        )
        if not resolved:
            return JSONResponse(
                {"success": False, "message": translator.get("task.no_matching_tool")}, status_code=404
            )
        return JSONResponse({"success": True, "message": translator.get("task.tool_result_received")})

    async def clear_session(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - Clear a session."""
        session_id = request.path_params["session_id"]
        cleared = engine.clear_session(session_id)
        return JSONResponse({"status": "cleared" if cleared else "not_found", "session_id": session_id})

    async def list_models(request: Request) -> JSONResponse:
        """GET /models - Registered models."""
        data = [{"id": name, "object": "model", "owned_by": "autoai"} for name in models.names()]
        return JSONResponse({"object": "list", "data": data})

    async def list_tools(request: Request) -> JSONResponse:
        """GET /tools - Backend tool summaries."""
        summaries = [{"name": s.name, "description": s.description} for s in tools.list_summaries()]
        return JSONResponse({"tools": summaries, "total": len(summaries)})

    async def get_tool(request: Request) -> JSONResponse:
        """GET /tools/{name} - Backend tool detail."""
        name = request.path_params["name"]
        definition = tools.get_detail(name)
        if definition is None:
            return JSONResponse({"error": f"Tool not found: {name}"}, status_code=404)
        return JSONResponse(backend_tool_detail(definition))

    async def i18n_messages(request: Request) -> JSONResponse:
        """GET /i18n/messages - Message catalog of the configured language."""
        return JSONResponse({"language": translator.language, "messages": translator.all_messages()})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({
            "status": "ok",
            "sessions": engine.session_count(),
            "tools": len(tools),
            "models": models.names(),
        })

    routes = [
        Route("/chat/completions", chat_completions, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/stream/{task_id}", abort_stream, methods=["DELETE"]),
        Route("/chat/tool-result", tool_result, methods=["POST"]),
        Route("/chat/{session_id}", clear_session, methods=["DELETE"]),
        Route("/models", list_models),
        Route("/tools", list_tools),
        Route("/tools/{name}", get_tool),
        Route("/i18n/messages", i18n_messages),
        Route("/health", health),
    ]

    base_path = settings.base_path.rstrip("/")
    kwargs: dict[str, Any] = {"routes": [Mount(base_path, routes=routes)] if base_path else routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
