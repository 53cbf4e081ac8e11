"""ReAct engine -- drives one chat turn through Think -> Act -> Observe steps.

Each step sends the session to the model, then either executes the
structured tool calls it returned or parses its text against the
directive grammar. The turn ends on an answer, a question for the user,
an abort, an empty provider reply, or when the step budget runs out.

Streaming turns push TypedChunks through an emit callback; stream_chat()
turns that into an async iterator by running the turn as a task feeding
a queue.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable

from autoreact.api.llm import ChatModel, ModelRegistry
from autoreact.api.models import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    ContentType,
    FinishReason,
    RequestContext,
    TypedChunk,
)
from autoreact.api.tools import ToolRegistry
from autoreact.config import Settings
from autoreact.i18n import Translator
from autoreact.react.classifier import StreamClassifier
from autoreact.react.compaction import SessionCompressor
from autoreact.react.directives import (
    ACTION,
    ANSWER,
    DONE,
    OBSERVE,
    THINK,
    extract_final_answer,
    extract_question,
    is_final_answer,
    is_interruption_by_ask,
    normalize_action_key,
    parse_directive,
)
from autoreact.react.dispatch import Emit, ToolRouter
from autoreact.react.frontend import FrontendToolBridge
from autoreact.react.prompts import (
    PromptCache,
    SystemPromptBuilder,
    apply_environment_context,
    apply_system_prompt,
    build_tool_specs,
)
from autoreact.react.sessions import SessionStore
from autoreact.react.tasks import CancellationToken

logger = logging.getLogger(__name__)

_FORMAT_REMINDER = (
    "Please output in the correct format:\n"
    f"{THINK}: [Analyze problem]\n"
    f"{ACTION}: [Tool call] or {ANSWER}: [Final answer] or {DONE}: [Complete]"
)
_ACTION_REMINDER = f"Please output {ACTION}: [Tool call] to continue, or {ANSWER}: [Complete] or {DONE}: [Complete]"
_REPEATED_FAILURE_HINT = (
    "Previous attempts failed to solve the problem, please try a different method or check input parameters."
)


# ------------------------------------------------------------------
# Hints
# ------------------------------------------------------------------


def progress_hint(step: int, max_steps: int) -> str:
    """Short step counter prefixed to corrective messages."""
    remaining = max_steps - step
    progress = step / max_steps
    if progress < 0.3:
        phase = "Just started"
    elif progress < 0.7:
        phase = "In progress"
    else:
        phase = "Almost complete"
    return f"[Progress: {step}/{max_steps} steps, {phase}] {remaining} steps remaining\n"


def extract_error_message(observation: str | None) -> str:
    if observation is None:
        return "Unknown error"
    cleaned = observation.lstrip("✅❌").strip()
    colon = cleaned.find(":")
    if 0 <= colon < len(cleaned) - 1:
        return cleaned[colon + 1:].strip()
    return cleaned[:100] + "..." if len(cleaned) > 100 else cleaned


def recovery_hint(observation: str, step: int, max_steps: int) -> str:
    hint = (
        f"⚠️ Previous execution failed: {extract_error_message(observation)}\n\n"
        "Please try one of the following methods:\n"
        "1. Check if parameters are correct and retry after adjustment\n"
        "2. Use autoai.tool_detail(\"ToolName\") to view tool details\n"
    )
    if max_steps - step <= 2:
        hint += (
            "3. Simplify the task and handle it in steps\n"
            "4. If unable to complete, output simplified intermediate results\n"
        )
    return hint


# ------------------------------------------------------------------
# Streaming wrapper
# ------------------------------------------------------------------

_END = object()
_DETACHED: set[asyncio.Task] = set()


def _forget_detached(task: asyncio.Task) -> None:
    _DETACHED.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Detached turn failed", exc_info=task.exception())


async def cancel_detached_turns() -> int:
    """Cancel turns still running after their stream was closed. Used on shutdown."""
    pending = list(_DETACHED)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Cancelled %d detached turns", len(pending))
    return len(pending)


class StreamingTurn:
    """Async iterator over the chunks of one running turn.

    The final response is available as `response` once iteration ends.
    Errors raised by the turn are re-raised from the iterator after every
    chunk emitted before the failure has been delivered.

    Closing the iterator early cancels the turn's token instead of the
    task: a tool already executing finishes, and the turn saves the
    session at its next cancellation check.
    """

    def __init__(self, run: Callable[[Emit], Awaitable[ChatCompletionResponse]], token: CancellationToken) -> None:
        self._run = run
        self._token = token
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._finished = False
        self.response: ChatCompletionResponse | None = None

    def __aiter__(self) -> AsyncIterator[TypedChunk]:
        return self

    async def _drive(self) -> ChatCompletionResponse:
        try:
            return await self._run(self._queue.put_nowait)
        finally:
            self._queue.put_nowait(_END)

    async def __anext__(self) -> TypedChunk:
        if self._finished:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(self._drive())
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            self.response = await self._task
            raise StopAsyncIteration
        return item

    async def aclose(self, timeout: float | None = 0) -> None:
        """Stop consuming chunks; the turn keeps running until its next check.

        With a non-zero `timeout`, wait up to that long for the turn to end.
        """
        self._finished = True
        task = self._task
        if task is None or task.done():
            return
        self._token.cancel()
        _DETACHED.add(task)
        task.add_done_callback(_forget_detached)
        if timeout != 0:
            await asyncio.wait({task}, timeout=timeout)


def resolve_session_id(session_id: str | None) -> str:
    """The given session id, or a generated one when it is blank."""
    if not session_id or not session_id.strip():
        return f"default_{uuid.uuid4()}"
    return session_id


# ------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------


class ReActEngine:
    """Runs chat turns against registered models and tools."""

    def __init__(
        self,
        settings: Settings,
        models: ModelRegistry,
        tools: ToolRegistry,
        router: ToolRouter,
        bridge: FrontendToolBridge,
        translator: Translator,
        sessions: SessionStore | None = None,
        compressor: SessionCompressor | None = None,
    ) -> None:
        self._settings = settings
        self._models = models
        self._tools = tools
        self._router = router
        self._bridge = bridge
        self._t = translator
        self._sessions = sessions or SessionStore()
        self._compressor = compressor or SessionCompressor(settings)
        self._prompt_cache = PromptCache(SystemPromptBuilder(tools, translator), settings)

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def chat(
        self,
        request: ChatCompletionRequest,
        context: RequestContext | None = None,
        token: CancellationToken | None = None,
    ) -> ChatCompletionResponse:
        return await self._run_turn(request, context, token, emit=None, stream=False)

    def stream_chat(
        self,
        request: ChatCompletionRequest,
        context: RequestContext | None = None,
        token: CancellationToken | None = None,
    ) -> StreamingTurn:
        if token is None:
            token = CancellationToken(task_id=str(uuid.uuid4()), session_id=request.session_id or "")

        async def run(emit: Emit) -> ChatCompletionResponse:
            return await self._run_turn(request, context, token, emit=emit, stream=True)

        return StreamingTurn(run, token)

    def clear_session(self, session_id: str) -> bool:
        self._bridge.cleanup_session(session_id)
        return self._sessions.clear(session_id)

    def clear_all_sessions(self) -> int:
        return self._sessions.clear_all()

    def session_count(self) -> int:
        return self._sessions.count()

    def clear_prompt_cache(self) -> None:
        self._prompt_cache.clear()
        logger.info("System prompt cache cleared")

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        request: ChatCompletionRequest,
        context: RequestContext | None,
        token: CancellationToken | None,
        emit: Emit | None,
        stream: bool,
    ) -> ChatCompletionResponse:
        session_id = resolve_session_id(request.session_id)
        model = self._models.resolve(request.model, self._settings.default_model)
        session = self._sessions.get_or_create(session_id)

        if request.messages and request.messages[-1].role == "user":
            session.append(request.messages[-1])

        if self._compressor.should_compress(session):
            compressed = await self._compressor.compress(session_id, session, model)
            if compressed is not None:
                session = compressed
                self._sessions.save(session_id, session)

        tool_specs = build_tool_specs(self._tools, request.frontend_tools)
        frontend_names = {spec.function.name for spec in request.frontend_tools or []}
        prompts = self._prompt_cache.get_or_build(tool_specs, frontend_names)
        detailed = len(session) < self._settings.detailed_prompt_message_limit
        apply_system_prompt(session, prompts.prompt(detailed), self._settings.system_prompt)
        apply_environment_context(session, request.environment_context)

        max_steps = self._settings.max_steps
        threshold = self._settings.recovery_failure_threshold
        last_failed_action: str | None = None
        failure_count = 0

        logger.info("Turn started: session=%s model=%s stream=%s", session_id, model.name, stream)

        for step in range(max_steps):
            if token is not None and token.cancelled:
                logger.info("Turn aborted: session=%s step=%d", session_id, step)
                self._sessions.save(session_id, session)
                return ChatCompletionResponse.of(
                    model.name, ChatMessage.assistant(self._t.get("react.aborted")), FinishReason.ABORTED.value
                )

            hint = progress_hint(step, max_steps)
            model_request = ChatCompletionRequest(
                messages=list(session),
                model=model.name,
                tools=tool_specs,
                tool_choice="auto",
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                stream=stream,
                session_id=session_id,
            )
            response = await self._call_model(model, model_request, emit if stream else None)

            assistant = response.first_message()
            if assistant is None:
                self._sessions.save(session_id, session)
                return response
            session.append(assistant)
            content = assistant.content
            if assistant.tool_calls and content is not None and not content.strip():
                content = None

            if content is None:
                if not assistant.tool_calls:
                    self._sessions.save(session_id, session)
                    return response

                observations = []
                failed = False
                for tool_call in assistant.tool_calls:
                    observation = await self._router.execute_tool_call(
                        tool_call, request, session_id, context, emit
                    )
                    self._observe(session, observation, emit)
                    observations.append(observation)
                    failed = failed or observation.startswith("❌")

                if failed:
                    session.append(ChatMessage.user(recovery_hint("\n".join(observations), step, max_steps)))
                    last_failed_action = "tool_calls"
                    failure_count += 1
                else:
                    failure_count = 0
                continue

            if is_final_answer(content):
                self._sessions.save(session_id, session)
                return self._terminal(response, model, extract_final_answer(content))

            if is_interruption_by_ask(content):
                self._sessions.save(session_id, session)
                return self._terminal(response, model, extract_question(content))

            parsed = parse_directive(content)
            if parsed.is_ask:
                self._sessions.save(session_id, session)
                return self._terminal(response, model, extract_question(content))

            if parsed.thought is None and parsed.action is None:
                session.append(ChatMessage.user(hint + _FORMAT_REMINDER))
                continue

            if parsed.action is None:
                prefix = _REPEATED_FAILURE_HINT if failure_count >= threshold else hint
                session.append(ChatMessage.user(prefix + _ACTION_REMINDER))
                continue

            observation = await self._router.execute_action(parsed.action, request, session_id, context, emit)
            self._observe(session, observation, emit)

            if observation.startswith("❌"):
                key = normalize_action_key(parsed.action)
                if key == last_failed_action:
                    failure_count += 1
                else:
                    last_failed_action = key
                    failure_count = 1
                if failure_count >= threshold:
                    logger.info("Action %s failed %d times in a row, adding recovery hint", key, failure_count)
                    session.append(ChatMessage.user(recovery_hint(observation, step, max_steps)))
            else:
                failure_count = 0

        logger.warning("Turn reached max_steps=%d: session=%s", max_steps, session_id)
        self._sessions.save(session_id, session)
        fallback = "\n".join([
            self._t.get("react.max_steps_reached", max_steps) + "\n",
            self._t.get("react.max_steps_reached_hint"),
            self._t.get("react.max_steps_reached_hint_1"),
            self._t.get("react.max_steps_reached_hint_2"),
            self._t.get("react.max_steps_reached_hint_3"),
        ])
        return ChatCompletionResponse.of(model.name, ChatMessage.assistant(fallback), FinishReason.LENGTH.value)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call_model(
        self, model: ChatModel, request: ChatCompletionRequest, emit: Emit | None
    ) -> ChatCompletionResponse:
        if emit is None:
            return await model.chat(request)

        classifier = StreamClassifier(hide_action=not self._settings.show_tool_details)
        response: ChatCompletionResponse | None = None
        async for event in model.chat_stream(request):
            if event.type == "text":
                for chunk in classifier.feed(event.text):
                    emit(chunk)
            elif event.type == "done":
                response = event.response
        for chunk in classifier.flush():
            emit(chunk)
        return response if response is not None else ChatCompletionResponse(model=model.name)

    def _observe(self, session: list[ChatMessage], observation: str, emit: Emit | None) -> None:
        if emit is not None and self._settings.show_tool_details:
            emit(TypedChunk(ContentType.OBSERVATION, observation))
        session.append(ChatMessage.user(f"{OBSERVE}: {observation}"))

    @staticmethod
    def _terminal(response: ChatCompletionResponse, model: ChatModel, text: str) -> ChatCompletionResponse:
        finish = response.finish_reason or FinishReason.STOP.value
        return ChatCompletionResponse.of(response.model or model.name, ChatMessage.assistant(text), finish)
