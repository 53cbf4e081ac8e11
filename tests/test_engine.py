"""Tests for ReActEngine turns -- text directives, structured calls, streaming."""

import asyncio
import json

import pytest

from conftest import ScriptedModel, make_engine, make_registry, make_settings

from autoreact.api.llm import ChatModel, ModelError
from autoreact.api.models import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    ContentType,
    ToolCall,
    ToolCallFunction,
    ToolFunctionSpec,
    ToolSpec,
)
from autoreact.react.compaction import SUMMARY_OPEN, SUMMARY_SYSTEM_PROMPT
from autoreact.react.engine import extract_error_message, progress_hint, recovery_hint
from autoreact.react.frontend import FRONTEND_CALL_PREFIX
from autoreact.react.prompts import ENV_CONTEXT_MARKER
from autoreact.react.tasks import CancellationToken


def _request(text: str = "question", session_id: str | None = "s1", **kwargs) -> ChatCompletionRequest:
    return ChatCompletionRequest(messages=[ChatMessage.user(text)], session_id=session_id, **kwargs)


def _answer(response: ChatCompletionResponse) -> str:
    return response.first_message().content


class FailingModel(ChatModel):
    async def chat(self, request):
        raise ModelError("Model API error (503): overloaded")


class CancellingModel(ScriptedModel):
    """Cancels the token while producing its first reply."""

    def __init__(self, replies, token):
        super().__init__(replies)
        self.token = token

    async def chat(self, request):
        self.token.cancel()
        return await super().chat(request)


# ---------------------------------------------------------------------------
# Hints
# ---------------------------------------------------------------------------


class TestHints:
    def test_progress_phases(self):
        assert progress_hint(0, 10) == "[Progress: 0/10 steps, Just started] 10 steps remaining\n"
        assert "In progress" in progress_hint(5, 10)
        assert "Almost complete" in progress_hint(8, 10)

    def test_extract_error_message(self):
        assert extract_error_message(None) == "Unknown error"
        assert extract_error_message("❌ Tool call failed: Missing x") == "Missing x"
        assert extract_error_message("plain failure") == "plain failure"

    def test_recovery_hint_extra_options_near_budget(self):
        early = recovery_hint("❌ Tool call failed: bad", 0, 10)
        late = recovery_hint("❌ Tool call failed: bad", 9, 10)
        assert early.startswith("⚠️ Previous execution failed: bad\n")
        assert "3. Simplify the task" not in early
        assert "3. Simplify the task" in late


# ---------------------------------------------------------------------------
# Text directive turns
# ---------------------------------------------------------------------------


class TestTextTurns:
    @pytest.mark.asyncio
    async def test_direct_answer(self):
        model = ScriptedModel(["THINK: easy\nANSWER: 42"])
        engine, _ = make_engine(model)

        response = await engine.chat(_request())

        assert _answer(response) == "42"
        assert response.finish_reason == "stop"
        history = engine.sessions.get_or_create("s1")
        assert [m.role for m in history] == ["system", "user", "assistant"]
        assert history[-1].content == "THINK: easy\nANSWER: 42"

    @pytest.mark.asyncio
    async def test_action_then_answer(self):
        model = ScriptedModel(["THINK: add them\nACTION: calc.add(2, 3)", "ANSWER: 5"])
        engine, _ = make_engine(model)

        response = await engine.chat(_request("2 plus 3?"))

        assert _answer(response) == "5"
        second = model.requests[1].messages
        assert second[-1].role == "user"
        assert second[-1].content == "OBSERVE: ✅ Tool call succeeded: 5"

    @pytest.mark.asyncio
    async def test_step_budget_exhausted(self):
        model = ScriptedModel(["THINK: again\nACTION: calc.add(1, 1)"] * 3)
        engine, _ = make_engine(model, make_settings(max_steps=3))

        response = await engine.chat(_request())

        assert response.finish_reason == "length"
        assert _answer(response).startswith("Reached the maximum number of reasoning steps (3)")
        assert len(model.requests) == 3
        assert "3. Continue the conversation" in _answer(response)

    @pytest.mark.asyncio
    async def test_ask_interrupts_turn(self):
        model = ScriptedModel(["THINK: need the id\nASK: Which order do you mean?"])
        engine, _ = make_engine(model)

        response = await engine.chat(_request())

        assert _answer(response) == "Which order do you mean?"
        assert response.finish_reason == "stop"
        assert len(model.requests) == 1

    @pytest.mark.asyncio
    async def test_empty_reply_gets_format_reminder(self):
        model = ScriptedModel(["   ", "ANSWER: ok"])
        engine, _ = make_engine(model)

        await engine.chat(_request())

        reminder = model.requests[1].messages[-1].content
        assert reminder.startswith(progress_hint(0, 5))
        assert "Please output in the correct format:" in reminder

    @pytest.mark.asyncio
    async def test_thought_only_gets_action_reminder(self):
        model = ScriptedModel(["THINK: still pondering", "ANSWER: ok"])
        engine, _ = make_engine(model)

        await engine.chat(_request())

        reminder = model.requests[1].messages[-1].content
        assert reminder.startswith("[Progress: 0/5 steps")
        assert "Please output ACTION: [Tool call] to continue" in reminder

    @pytest.mark.asyncio
    async def test_repeated_failure_adds_recovery_hint(self):
        model = ScriptedModel(['ACTION: calc.fail("x")', 'ACTION: calc.fail("x")', "ANSWER: gave up"])
        engine, _ = make_engine(model)

        await engine.chat(_request())

        after_first = model.requests[1].messages[-1].content
        after_second = model.requests[2].messages[-1].content
        assert after_first.startswith("OBSERVE: ❌ Tool call failed: Execution error")
        assert after_second.startswith("⚠️ Previous execution failed: Execution error")

    @pytest.mark.asyncio
    async def test_different_failures_reset_count(self):
        model = ScriptedModel(['ACTION: calc.fail("x")', "ACTION: nope(1)", "ANSWER: done"])
        engine, _ = make_engine(model)

        await engine.chat(_request())

        assert model.requests[2].messages[-1].content.startswith("OBSERVE: ❌ Tool call failed: Tool not found")


# ---------------------------------------------------------------------------
# Structured tool calls
# ---------------------------------------------------------------------------


class TestStructuredTurns:
    @pytest.mark.asyncio
    async def test_tool_calls_observed(self):
        model = ScriptedModel([[("calc.add", '{"a": 1, "b": 2}')], "ANSWER: 3"])
        engine, _ = make_engine(model)

        response = await engine.chat(_request())

        assert _answer(response) == "3"
        first = model.requests[0]
        assert first.tool_choice == "auto"
        assert [t.function.name for t in first.tools] == ["autoai.tool_detail", "calc.add", "calc.fail"]
        second = model.requests[1].messages
        assert second[-2].tool_calls[0].function.name == "calc.add"
        assert second[-1].content == "OBSERVE: ✅ Tool call succeeded: 3"

    @pytest.mark.asyncio
    async def test_failed_tool_call_adds_recovery_hint(self):
        model = ScriptedModel([[("calc.fail", "{}")], "ANSWER: sorry"])
        engine, _ = make_engine(model)

        await engine.chat(_request())

        messages = model.requests[1].messages
        assert messages[-2].content.startswith("OBSERVE: ❌ Tool call failed: Tool execution failed")
        assert messages[-1].content.startswith("⚠️ Previous execution failed:")

    @pytest.mark.asyncio
    async def test_blank_content_with_tool_calls_is_structured(self):
        class BlankContentModel(ScriptedModel):
            async def chat(self, request):
                response = await super().chat(request)
                message = response.first_message()
                if message.tool_calls:
                    message.content = ""
                return response

        model = BlankContentModel([[("calc.add", '{"a": 2, "b": 3}')], "ANSWER: 5"])
        engine, _ = make_engine(model)

        response = await engine.chat(_request())

        assert _answer(response) == "5"
        assert model.requests[1].messages[-1].content == "OBSERVE: ✅ Tool call succeeded: 5"

    @pytest.mark.asyncio
    async def test_empty_provider_reply_returned(self):
        class EmptyModel(ChatModel):
            async def chat(self, request):
                return ChatCompletionResponse(model="empty")

        engine, _ = make_engine(EmptyModel("empty"))
        response = await engine.chat(_request())
        assert response.first_message() is None


# ---------------------------------------------------------------------------
# Session, prompt, and lifecycle
# ---------------------------------------------------------------------------


class TestSessionHandling:
    @pytest.mark.asyncio
    async def test_system_prompt_and_environment(self):
        model = ScriptedModel(["ANSWER: hi"])
        engine, _ = make_engine(model, make_settings(system_prompt="Be brief."))

        await engine.chat(_request(environment_context=["page: /orders"]))

        messages = model.requests[0].messages
        assert messages[0].role == "system"
        assert messages[0].content.startswith("Be brief.\n")
        assert "Example: calc.add(1, 2)" in messages[0].content
        assert messages[1].content.startswith(ENV_CONTEXT_MARKER)
        assert "• page: /orders" in messages[1].content

    @pytest.mark.asyncio
    async def test_simple_prompt_for_long_sessions(self):
        model = ScriptedModel(["ANSWER: hi"])
        engine, _ = make_engine(model, make_settings(detailed_prompt_message_limit=0))

        await engine.chat(_request())

        assert "Example: calc.add(1, 2)" not in model.requests[0].messages[0].content

    @pytest.mark.asyncio
    async def test_generated_session_id(self):
        model = ScriptedModel(["ANSWER: hi"])
        engine, _ = make_engine(model)

        await engine.chat(_request(session_id=None))

        assert model.requests[0].session_id.startswith("default_")
        assert engine.session_count() == 1

    @pytest.mark.asyncio
    async def test_history_carries_over(self):
        model = ScriptedModel(["ANSWER: first", "ANSWER: second"])
        engine, _ = make_engine(model)

        await engine.chat(_request("one"))
        await engine.chat(_request("two"))

        contents = [m.content for m in model.requests[1].messages]
        assert contents[1:] == ["one", "ANSWER: first", "two"]
        assert sum(1 for m in model.requests[1].messages if m.role == "system") == 1

    @pytest.mark.asyncio
    async def test_abort_before_first_step(self):
        model = ScriptedModel([])
        engine, _ = make_engine(model)
        token = CancellationToken(task_id="t1", session_id="s1")
        token.cancel()

        response = await engine.chat(_request(), token=token)

        assert response.finish_reason == "aborted"
        assert _answer(response) == "The task was aborted by the user."
        assert model.requests == []
        assert engine.sessions.get_or_create("s1")[-1].content == "question"

    @pytest.mark.asyncio
    async def test_abort_between_steps(self):
        token = CancellationToken(task_id="t1", session_id="s1")
        model = CancellingModel(["THINK: go\nACTION: calc.add(1, 2)"], token)
        engine, _ = make_engine(model)

        response = await engine.chat(_request(), token=token)

        assert response.finish_reason == "aborted"
        assert len(model.requests) == 1
        assert engine.sessions.get_or_create("s1")[-1].content == "OBSERVE: ✅ Tool call succeeded: 3"

    @pytest.mark.asyncio
    async def test_model_error_propagates(self):
        engine, _ = make_engine(FailingModel("broken"))
        with pytest.raises(ModelError, match="overloaded"):
            await engine.chat(_request())

    @pytest.mark.asyncio
    async def test_clear_session_releases_frontend_calls(self):
        model = ScriptedModel(["ANSWER: hi"])
        engine, bridge = make_engine(model)
        await engine.chat(_request())
        bridge.register("s1", ToolCall(ToolCallFunction("ui.show", "{}")))

        assert engine.clear_session("s1") is True
        assert engine.clear_session("s1") is False
        assert bridge.pending_count("s1") == 0

    @pytest.mark.asyncio
    async def test_compression_before_turn(self):
        model = ScriptedModel(["The user asked several things.", "ANSWER: ok"])
        settings = make_settings(compression_threshold_tokens=100, keep_recent_tokens=20)
        engine, _ = make_engine(model, settings)
        filler = "word " * 40
        engine.sessions.save("s1", [
            ChatMessage.user(filler),
            ChatMessage.assistant(filler),
            ChatMessage.user(filler),
            ChatMessage.assistant(filler),
        ])

        response = await engine.chat(_request("hello"))

        assert _answer(response) == "ok"
        summary_request = model.requests[0].messages
        assert summary_request[0].content == SUMMARY_SYSTEM_PROMPT
        turn = model.requests[1].messages
        assert [m.role for m in turn] == ["system", "assistant", "user"]
        assert turn[1].content.startswith(SUMMARY_OPEN)
        assert "The user asked several things." in turn[1].content
        assert turn[2].content == "hello"


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


FRONTEND_SPEC = ToolSpec(ToolFunctionSpec(
    name="ui.show",
    description="Show a dialog",
    parameters={"type": "object", "properties": {"title": {"type": "string"}}},
))


class TestStreaming:
    @pytest.mark.asyncio
    async def test_chunks_in_order(self):
        model = ScriptedModel(["THINK: add\nACTION: calc.add(2, 3)", "ANSWER: 5"])
        engine, _ = make_engine(model)

        turn = engine.stream_chat(_request())
        chunks = [chunk async for chunk in turn]

        assert [c.type for c in chunks] == [
            ContentType.THINKING,
            ContentType.ACTION,
            ContentType.ACTION_START,
            ContentType.ACTION_END,
            ContentType.OBSERVATION,
            ContentType.ANSWER,
        ]
        assert chunks[4].content == "✅ Tool call succeeded: 5"
        assert turn.response is not None
        assert _answer(turn.response) == "5"
        assert all(r.stream for r in model.requests)

    @pytest.mark.asyncio
    async def test_hidden_tool_details(self):
        model = ScriptedModel(["THINK: add\nACTION: calc.add(2, 3)", "ANSWER: 5"])
        engine, _ = make_engine(model, make_settings(show_tool_details=False))

        types = [chunk.type async for chunk in engine.stream_chat(_request())]

        assert ContentType.ACTION not in types
        assert ContentType.OBSERVATION not in types
        assert types[-1] is ContentType.ANSWER

    @pytest.mark.asyncio
    async def test_frontend_call_resolved_by_client(self):
        model = ScriptedModel(['THINK: show it\nACTION: ui.show("Hi")', "ANSWER: shown"])
        engine, bridge = make_engine(model)

        turn = engine.stream_chat(_request(frontend_tools=[FRONTEND_SPEC]))
        async for chunk in turn:
            if chunk.type is ContentType.ACTION and chunk.content.startswith(FRONTEND_CALL_PREFIX):
                payload = json.loads(chunk.content[len(FRONTEND_CALL_PREFIX) + 1:])
                assert json.loads(payload["toolCall"]["function"]["arguments"]) == {"title": "Hi"}
                assert bridge.resolve("s1", payload["callId"], result={"clicked": True})

        assert _answer(turn.response) == "shown"
        assert model.requests[1].messages[-1].content == 'OBSERVE: ✅ Tool call succeeded: {"clicked": true}'

    @pytest.mark.asyncio
    async def test_error_raised_after_emitted_chunks(self):
        engine, _ = make_engine(FailingModel("broken"))
        with pytest.raises(ModelError):
            [chunk async for chunk in engine.stream_chat(_request())]


@pytest.mark.asyncio
async def test_clear_all_sessions_and_prompt_cache():
    model = ScriptedModel(["ANSWER: a", "ANSWER: b", "ANSWER: c"])
    engine, _ = make_engine(model)
    await engine.chat(_request(session_id="x"))
    await engine.chat(_request(session_id="y"))

    assert engine.clear_all_sessions() == 2
    assert engine.session_count() == 0

    engine.clear_prompt_cache()
    await engine.chat(_request(session_id="z"))
    assert model.requests[2].messages[0].content == model.requests[0].messages[0].content


@pytest.mark.asyncio
async def test_closed_stream_lets_running_tool_finish():
    registry = make_registry()
    finished = []

    @registry.tool("slow.op", "Slow operation")
    async def slow_op():
        await asyncio.sleep(0.2)
        finished.append(True)
        return "done"

    model = ScriptedModel(["THINK: wait\nACTION: slow.op()"])
    engine, _ = make_engine(model, registry=registry)
    token = CancellationToken(task_id="t1", session_id="s1")

    turn = engine.stream_chat(_request(), token=token)
    async for chunk in turn:
        if chunk.type is ContentType.ACTION_START:
            break
    await turn.aclose(timeout=2)

    assert token.cancelled
    assert finished == [True]
    history = engine.sessions.get_or_create("s1")
    assert history[1].content == "question"
    assert history[-1].content == "OBSERVE: ✅ Tool call succeeded: done"
    assert len(model.requests) == 1
