"""Frontend tool bridge -- tools executed by the connected client.

A call routed to the frontend is registered under a correlation id, the
client is notified over the turn's stream, and the turn waits for the
client to post the result back (or for the timeout). Each pending call
has its own future and its own timeout clock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from autoreact.api.models import ContentType, ToolCall, TypedChunk
from autoreact.i18n import Translator

logger = logging.getLogger(__name__)

FRONTEND_CALL_PREFIX = "[FRONTEND_TOOL_CALL]"


@dataclass
class PendingFrontendCall:
    call_id: str
    session_id: str
    tool_name: str
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)


def _key(session_id: str, call_id: str) -> str:
    return f"{session_id}:{call_id}"


class FrontendToolBridge:
    """Correlates frontend tool calls with results posted by the client."""

    def __init__(self, translator: Translator, timeout: float = 30.0) -> None:
        self._t = translator
        self._timeout = timeout
        self._pending: dict[str, PendingFrontendCall] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    def register(self, session_id: str, tool_call: ToolCall) -> str:
        """Create the single-resolution slot and return its correlation id."""
        call_id = str(uuid.uuid4())
        future = asyncio.get_running_loop().create_future()
        self._pending[_key(session_id, call_id)] = PendingFrontendCall(
            call_id=call_id,
            session_id=session_id,
            tool_name=tool_call.function.name,
            future=future,
        )
        logger.debug(
            "Registered frontend tool call: session=%s call=%s tool=%s",
            session_id,
            call_id,
            tool_call.function.name,
        )
        return call_id

    async def wait(self, session_id: str, call_id: str) -> str:
        """Block until the client resolves the call or the timeout elapses."""
        key = _key(session_id, call_id)
        pending = self._pending.get(key)
        if pending is None:
            logger.warning("No pending tool call found: session=%s call=%s", session_id, call_id)
            return f"❌ {self._t.get('react.tool_call_failed')}: No pending tool call found"

        try:
            result = await asyncio.wait_for(asyncio.shield(pending.future), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error("Frontend tool call timeout: session=%s call=%s", session_id, call_id)
            return (
                "❌ Tool call timeout: Frontend did not return result within "
                f"{self._timeout:g} seconds"
            )
        finally:
            self._pending.pop(key, None)
        logger.debug("Frontend tool call completed: session=%s call=%s", session_id, call_id)
        return result

    def resolve(
        self,
        session_id: str,
        call_id: str,
        result: Any = None,
        error: str | None = None,
        is_error: bool = False,
    ) -> bool:
        """Deliver a client result. False for unknown or already-resolved ids."""
        pending = self._pending.get(_key(session_id, call_id))
        if pending is None or pending.future.done():
            logger.warning("Received result for unknown tool call: session=%s call=%s", session_id, call_id)
            return False

        if is_error:
            text = f"❌ {self._t.get('react.tool_call_failed')}: {error or 'Unknown error'}"
        elif result is None:
            text = f"✅ {self._t.get('react.tool_call_success')}: null"
        elif isinstance(result, str):
            text = f"✅ {self._t.get('react.tool_call_success')}: {result}"
        else:
            text = f"✅ {self._t.get('react.tool_call_success')}: {json.dumps(result, ensure_ascii=False)}"

        pending.future.set_result(text)
        logger.debug("Frontend tool result set: session=%s call=%s success=%s", session_id, call_id, not is_error)
        return True

    def cleanup_session(self, session_id: str) -> int:
        """Drop every pending call of a session. Waiters get a failure observation."""
        prefix = f"{session_id}:"
        keys = [k for k in self._pending if k.startswith(prefix)]
        for key in keys:
            pending = self._pending.pop(key)
            if not pending.future.done():
                pending.future.set_result(f"❌ {self._t.get('react.tool_call_failed')}: Session closed")
        if keys:
            logger.debug("Cleaned up %d pending tool calls for session %s", len(keys), session_id)
        return len(keys)

    def pending_count(self, session_id: str | None = None) -> int:
        if session_id is None:
            return len(self._pending)
        prefix = f"{session_id}:"
        return sum(1 for k in self._pending if k.startswith(prefix))

    async def invoke(
        self,
        tool_call: ToolCall,
        session_id: str,
        emit: Callable[[TypedChunk], None] | None,
    ) -> str:
        """Register, notify the client, then wait for its result."""
        call_id = self.register(session_id, tool_call)
        if emit is not None:
            notification = {
                "type": "FRONTEND_TOOL_CALL",
                "sessionId": session_id,
                "callId": call_id,
                "toolCall": tool_call.to_dict(),
            }
            emit(TypedChunk(
                ContentType.ACTION,
                f"{FRONTEND_CALL_PREFIX} {json.dumps(notification, ensure_ascii=False)}",
            ))
        else:
            logger.warning("No stream to notify the client of frontend call %s", call_id)
        return await self.wait(session_id, call_id)
