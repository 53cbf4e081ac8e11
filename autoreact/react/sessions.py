"""Session store -- per-session message history with idle expiry.

SessionStore owns the map behind a lock so concurrent turns for different
sessions never corrupt each other. SessionSweeper runs the periodic expiry
check on its own asyncio task, independent of request traffic.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from autoreact.api.models import ChatMessage

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Message history plus last-access time (monotonic seconds)."""

    session_id: str
    messages: list[ChatMessage] = field(default_factory=list)
    last_access: float = 0.0


class SessionStore:
    """Thread-safe map of session id to Session.

    get_or_create() hands out a copy of the history; the turn works on the
    copy and writes it back with save(). Every read or write refreshes the
    session's last-access time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get_or_create(self, session_id: str) -> list[ChatMessage]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(session_id)
                self._sessions[session_id] = session
                logger.debug("Created session %s", session_id)
            session.last_access = self._clock()
            return list(session.messages)

    def save(self, session_id: str, messages: list[ChatMessage]) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(session_id)
                self._sessions[session_id] = session
            session.messages = list(messages)
            session.last_access = self._clock()

    def clear(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info("Cleared session %s", session_id)
        return removed

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
        logger.info("Cleared all sessions (%d)", count)
        return count

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def sweep_expired(self, max_idle_seconds: float) -> list[str]:
        """Remove sessions idle longer than max_idle_seconds. Returns their ids.

        Idleness is judged under the lock, so a session touched during the
        sweep keeps its fresh last-access time and survives.
        """
        with self._lock:
            now = self._clock()
            expired = [
                sid for sid, session in self._sessions.items()
                if now - session.last_access > max_idle_seconds
            ]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.info("Expired %d idle sessions, %d remaining", len(expired), self.count())
        return expired


# ---------------------------------------------------------------------------
# Periodic sweep
# ---------------------------------------------------------------------------


class SessionSweeper:
    """Runs SessionStore.sweep_expired() every `interval` seconds.

    Callbacks registered with on_expired() receive each removed session id
    (used to drop pending frontend calls of that session).
    """

    def __init__(self, store: SessionStore, max_idle_seconds: float, interval: float) -> None:
        self._store = store
        self._max_idle = max_idle_seconds
        self._interval = interval
        self._callbacks: list[Callable[[str], Awaitable[None] | None]] = []
        self._task: asyncio.Task | None = None

    def on_expired(self, callback: Callable[[str], Awaitable[None] | None]) -> None:
        self._callbacks.append(callback)

    async def start(self) -> None:
        """Start the periodic sweep."""
        self._task = asyncio.create_task(self._sweep_loop(), name="session-sweeper")
        logger.info(
            "Session sweeper started (idle=%ds, interval=%ds)",
            int(self._max_idle),
            int(self._interval),
        )

    async def stop(self) -> None:
        """Stop the sweeper."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Session sweep failed")

    async def sweep_once(self) -> list[str]:
        expired = self._store.sweep_expired(self._max_idle)
        for session_id in expired:
            for callback in self._callbacks:
                result = callback(session_id)
                if asyncio.iscoroutine(result):
                    await result
        return expired
