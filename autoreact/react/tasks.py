"""Cooperative cancellation for running chat turns.

The engine polls a CancellationToken between steps; the REST layer aborts
a turn by task id or marks it closed when the client disconnects.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class CancellationToken:
    """Cancellation flag for one turn."""

    task_id: str
    session_id: str
    created_at: float = field(default_factory=time.monotonic)
    connection_closed: bool = False
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def mark_connection_closed(self) -> None:
        """The client went away; nobody will read further output."""
        self.connection_closed = True
        self.cancel()


class ChatTaskManager:
    """Registry of cancellation tokens for in-flight turns, keyed by task id."""

    def __init__(self, expire_seconds: float = 30 * 60, clock: Callable[[], float] = time.monotonic) -> None:
        self._tasks: dict[str, CancellationToken] = {}
        self._lock = threading.Lock()
        self._expire_seconds = expire_seconds
        self._clock = clock

    def create(self, session_id: str) -> CancellationToken:
        token = CancellationToken(task_id=str(uuid.uuid4()), session_id=session_id, created_at=self._clock())
        with self._lock:
            self._tasks[token.task_id] = token
        logger.debug("Created task %s for session %s", token.task_id, session_id)
        return token

    def abort(self, task_id: str) -> bool:
        with self._lock:
            token = self._tasks.get(task_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Task %s aborted (session %s)", task_id, token.session_id)
        return True

    def get(self, task_id: str) -> CancellationToken | None:
        with self._lock:
            return self._tasks.get(task_id)

    def remove(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)

    def cleanup_expired(self) -> int:
        """Drop tokens older than the expiry window. Returns the count removed."""
        cutoff = self._clock() - self._expire_seconds
        with self._lock:
            expired = [tid for tid, token in self._tasks.items() if token.created_at < cutoff]
            for tid in expired:
                del self._tasks[tid]
        if expired:
            logger.info("Removed %d expired chat tasks", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
