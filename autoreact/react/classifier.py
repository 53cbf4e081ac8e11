"""Streaming content classifier.

Turns raw model text fragments into typed chunks by watching for directive
markers at the start of each line. Works as a pure transform: feed() maps
one fragment to zero or more chunks, classify() wraps an async iterator.
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator

from autoreact.api.models import ContentType, TypedChunk

_MARKERS = {
    "ASK": ContentType.ASK,
    "ANSWER": ContentType.ANSWER,
    "THINK": ContentType.THINKING,
    "ACTION": ContentType.ACTION,
}
_MARKER_RE = re.compile(r"^(ASK|ANSWER|THINK|ACTION)[:：]", re.IGNORECASE)

# A line longer than this without a marker is plain content of the current type.
_LOCK_LENGTH = 6


class StreamClassifier:
    """Line-buffered marker detection for one turn's model output.

    The current type starts as REASONING and carries over between lines until
    a new marker is seen. A marker split across fragments is buffered until
    enough characters arrive to decide. With hide_action set, ACTION chunks
    are dropped and everything else still flows.
    """

    def __init__(self, hide_action: bool = False) -> None:
        self.hide_action = hide_action
        self.current_type = ContentType.REASONING
        self._buffer = ""
        self._outputting = False
        self._first_fragment = True

    def feed(self, fragment: str | None) -> list[TypedChunk]:
        if not fragment:
            return []
        if self._first_fragment:
            self._first_fragment = False
            if not fragment.strip():
                return []

        chunks: list[TypedChunk] = []
        start = 0
        while start < len(fragment):
            end = fragment.find("\n", start)
            if end == -1:
                self._handle(fragment[start:], False, chunks)
                break
            self._handle(fragment[start:end] + "\n", True, chunks)
            self._outputting = False
            start = end + 1
        return chunks

    def flush(self) -> list[TypedChunk]:
        """Emit whatever is still buffered at the end of the stream."""
        chunks: list[TypedChunk] = []
        if self._buffer:
            self._emit(chunks)
        self._outputting = False
        return chunks

    async def classify(self, fragments: AsyncIterator[str]) -> AsyncIterator[TypedChunk]:
        async for fragment in fragments:
            for chunk in self.feed(fragment):
                yield chunk
        for chunk in self.flush():
            yield chunk

    def _handle(self, text: str, line_complete: bool, chunks: list[TypedChunk]) -> None:
        self._buffer += text
        if self._outputting:
            self._emit(chunks)
            return

        match = _MARKER_RE.match(self._buffer)
        if match and len(self._buffer) > len(match.group(1)):
            self.current_type = _MARKERS[match.group(1).upper()]
            self._outputting = True
            self._buffer = self._buffer[match.end():]
        elif len(self._buffer) > _LOCK_LENGTH:
            self._outputting = True

        if self._outputting or line_complete:
            self._emit(chunks)

    def _emit(self, chunks: list[TypedChunk]) -> None:
        if self._buffer and not (self.hide_action and self.current_type is ContentType.ACTION):
            chunks.append(TypedChunk(self.current_type, self._buffer))
        self._buffer = ""
