"""Session compression -- summarize the older dialogue span when the history
grows past a token budget.

The token estimate is a character-class heuristic, not a tokenizer:
ceil((CJK + other chars) / 1.5) + ceil((ASCII letters + spaces) / 4).
Thresholds in Settings are tuned against this formula.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from autoreact.api.llm import ChatModel
from autoreact.api.models import ChatCompletionRequest, ChatMessage
from autoreact.config import Settings

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompt
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarization assistant, responsible for compressing conversation history while preserving key information.

Requirements:
1. Extract the user's main questions and requirements
2. Summarize the assistant's important responses and actions taken
3. Retain key data and decision points
4. Remove redundant conversational content
5. Output a concise summary in paragraph format
6. Do not include procedural details or tool calls

Format: Provide a summary that helps continue the conversation seamlessly.
"""

SUMMARY_REQUEST_PREFIX = "Please compress the following dialog history and extract key information:\n\n"
SUMMARY_OPEN = "[Dialog History Summary]"
SUMMARY_CLOSE = "[End of Summary]"

_PROCESS_PREFIXES = ("THINK:", "ACTION:", "OBSERVE:", "Thinking", "Action", "Observation")


# ------------------------------------------------------------------
# Token estimate
# ------------------------------------------------------------------


def estimate_tokens(text: str | None) -> int:
    """Character-class token estimate."""
    if not text:
        return 0
    cjk = english = other = 0
    for ch in text:
        if "\u4e00" <= ch <= "\u9fff":
            cjk += 1
        elif ("a" <= ch <= "z") or ("A" <= ch <= "Z") or ch == " ":
            english += 1
        else:
            other += 1
    return math.ceil((cjk + other) / 1.5) + math.ceil(english / 4)


def estimate_messages(messages: Sequence[ChatMessage]) -> int:
    return sum(estimate_tokens(m.content) for m in messages)


def dialogue_tokens(messages: Sequence[ChatMessage]) -> int:
    """Estimate over non-system messages only."""
    return sum(estimate_tokens(m.content) for m in messages if m.role != "system")


def simplify_assistant_message(content: str | None) -> str:
    """Drop THINK/ACTION/OBSERVE process lines, keep everything else."""
    if not content or not content.strip():
        return ""
    kept = []
    for line in content.split("\n"):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith(_PROCESS_PREFIXES):
            continue
        kept.append(trimmed)
    return "\n".join(kept).strip()


def is_summary_message(message: ChatMessage) -> bool:
    return message.role == "assistant" and (message.content or "").startswith(SUMMARY_OPEN)


# ------------------------------------------------------------------
# Compressor
# ------------------------------------------------------------------


class SessionCompressor:
    """Rewrites a session as: system messages + one summary + recent tail."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def should_compress(self, messages: Sequence[ChatMessage]) -> bool:
        if not self._settings.enable_compression:
            return False
        return dialogue_tokens(messages) >= self._settings.compression_threshold_tokens

    def split(self, messages: Sequence[ChatMessage]) -> tuple[list[ChatMessage], list[ChatMessage], list[ChatMessage]]:
        """Return (system, older, recent).

        Walks the dialogue from newest to oldest keeping messages while the
        keep-recent budget allows; the first message that does not fit and
        everything before it form the older span.
        """
        system = [m for m in messages if m.role == "system"]
        dialogue = [m for m in messages if m.role != "system"]
        budget = self._settings.keep_recent_tokens

        accumulated = 0
        cut = 0
        for i in range(len(dialogue) - 1, -1, -1):
            tokens = estimate_tokens(dialogue[i].content)
            if accumulated + tokens > budget:
                cut = i + 1
                break
            accumulated += tokens
        # The message at cut-1 overflowed the budget; it joins the older span.
        return system, dialogue[:cut], dialogue[cut:]

    async def compress(
        self, session_id: str, messages: list[ChatMessage], model: ChatModel
    ) -> list[ChatMessage] | None:
        """Compressed history, or None when compression is skipped or fails."""
        if not messages:
            return None
        try:
            system, older, recent = self.split(messages)
            total = estimate_messages(older) + estimate_messages(recent)
            if total <= self._settings.keep_recent_tokens * 1.5 or not older:
                return None

            summary = await self._summarize(older, model)
            if not summary or not summary.strip():
                logger.warning("Empty compression summary for session %s, keeping history", session_id)
                return None

            compressed = list(system)
            compressed.append(ChatMessage.assistant(f"{SUMMARY_OPEN}\n{summary}\n{SUMMARY_CLOSE}"))
            compressed.extend(recent)

            after = dialogue_tokens(compressed)
            logger.info(
                "Compressed session %s: %d -> %d tokens (%.1f%% reduction), %d messages -> %d",
                session_id,
                total,
                after,
                (1 - after / total) * 100,
                len(messages),
                len(compressed),
            )
            if after > self._settings.max_tokens_after_compression:
                logger.warning(
                    "Session %s still at %d tokens after compression (limit %d)",
                    session_id,
                    after,
                    self._settings.max_tokens_after_compression,
                )
            return compressed
        except Exception:
            logger.exception("Compression failed for session %s, continuing uncompressed", session_id)
            return None

    async def _summarize(self, older: Sequence[ChatMessage], model: ChatModel) -> str | None:
        lines = []
        for message in older:
            if message.role == "user":
                lines.append(f"User: {message.content}")
            elif message.role == "assistant":
                lines.append(f"Assistant: {simplify_assistant_message(message.content)}")
        dialog_text = "\n".join(lines) + "\n" if lines else ""

        request = ChatCompletionRequest(
            model=model.name,
            messages=[
                ChatMessage.system(SUMMARY_SYSTEM_PROMPT),
                ChatMessage.user(SUMMARY_REQUEST_PREFIX + dialog_text),
            ],
            temperature=self._settings.compression_temperature,
            max_tokens=self._settings.compression_max_tokens,
        )
        response = await model.chat(request)
        message = response.first_message()
        return message.content if message is not None else None
