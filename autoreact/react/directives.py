"""Directive grammar parser.

A model that does not use structured tool calls writes directives:

    THINK: <reasoning>
    ACTION: ToolName("arg", 1, true)
    ANSWER: <final answer>      (or DONE: <...>)
    ASK: <question for the user>

Markers accept an ASCII or a full-width colon. Everything here is a pure
function over text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

THINK = "THINK"
ACTION = "ACTION"
ANSWER = "ANSWER"
ASK = "ASK"
DONE = "DONE"
OBSERVE = "OBSERVE"

DEFAULT_THOUGHT = "Execute operation"

_COMPLETION_RE = re.compile(rf"^(?:{ANSWER}|{DONE})[:：]")
_ASK_LINE_RE = re.compile(rf"^{ASK}[:：]")

_THOUGHT_RE = re.compile(rf"{THINK}[:：]\s*(.+?)(?=\n{ACTION}|\n{ANSWER}|\n{ASK}|$)", re.DOTALL)
_ACTION_RE = re.compile(
    rf"{ACTION}[:：]\s*\[?(.+?)\]?(?=\n{THINK}|\n{OBSERVE}|\n{ANSWER}|\n{ASK}|$)", re.DOTALL
)
_ASK_RE = re.compile(rf"{ASK}[:：]\s*(.+?)(?=\n{THINK}|\n{ACTION}|\n{ANSWER}|$)", re.DOTALL)
_DIRECT_ACTION_RE = re.compile(rf"{ACTION}[:：]\s*([\w.$]+\([^)]*\))", re.DOTALL)
_ACTION_CALL_RE = re.compile(r"([\w.$\-\u4e00-\u9fa5]+)\((.*)\)", re.DOTALL)
_ACTION_ALT_RE = re.compile(r"([\w.$\-\u4e00-\u9fa5]+)\s*,\s*(.+)", re.DOTALL)

_BRACKETS_RE = re.compile(r"^\[|\]$")
_LINE_MARKER_RE = re.compile(rf"^(?:{THINK}|{ACTION}|{ANSWER}|{OBSERVE}|{DONE})[:：]?\s*")
_INT_RE = re.compile(r"-?\d+")
_FLOAT_RE = re.compile(r"-?\d+\.\d+")


@dataclass
class ParsedDirective:
    """Thought and action extracted from one model reply.

    A thought beginning with "ASK:" marks an interrupting question.
    """

    thought: str | None = None
    action: str | None = None

    @property
    def is_ask(self) -> bool:
        return self.thought is not None and self.thought.startswith(f"{ASK}:")


@dataclass
class ActionCall:
    """A parsed `Name(args...)` action."""

    tool_name: str
    raw_args: str
    args: list[Any] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Terminal markers
# ---------------------------------------------------------------------------


def is_final_answer(content: str | None) -> bool:
    """True when any line starts (after whitespace) with ANSWER: or DONE:."""
    if not content:
        return False
    return any(_COMPLETION_RE.match(line.strip()) for line in content.split("\n"))


def is_interruption_by_ask(content: str | None) -> bool:
    """True when any line starts (after whitespace) with ASK:."""
    if not content:
        return False
    return any(_ASK_LINE_RE.match(line.strip()) for line in content.split("\n"))


def extract_final_answer(content: str) -> str:
    """Text after the first ANSWER:/DONE: marker through the end of the reply."""
    lines = content.replace("\r\n", "\n").split("\n")
    for i, line in enumerate(lines):
        stripped = line.strip()
        match = _COMPLETION_RE.match(stripped)
        if match:
            rest = [stripped[match.end():]] + lines[i + 1:]
            return "\n".join(rest).strip()
    return content.strip()


def extract_question(content: str) -> str:
    """The question text of an ASK: directive, or the whole reply."""
    match = _ASK_RE.search(content.replace("\r\n", "\n").strip())
    if match:
        return match.group(1).strip()
    return content.strip()


# ---------------------------------------------------------------------------
# Thought / action
# ---------------------------------------------------------------------------


def _strip_brackets(text: str) -> str:
    return _BRACKETS_RE.sub("", text)


def parse_directive(text: str | None) -> ParsedDirective:
    """Extract thought and action from a free-text reply.

    Order: ASK, THINK+ACTION, THINK only (with an ACTION right after it),
    ACTION only (thought inferred), `ACTION: name(...)` anywhere, and
    finally the whole text as a thought.
    """
    if text is None or not text.strip():
        return ParsedDirective()

    normalized = text.replace("\r\n", "\n").strip()

    ask = _ASK_RE.search(normalized)
    if ask:
        return ParsedDirective(thought=f"{ASK}:" + ask.group(1).strip())

    thought_match = _THOUGHT_RE.search(normalized)
    action_match = _ACTION_RE.search(normalized)
    thought = thought_match.group(1).strip() if thought_match else None
    action = _strip_brackets(action_match.group(1).strip()) if action_match else None

    if thought is not None and action is not None:
        return ParsedDirective(thought, action)

    if thought is not None:
        after = normalized[thought_match.end():].strip()
        if after.startswith(ACTION):
            colon = after.find(":")
            if colon >= 0:
                action = _strip_brackets(after[colon + 1:].strip())
        return ParsedDirective(thought, action)

    if action is not None:
        before = normalized[:action_match.start()].strip()
        if before and (before.endswith(THINK) or before.endswith(f"{THINK}:")):
            newline = before.rfind("\n")
            thought = before[newline + 1:].strip() if newline >= 0 else before
            colon = thought.find(":")
            if colon >= 0:
                thought = thought[colon + 1:].strip()
        return ParsedDirective(thought or DEFAULT_THOUGHT, action)

    direct = _DIRECT_ACTION_RE.search(normalized)
    if direct:
        return ParsedDirective(_thought_from_context(normalized, direct.group(0)), direct.group(1))

    return ParsedDirective(thought=normalized)


def _thought_from_context(full_text: str, action_text: str) -> str:
    """Last non-empty line before the action, minus any marker prefix."""
    index = full_text.find(action_text)
    if index <= 0:
        return DEFAULT_THOUGHT
    for line in reversed(full_text[:index].strip().split("\n")):
        line = _LINE_MARKER_RE.sub("", line.strip())
        if line:
            return line
    return DEFAULT_THOUGHT


# ---------------------------------------------------------------------------
# Action call and arguments
# ---------------------------------------------------------------------------


def parse_action_call(action_text: str) -> ActionCall | None:
    """Parse `Name(args)` or the fallback `Name, literal`."""
    match = _ACTION_CALL_RE.search(action_text)
    if match is None:
        match = _ACTION_ALT_RE.search(action_text)
        if match is None:
            return None
    name, raw_args = match.group(1), match.group(2)
    return ActionCall(name, raw_args, parse_action_args(raw_args))


def normalize_action_key(action: str | None) -> str:
    """Callee name of an action, used to detect repeated failures."""
    if not action:
        return ""
    match = _ACTION_CALL_RE.search(action)
    if match:
        return match.group(1)
    return action.split("(")[0].strip()


def parse_action_args(args: str | None) -> list[Any]:
    """JSON array parse first, then a quote/bracket-aware comma split."""
    if args is None or not args.strip():
        return []
    trimmed = args.strip()
    try:
        parsed = json.loads(f"[{trimmed}]")
    except json.JSONDecodeError:
        pass
    else:
        return parsed
    return [parse_primitive(part) for part in _split_args(trimmed)]


def _split_args(text: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    depth = 0

    for i, ch in enumerate(text):
        if ch in "\"'" and (i == 0 or text[i - 1] != "\\"):
            if quote is None:
                quote = ch
            elif ch == quote:
                quote = None
            current.append(ch)
        elif ch in "([{":
            depth += 1
            current.append(ch)
        elif ch in ")]}":
            depth -= 1
            current.append(ch)
        elif ch == "," and quote is None and depth == 0:
            piece = "".join(current).strip()
            if piece:
                parts.append(piece)
            current = []
        else:
            current.append(ch)

    piece = "".join(current).strip()
    if piece:
        parts.append(piece)
    return parts


def parse_primitive(part: str | None) -> Any:
    """Unquote strings; map true/false/null, integers and decimals."""
    if part is None:
        return None
    value = part.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    lower = value.lower()
    if lower == "true":
        return True
    if lower == "false":
        return False
    if lower == "null":
        return None
    if _INT_RE.fullmatch(value):
        return int(value)
    if _FLOAT_RE.fullmatch(value):
        return float(value)
    return value
