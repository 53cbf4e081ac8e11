"""Built-in tools: runtime diagnostics and a demo adder.

Diagnostics report on the threads and asyncio tasks of the running
process so the model can answer "what is the server doing" questions.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any

from autoreact.api.tools import ToolParam, ToolRegistry, ToolReturn
from autoreact.config import Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_TASKS_LISTED = 200
_MAX_STACK_FRAMES = 10

_STARTED_AT = time.monotonic()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _task_state(task: asyncio.Task) -> str:
    if task.cancelled():
        return "cancelled"
    if task.done():
        return "done"
    return "pending"


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def runtime_summary() -> dict[str, Any]:
    """Counts of threads and asyncio tasks plus interpreter facts."""
    threads = threading.enumerate()
    tasks = asyncio.all_tasks()
    return {
        "timestamp": _timestamp(),
        "python": sys.version.split()[0],
        "uptimeSeconds": round(time.monotonic() - _STARTED_AT, 1),
        "totalThreads": len(threads),
        "daemonThreads": sum(1 for t in threads if t.daemon),
        "totalTasks": len(tasks),
        "pendingTasks": sum(1 for t in tasks if not t.done()),
    }


async def task_dump(include_stack: bool = False, name_filter: str | None = None) -> dict[str, Any]:
    """List asyncio tasks, optionally with the top of each coroutine stack.

    Args:
        include_stack: Include up to _MAX_STACK_FRAMES frames per task
        name_filter: Only tasks whose name contains this substring
    """
    tasks = sorted(asyncio.all_tasks(), key=lambda t: t.get_name())
    if name_filter:
        tasks = [t for t in tasks if name_filter in t.get_name()]

    details = []
    states: dict[str, int] = {}
    for task in tasks:
        state = _task_state(task)
        states[state] = states.get(state, 0) + 1
        if len(details) >= _MAX_TASKS_LISTED:
            continue
        entry: dict[str, Any] = {"name": task.get_name(), "state": state}
        coro = task.get_coro()
        if coro is not None:
            entry["coroutine"] = getattr(coro, "__qualname__", repr(coro))
        if include_stack:
            entry["stack"] = [
                f"{frame.f_code.co_filename}:{frame.f_lineno} {frame.f_code.co_name}"
                for frame in task.get_stack(limit=_MAX_STACK_FRAMES)
            ]
        details.append(entry)

    return {
        "timestamp": _timestamp(),
        "totalTasks": len(tasks),
        "stateDistribution": states,
        "truncated": len(tasks) > _MAX_TASKS_LISTED,
        "tasks": details,
    }


def demo_add(a: float, b: float) -> float:
    """Add two numbers; integral results come back as int."""
    total = a + b
    if isinstance(total, float) and total.is_integer():
        return int(total)
    return total


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: ToolRegistry, settings: Settings) -> None:
    """Register the diagnostics tools, and demo.add when the demo model is on."""
    registry.tool(
        "system.runtime_summary",
        "Get a summary of the server runtime: thread and asyncio task counts, uptime, Python version",
        returns=ToolReturn("object", "Runtime summary"),
    )(runtime_summary)

    registry.tool(
        "system.task_dump",
        "List the asyncio tasks of the server with their state, optionally with stack frames",
        params=[
            ToolParam("include_stack", "boolean", "Include coroutine stack frames", required=False, example=False),
            ToolParam("name_filter", "string", "Only list tasks whose name contains this text", required=False),
        ],
        returns=ToolReturn("object", "Task dump"),
    )(task_dump)

    if settings.demo_model_enabled:
        registry.tool(
            "demo.add",
            "Add two numbers",
            params=[
                ToolParam("a", "number", "First addend", example=2),
                ToolParam("b", "number", "Second addend", example=3),
            ],
            returns=ToolReturn("number", "Sum of a and b"),
            request_example='demo.add(2, 3)',
        )(demo_add)

    logger.info("Registered %d built-in tools", len(registry))
