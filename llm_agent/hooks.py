"""Tool-level observability hooks.

Attach callbacks for logging, metrics or tracing. All fields are optional;
set only the ones you need. The agent loop behaves identically without
hooks.

    hooks = ToolHooks(
        on_tool_start=lambda call, tool: print(f"-> {call.name}"),
        on_tool_error=lambda call, err: print(f"!! {call.name}: {err}"),
    )
    config = AgentConfig(model=model, tools=(search,), hooks=hooks)

Callbacks may be plain functions or coroutine functions.
"""

from __future__ import annotations

import inspect
import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from llm_agent.messages import ToolCall

if TYPE_CHECKING:
    from llm_agent.tools import ToolDefinition


@dataclass(frozen=True)
class ToolHooks:
    """Callbacks fired around every dispatched tool call.

    Attributes:
        on_tool_start: ``(call, tool) -> None``. ``tool`` is None when the
            name didn't resolve.
        on_tool_end: ``(call, content) -> None`` with the serialized result.
        on_tool_error: ``(call, error) -> None`` for unresolved tools,
            validation failures and raised exceptions.
    """

    on_tool_start: Callable[[ToolCall, "ToolDefinition | None"], Any] | None = None
    on_tool_end: Callable[[ToolCall, str], Any] | None = None
    on_tool_error: Callable[[ToolCall, BaseException], Any] | None = None


async def _fire(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def fire_tool_start(hooks: ToolHooks | None, call: ToolCall, tool: "ToolDefinition | None") -> None:
    if hooks is not None:
        await _fire(hooks.on_tool_start, call, tool)


async def fire_tool_end(hooks: ToolHooks | None, call: ToolCall, content: str) -> None:
    if hooks is not None:
        await _fire(hooks.on_tool_end, call, content)


async def fire_tool_error(hooks: ToolHooks | None, call: ToolCall, error: BaseException) -> None:
    if hooks is not None:
        await _fire(hooks.on_tool_error, call, error)


def logging_hooks(logger: logging.Logger | None = None, level: int = logging.INFO) -> ToolHooks:
    """Hooks that log one line per tool event."""
    log = logger or logging.getLogger("llm_agent.tools.trace")

    def _start(call: ToolCall, tool: "ToolDefinition | None") -> None:
        log.log(level, "TOOL_START id=%s tool=%s args=%s", call.id, call.name, json.dumps(call.args, default=str))

    def _end(call: ToolCall, content: str) -> None:
        log.log(level, "TOOL_END id=%s tool=%s chars=%d", call.id, call.name, len(content))

    def _error(call: ToolCall, error: BaseException) -> None:
        log.log(max(level, logging.WARNING), "TOOL_ERROR id=%s tool=%s error=%s", call.id, call.name, error)

    return ToolHooks(on_tool_start=_start, on_tool_end=_end, on_tool_error=_error)


def jsonl_hooks(path: str | Path) -> ToolHooks:
    """Hooks that append one JSON record per tool event to ``path``."""
    target = Path(path)
    lock = threading.Lock()

    def _write(event: str, call: ToolCall, **extra: Any) -> None:
        record = {
            "timestamp": time.time(),
            "event": event,
            "tool_call_id": call.id,
            "tool": call.name,
            **extra,
        }
        line = json.dumps(record, default=str) + "\n"
        with lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("a", encoding="utf-8") as fh:
                fh.write(line)

    return ToolHooks(
        on_tool_start=lambda call, tool: _write("tool_start", call, args=call.args, resolved=tool is not None),
        on_tool_end=lambda call, content: _write("tool_end", call, result_chars=len(content)),
        on_tool_error=lambda call, error: _write(
            "tool_error", call, error=str(error), error_type=type(error).__name__,
        ),
    )
