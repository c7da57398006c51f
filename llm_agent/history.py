"""Chat history stores and history helpers.

The agent loop only needs two operations from a store, both async:

    await store.aget_messages()          # ordered list[Message]
    await store.aadd_messages([m1, m2])  # append, atomic per call

A store is single-writer: give each concurrent agent invocation its own
instance. Nothing here locks across invocations.
"""

from __future__ import annotations

import asyncio
import json
import logging
import warnings
from pathlib import Path
from typing import Iterable, Protocol, runtime_checkable

from llm_agent.messages import (
    MESSAGE_ADAPTER,
    AIMessage,
    FunctionMessage,
    Message,
    ToolMessage,
)

logger = logging.getLogger(__name__)

_SUCCESS_CONTENT = json.dumps({"success": True}, separators=(",", ":"))


@runtime_checkable
class HistoryStore(Protocol):
    """Append-only ordered message log supplied by the caller."""

    async def aget_messages(self) -> list[Message]: ...
    async def aadd_messages(self, messages: Iterable[Message]) -> None: ...


class InMemoryHistory:
    """List-backed history store."""

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: list[Message] = list(messages or [])

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    async def aget_messages(self) -> list[Message]:
        return list(self._messages)

    async def aadd_messages(self, messages: Iterable[Message]) -> None:
        self._messages.extend(messages)

    async def aadd_message(self, message: Message) -> None:
        self._messages.append(message)

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)


class JsonlHistory:
    """History persisted as one JSON record per message.

    Appends are written in a worker thread so the event loop never blocks on
    disk I/O.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read(self) -> list[Message]:
        if not self.path.exists():
            return []
        messages: list[Message] = []
        with self.path.open(encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    messages.append(MESSAGE_ADAPTER.validate_json(line))
                except ValueError:
                    logger.warning("Skipping malformed history record %s:%d", self.path, lineno)
        return messages

    def _append(self, messages: list[Message]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = "".join(m.model_dump_json() + "\n" for m in messages)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(payload)

    async def aget_messages(self) -> list[Message]:
        return await asyncio.to_thread(self._read)

    async def aadd_messages(self, messages: Iterable[Message]) -> None:
        batch = list(messages)
        if batch:
            await asyncio.to_thread(self._append, batch)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def clean_history(messages: Iterable[Message]) -> list[Message]:
    """Drop empty text blocks from list-shaped AI content.

    Providers reject blank text blocks, which some models emit alongside
    tool calls. Returns copies; the input messages are not modified.
    """
    cleaned: list[Message] = []
    for message in messages:
        if isinstance(message, AIMessage) and not isinstance(message.content, str):
            blocks = [
                block
                for block in message.content
                if block.get("type") != "text" or str(block.get("text", "")).strip()
            ]
            if len(blocks) != len(message.content):
                message = message.model_copy(update={"content": blocks})
        cleaned.append(message)
    return cleaned


async def record_tool_calls(history: HistoryStore, message: AIMessage) -> AIMessage:
    """Record each tool call of ``message`` as an acknowledged exchange.

    Appends, per call, an AIMessage carrying only that call followed by a
    success ToolMessage. Used when a model is driven for structured output
    through tool calls rather than through the agent loop. Returns
    ``message`` unchanged so it can sit at the end of a pipeline.
    """
    records: list[Message] = []
    for call in message.tool_calls:
        records.append(AIMessage(content="", tool_calls=[call]))
        records.append(
            ToolMessage(content=_SUCCESS_CONTENT, tool_call_id=call.id, name=call.name)
        )
    await history.aadd_messages(records)
    return message


async def record_function_calls(history: HistoryStore, message: AIMessage) -> AIMessage:
    """Deprecated: record tool calls with the legacy function-message shape.

    Use record_tool_calls instead.
    """
    warnings.warn(
        "record_function_calls is deprecated; use record_tool_calls",
        DeprecationWarning,
        stacklevel=2,
    )
    records: list[Message] = [message]
    records.extend(
        FunctionMessage(content=_SUCCESS_CONTENT, name=call.name) for call in message.tool_calls
    )
    await history.aadd_messages(records)
    return message
