"""Merge streamed model fragments into an AIMessage.

Text concatenates in arrival order. Tool-call fragments accumulate per call
(keyed by stream index, falling back to id) with name and argument strings
concatenated until the arguments parse as a JSON object.

Flicker avoidance: once a fragment carrying tool-call data has been seen,
snapshots are only surfaced when at least one call is complete, and calls
still being built are left out of the snapshot. Consumers never observe a
tool call with half-streamed arguments.

    acc = StreamAccumulator()
    async for snapshot in acc.aiter_snapshots(bound_model.stream(messages)):
        render(snapshot)
    message = acc.finalize()
"""

from __future__ import annotations

import json as _json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator

from llm_agent.messages import (
    AIMessage,
    AIMessageChunk,
    Content,
    InvalidToolCall,
    ToolCall,
    ToolCallChunk,
    content_text,
)

logger = logging.getLogger(__name__)


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _parse_args(raw: str) -> dict[str, Any] | None:
    """Parse complete JSON-object arguments, or None while still partial."""
    if not raw.strip():
        return None
    try:
        value = _json.loads(raw)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def _merge_blocks(left: list[dict[str, Any]], right: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged = [dict(b) for b in left]
    for block in right:
        idx = block.get("index")
        target = None
        if idx is not None:
            target = next((b for b in merged if b.get("index") == idx), None)
        if target is not None and block.get("type") == "text" and target.get("type") == "text":
            target["text"] = str(target.get("text", "")) + str(block.get("text", ""))
        else:
            merged.append(dict(block))
    return merged


def merge_content(left: Content, right: Content) -> Content:
    """Concatenate two content values, promoting to blocks when either is a list."""
    if isinstance(left, str) and isinstance(right, str):
        return left + right
    left_blocks = [{"type": "text", "text": left}] if isinstance(left, str) and left else left
    right_blocks = [{"type": "text", "text": right}] if isinstance(right, str) and right else right
    return _merge_blocks(list(left_blocks or []), list(right_blocks or []))


@dataclass
class _PendingCall:
    index: int | None
    id: str | None
    name: str = ""
    args: str = ""


class StreamAccumulator:
    """Running merge of one model turn's fragments."""

    def __init__(self) -> None:
        self._content: Content = ""
        self._calls: list[_PendingCall] = []
        self.tool_call_detected = False
        self.fragment_count = 0

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def _find_call(self, chunk: ToolCallChunk) -> _PendingCall | None:
        if chunk.index is not None:
            return next((c for c in self._calls if c.index == chunk.index), None)
        if chunk.id:
            return next((c for c in self._calls if c.id == chunk.id), None)
        # Bare continuation fragment: extends the call currently streaming.
        return self._calls[-1] if self._calls else None

    def _merge_call(self, chunk: ToolCallChunk) -> None:
        pending = self._find_call(chunk)
        if pending is None:
            pending = _PendingCall(index=chunk.index, id=chunk.id)
            self._calls.append(pending)
        # A header fragment repeating a known id and its full name is a resend
        resent = bool(chunk.id) and chunk.id == pending.id and chunk.name == pending.name
        if chunk.id and not pending.id:
            pending.id = chunk.id
        if chunk.name and not resent:
            pending.name += chunk.name
        if chunk.args:
            pending.args += chunk.args

    def add(self, chunk: AIMessageChunk) -> AIMessage | None:
        """Merge one fragment. Returns a snapshot when it is safe to show."""
        self.fragment_count += 1
        self._content = merge_content(self._content, chunk.content)
        for tc_chunk in chunk.tool_call_chunks:
            self._merge_call(tc_chunk)
        if chunk.tool_call_chunks:
            self.tool_call_detected = True

        if self.tool_call_detected:
            complete = self._complete_calls()
            if not complete:
                return None
            return AIMessage(content=self._content_copy(), tool_calls=complete)

        if not content_text(self._content):
            return None
        return AIMessage(content=self._content_copy())

    async def aiter_snapshots(self, fragments: AsyncIterator[AIMessageChunk]) -> AsyncIterator[AIMessage]:
        """Consume ``fragments`` in order, yielding each safe snapshot."""
        async for chunk in fragments:
            snapshot = self.add(chunk)
            if snapshot is not None:
                yield snapshot

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _content_copy(self) -> Content:
        if isinstance(self._content, str):
            return self._content
        return [dict(b) for b in self._content]

    def _ensure_id(self, pending: _PendingCall) -> str:
        if not pending.id:
            pending.id = new_tool_call_id()
        return pending.id

    def _complete_calls(self) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for position, pending in enumerate(self._calls):
            args = _parse_args(pending.args)
            if pending.name and args is not None:
                calls.append(ToolCall(
                    id=self._ensure_id(pending), name=pending.name, args=args, index=position,
                ))
        return calls

    def finalize(self) -> AIMessage:
        """Build the fully merged message once the fragment stream has ended.

        Empty argument strings become ``{}``; anything that still doesn't
        parse to a JSON object is reported as an InvalidToolCall.
        """
        tool_calls: list[ToolCall] = []
        invalid: list[InvalidToolCall] = []
        for position, pending in enumerate(self._calls):
            call_id = self._ensure_id(pending)
            if not pending.name:
                invalid.append(InvalidToolCall(
                    id=call_id, name="", args=pending.args,
                    error="Tool call is missing a name.", index=position,
                ))
                continue
            if not pending.args.strip():
                tool_calls.append(ToolCall(id=call_id, name=pending.name, args={}, index=position))
                continue
            try:
                args = _json.loads(pending.args)
            except ValueError as exc:
                args = None
                error = f"Invalid JSON arguments: {exc}"
            else:
                error = f"Arguments must be a JSON object, got {type(args).__name__}."
            if isinstance(args, dict):
                tool_calls.append(ToolCall(id=call_id, name=pending.name, args=args, index=position))
            else:
                logger.warning("Unparseable arguments for tool call %s (%s): %s", call_id, pending.name, error)
                invalid.append(InvalidToolCall(
                    id=call_id, name=pending.name, args=pending.args, error=error, index=position,
                ))
        return AIMessage(
            content=self._content_copy(),
            tool_calls=tool_calls,
            invalid_tool_calls=invalid,
        )
