"""Conversation message model.

Pure data, no behavior beyond conversion. Every message carries a literal
``type`` tag so a ``list[Message]`` round-trips through JSON:

    HumanMessage: user turn (text or content blocks)
    SystemMessage: caller-supplied instructions
    AIMessage: model turn, optionally with ordered tool calls
    ToolMessage: result of exactly one ToolCall (status success|error)
    FunctionMessage: legacy tool-result shape, only produced by
        history.record_function_calls

AIMessageChunk/ToolCallChunk are the incremental fragments a streaming model
yields; streaming.StreamAccumulator merges them into an AIMessage.
"""

from __future__ import annotations

import json as _json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

Content = Union[str, list[dict[str, Any]]]


def content_text(content: Content) -> str:
    """Join the text of a string or a list of content blocks."""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content:
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            parts.append(block["text"])
    return "".join(parts)


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    """A structured request from the model to run one tool."""

    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    # Position among the message's calls as streamed; None when unknown
    index: int | None = None


class InvalidToolCall(BaseModel):
    """A streamed tool call whose arguments never became a JSON object."""

    id: str
    name: str
    args: str = ""
    error: str = ""
    index: int | None = None


class ToolCallChunk(BaseModel):
    """Incremental tool-call data. Fragments with the same index (or id) merge."""

    index: int | None = None
    id: str | None = None
    name: str | None = None
    args: str | None = None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class HumanMessage(BaseModel):
    type: Literal["human"] = "human"
    content: Content

    @property
    def text(self) -> str:
        return content_text(self.content)


class SystemMessage(BaseModel):
    type: Literal["system"] = "system"
    content: str


class AIMessage(BaseModel):
    type: Literal["ai"] = "ai"
    content: Content = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    invalid_tool_calls: list[InvalidToolCall] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return content_text(self.content)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls or self.invalid_tool_calls)

    def ordered_tool_calls(self) -> list[ToolCall | InvalidToolCall]:
        """Valid and invalid calls together, in the order the model emitted them.

        Falls back to valid-then-invalid when a call has no stream position.
        """
        calls: list[ToolCall | InvalidToolCall] = [*self.tool_calls, *self.invalid_tool_calls]
        if all(c.index is not None for c in calls):
            calls.sort(key=lambda c: c.index)
        return calls


class ToolMessage(BaseModel):
    type: Literal["tool"] = "tool"
    content: str
    tool_call_id: str
    name: str
    status: Literal["success", "error"] = "success"


class FunctionMessage(BaseModel):
    type: Literal["function"] = "function"
    content: str
    name: str


class AIMessageChunk(BaseModel):
    """One fragment of a streamed model response."""

    content: Content = ""
    tool_call_chunks: list[ToolCallChunk] = Field(default_factory=list)


Message = Annotated[
    Union[HumanMessage, SystemMessage, AIMessage, ToolMessage, FunctionMessage],
    Field(discriminator="type"),
]

MESSAGE_ADAPTER: TypeAdapter[Message] = TypeAdapter(Message)
MESSAGE_LIST_ADAPTER: TypeAdapter[list[Message]] = TypeAdapter(list[Message])

_MESSAGE_TYPES = (HumanMessage, SystemMessage, AIMessage, ToolMessage, FunctionMessage)

_ROLE_ALIASES: dict[str, str] = {
    "user": "human",
    "human": "human",
    "system": "system",
    "assistant": "ai",
    "ai": "ai",
    "tool": "tool",
    "function": "function",
}


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _tool_calls_from_openai(raw: list[dict[str, Any]]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for tc in raw:
        fn = tc.get("function", {})
        args = fn.get("arguments", "{}")
        if isinstance(args, str):
            args = _json.loads(args) if args.strip() else {}
        calls.append(ToolCall(id=tc.get("id", ""), name=fn.get("name", ""), args=args))
    return calls


def _message_from_dict(data: dict[str, Any]) -> Message:
    if "type" in data and "role" not in data:
        return MESSAGE_ADAPTER.validate_python(data)

    role = _ROLE_ALIASES.get(str(data.get("role", "")).lower())
    if role is None:
        raise ValueError(f"Unknown message role: {data.get('role')!r}")
    content = data.get("content")
    if role == "human":
        return HumanMessage(content=content or "")
    if role == "system":
        return SystemMessage(content=content or "")
    if role == "ai":
        raw_calls = data.get("tool_calls") or []
        if raw_calls and "function" in raw_calls[0]:
            tool_calls = _tool_calls_from_openai(raw_calls)
        else:
            tool_calls = [ToolCall.model_validate(tc) for tc in raw_calls]
        return AIMessage(content=content or "", tool_calls=tool_calls)
    if role == "tool":
        return ToolMessage(
            content=content or "",
            tool_call_id=data.get("tool_call_id", ""),
            name=data.get("name", ""),
            status=data.get("status", "success"),
        )
    return FunctionMessage(content=content or "", name=data.get("name", ""))


def coerce_message(value: Any) -> Message:
    """Turn a message-like value into a Message.

    Accepts a Message, a plain string (human turn), a ``(role, content)``
    tuple, or a dict in either OpenAI (``role``) or serialized (``type``) form.
    """
    if isinstance(value, _MESSAGE_TYPES):
        return value
    if isinstance(value, str):
        return HumanMessage(content=value)
    if isinstance(value, tuple) and len(value) == 2:
        role, content = value
        return _message_from_dict({"role": role, "content": content})
    if isinstance(value, dict):
        return _message_from_dict(value)
    raise ValueError(f"Cannot coerce {type(value).__name__} to a message: {value!r}")


def coerce_messages(value: Any) -> list[Message]:
    """Coerce agent input (a message-like or a list of them) to a message list."""
    if isinstance(value, (list, tuple)) and not (
        isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], str)
    ):
        return [coerce_message(item) for item in value]
    return [coerce_message(value)]


# ---------------------------------------------------------------------------
# Wire format (OpenAI / litellm chat completions)
# ---------------------------------------------------------------------------


def to_openai_message(message: Message) -> dict[str, Any]:
    """Render a message as a litellm chat-completion dict."""
    if isinstance(message, HumanMessage):
        return {"role": "user", "content": message.content}
    if isinstance(message, SystemMessage):
        return {"role": "system", "content": message.content}
    if isinstance(message, AIMessage):
        out: dict[str, Any] = {"role": "assistant", "content": message.content or None}
        # Invalid calls are still answered by a tool message, so the provider
        # must see their ids too. Their raw text stays out of the request:
        # some providers re-parse the arguments and reject the whole turn.
        wire_calls = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": _json.dumps(tc.args) if isinstance(tc, ToolCall) else "{}",
                },
            }
            for tc in message.ordered_tool_calls()
        ]
        if wire_calls:
            out["tool_calls"] = wire_calls
        return out
    if isinstance(message, ToolMessage):
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "name": message.name,
            "content": message.content,
        }
    if isinstance(message, FunctionMessage):
        return {"role": "function", "name": message.name, "content": message.content}
    raise TypeError(f"Not a message: {message!r}")


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    return [to_openai_message(m) for m in messages]
