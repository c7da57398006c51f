"""Model capabilities consumed by the agent loop.

The loop needs exactly one thing from a model: bind a tool set, then stream
AIMessageChunk fragments for a message list.

    bound = model.bind_tools(tools, tool_choice="auto")
    async for fragment in bound.stream(messages):
        ...

LiteLLMChatModel implements this over ``litellm.acompletion(stream=True)`` so
any provider litellm supports works by changing the model string:

    LiteLLMChatModel("gpt-4o")
    LiteLLMChatModel("anthropic/claude-sonnet-4-5-20250929")
    LiteLLMChatModel("gemini/gemini-2.0-flash")
    LiteLLMChatModel("ollama/llama3")

FallbackChatModel chains several models; a model that fails before yielding
its first fragment hands over to the next one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Mapping, Protocol, Sequence, runtime_checkable

import litellm

from llm_agent.errors import AgentConfigurationError, wrap_error
from llm_agent.messages import AIMessageChunk, Message, ToolCallChunk, to_openai_messages
from llm_agent.tools import ToolDefinition

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True

ToolChoice = Literal["auto", "any"]

_LITELLM_TOOL_CHOICE: dict[str, str] = {"auto": "auto", "any": "required"}


@runtime_checkable
class BoundChatModel(Protocol):
    """A model with tools bound; streams one response per call."""

    def stream(self, messages: list[Message]) -> AsyncIterator[AIMessageChunk]: ...


@runtime_checkable
class ChatModel(Protocol):
    def bind_tools(
        self, tools: Sequence[ToolDefinition], tool_choice: ToolChoice = "auto",
    ) -> BoundChatModel: ...


# ---------------------------------------------------------------------------
# litellm
# ---------------------------------------------------------------------------


def _chunk_to_fragment(chunk: Any) -> AIMessageChunk | None:
    """Convert one litellm streaming chunk into an AIMessageChunk."""
    if not getattr(chunk, "choices", None):
        return None
    delta = chunk.choices[0].delta
    if delta is None:
        return None
    text = getattr(delta, "content", None) or ""
    tool_chunks: list[ToolCallChunk] = []
    for tc in getattr(delta, "tool_calls", None) or []:
        fn = getattr(tc, "function", None)
        tool_chunks.append(ToolCallChunk(
            index=getattr(tc, "index", None),
            id=getattr(tc, "id", None) or None,
            name=(getattr(fn, "name", None) or None) if fn is not None else None,
            args=(getattr(fn, "arguments", None) or None) if fn is not None else None,
        ))
    if not text and not tool_chunks:
        return None
    return AIMessageChunk(content=text, tool_call_chunks=tool_chunks)


@dataclass(frozen=True)
class LiteLLMChatModel:
    """Chat model streaming through litellm.

    Attributes:
        model: litellm model string.
        timeout: Request timeout in seconds.
        completion_kwargs: Extra kwargs passed to every ``litellm.acompletion``
            call (temperature, api_base, ...).
    """

    model: str
    timeout: int = 60
    completion_kwargs: Mapping[str, Any] = field(default_factory=dict)

    def bind_tools(
        self, tools: Sequence[ToolDefinition], tool_choice: ToolChoice = "auto",
    ) -> "BoundLiteLLMModel":
        if tool_choice not in _LITELLM_TOOL_CHOICE:
            raise AgentConfigurationError(f"Unsupported tool_choice {tool_choice!r}")
        return BoundLiteLLMModel(
            chat_model=self,
            tools=tuple(t.to_openai_tool() for t in tools),
            tool_choice=tool_choice,
        )

    def stream(self, messages: list[Message]) -> AsyncIterator[AIMessageChunk]:
        """Stream without tools."""
        return self.bind_tools(()).stream(messages)


@dataclass(frozen=True)
class BoundLiteLLMModel:
    chat_model: LiteLLMChatModel
    tools: tuple[dict[str, Any], ...] = ()
    tool_choice: ToolChoice = "auto"

    def _call_kwargs(self, messages: list[Message]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            **self.chat_model.completion_kwargs,
            "model": self.chat_model.model,
            "messages": to_openai_messages(messages),
            "timeout": self.chat_model.timeout,
            "stream": True,
        }
        if self.tools:
            kwargs["tools"] = list(self.tools)
            kwargs["tool_choice"] = _LITELLM_TOOL_CHOICE[self.tool_choice]
        return kwargs

    async def stream(self, messages: list[Message]) -> AsyncIterator[AIMessageChunk]:
        call_kwargs = self._call_kwargs(messages)
        logger.debug(
            "litellm stream model=%s messages=%d tools=%d",
            self.chat_model.model, len(messages), len(self.tools),
        )
        try:
            response = await litellm.acompletion(**call_kwargs)
        except Exception as e:
            raise wrap_error(e) from e
        try:
            async for chunk in response:
                fragment = _chunk_to_fragment(chunk)
                if fragment is not None:
                    yield fragment
        except Exception as e:
            raise wrap_error(e) from e


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------


class FallbackChatModel:
    """Try models in order until one starts streaming.

    Only failures before the first fragment trigger a fallback; once a model
    has produced output its errors propagate, since the consumer has already
    seen part of that response.
    """

    def __init__(self, primary: ChatModel, *fallbacks: ChatModel) -> None:
        self.models: tuple[ChatModel, ...] = (primary, *fallbacks)

    def bind_tools(
        self, tools: Sequence[ToolDefinition], tool_choice: ToolChoice = "auto",
    ) -> "BoundFallbackModel":
        bound: list[BoundChatModel] = []
        for model in self.models:
            bind = getattr(model, "bind_tools", None)
            if not callable(bind):
                raise AgentConfigurationError(
                    f"LLM does not support tool binding: {type(model).__name__}"
                )
            bound.append(bind(tools, tool_choice))
        return BoundFallbackModel(tuple(bound))


@dataclass(frozen=True)
class BoundFallbackModel:
    models: tuple[BoundChatModel, ...]

    async def stream(self, messages: list[Message]) -> AsyncIterator[AIMessageChunk]:
        last_error: Exception | None = None
        for idx, model in enumerate(self.models):
            try:
                iterator = model.stream(messages).__aiter__()
                first = await iterator.__anext__()
            except StopAsyncIteration:
                return
            except Exception as exc:
                last_error = exc
                if idx + 1 < len(self.models):
                    logger.warning(
                        "Model %d/%d failed before streaming (%s: %s); falling back",
                        idx + 1, len(self.models), type(exc).__name__, exc,
                    )
                continue
            yield first
            async for chunk in iterator:
                yield chunk
            return
        if last_error is None:
            raise AgentConfigurationError("FallbackChatModel has no models to stream from")
        raise last_error
