"""Agent loop: stream model turns, run tool calls, repeat until done.

The loop:
    1. Bind the tool set (plus the stop tool) to the model
    2. Read prior history once, append the new input to the store
    3. Stream one model turn, surfacing safe snapshots as they form
    4. No tool calls → append the AI message and stop
    5. Tool calls → run them concurrently, append results in call order
    6. Stop tool among the calls → stop; otherwise back to 3

Every turn consumes one unit of ``max_turns``. Starting a turn with the
budget spent raises BudgetExhaustedError, whether or not earlier turns
called tools.

Usage:
    config = AgentConfig(model=LiteLLMChatModel("gpt-4o"), tools=(echo,))

    messages = await acall_agent(config, "Say ping")

    async for snapshot in astream_agent(config, "Say ping"):
        render(snapshot[-1])

AgentConfig is immutable and safe to share between concurrent invocations;
all mutable loop state lives in a per-invocation LoopState. A history store
must not be shared by concurrent invocations; pass ``history=`` per call.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterator

from llm_agent.config import (
    DEFAULT_MAX_TURNS,
    DEFAULT_TOOL_RESULT_MAX_LENGTH,
    AgentSettings,
)
from llm_agent.errors import AgentConfigurationError, BudgetExhaustedError
from llm_agent.history import HistoryStore, clean_history
from llm_agent.hooks import ToolHooks
from llm_agent.messages import AIMessage, Message, coerce_messages
from llm_agent.models import BoundChatModel, LiteLLMChatModel, ToolChoice
from llm_agent.streaming import StreamAccumulator
from llm_agent.tools import ToolDefinition, dispatch_tool_calls

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration and state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentConfig:
    """Everything an agent invocation needs, fixed for its lifetime.

    Attributes:
        model: Chat model exposing ``bind_tools`` (see llm_agent.models).
        tools: Tool definitions; names must be unique.
        stop_tool: Optional tool whose call ends the loop after its turn.
            It is bound alongside ``tools`` and forces ``tool_choice="any"``,
            so instruct the model to call it when done.
        history: Optional store read once at start and appended to as the
            loop runs. Overridden by ``history=`` on the call.
        max_turns: Model turns allowed per invocation.
        tool_result_max_length: Tool results longer than this are truncated.
        hooks: Optional tool observability callbacks.
    """

    model: Any
    tools: tuple[ToolDefinition, ...] = ()
    stop_tool: ToolDefinition | None = None
    history: HistoryStore | None = None
    max_turns: int = DEFAULT_MAX_TURNS
    tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH
    hooks: ToolHooks | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tools", tuple(self.tools))
        if not isinstance(self.max_turns, int) or self.max_turns < 0:
            raise AgentConfigurationError(
                f"max_turns must be a non-negative integer, got {self.max_turns!r}"
            )
        if self.tool_result_max_length < 1:
            raise AgentConfigurationError(
                f"tool_result_max_length must be positive, got {self.tool_result_max_length!r}"
            )
        seen: set[str] = set()
        for definition in self.all_tools:
            if definition.name in seen:
                raise AgentConfigurationError(f"Duplicate tool name {definition.name!r}")
            seen.add(definition.name)

    @classmethod
    def from_settings(
        cls,
        model: Any = None,
        tools: tuple[ToolDefinition, ...] | list[ToolDefinition] = (),
        *,
        settings: AgentSettings | None = None,
        **overrides: Any,
    ) -> "AgentConfig":
        """Build a config whose defaults come from AgentSettings.

        ``model`` may be a chat model, a litellm model string, or None for
        ``settings.default_model``.
        """
        settings = settings or AgentSettings.from_env()
        if model is None:
            model = settings.default_model
        if isinstance(model, str):
            model = LiteLLMChatModel(model)
        values: dict[str, Any] = {
            "max_turns": settings.max_turns,
            "tool_result_max_length": settings.tool_result_max_length,
        }
        values.update(overrides)
        return cls(model=model, tools=tuple(tools), **values)

    @property
    def all_tools(self) -> tuple[ToolDefinition, ...]:
        """Tools bound to the model: ``tools`` plus the stop tool."""
        if self.stop_tool is None or any(t is self.stop_tool for t in self.tools):
            return self.tools
        return (*self.tools, self.stop_tool)

    @property
    def tool_choice(self) -> ToolChoice:
        return "any" if self.stop_tool is not None else "auto"


@dataclass
class LoopState:
    """Mutable state of one invocation. Never shared between invocations."""

    max_turns: int
    turns_left: int
    session: list[Message] = field(default_factory=list)
    current: AIMessage | None = None
    tool_call_detected: bool = False

    @classmethod
    def start(cls, max_turns: int) -> "LoopState":
        return cls(max_turns=max_turns, turns_left=max_turns)

    @property
    def turns_taken(self) -> int:
        return self.max_turns - self.turns_left

    def consume_turn(self) -> None:
        """Spend one budget unit. Raises BudgetExhaustedError when none are left."""
        if self.turns_left < 1:
            raise BudgetExhaustedError(self.max_turns)
        self.turns_left -= 1

    def snapshot(self, pending: AIMessage | None = None) -> list[Message]:
        messages = list(self.session)
        if pending is not None:
            messages.append(pending)
        return messages


def _bind_model(config: AgentConfig) -> BoundChatModel:
    bind = getattr(config.model, "bind_tools", None)
    if not callable(bind):
        raise AgentConfigurationError(
            f"LLM does not support tool binding: {type(config.model).__name__}"
        )
    try:
        bound = bind(list(config.all_tools), config.tool_choice)
    except NotImplementedError as exc:
        raise AgentConfigurationError(
            f"LLM does not support tool binding: {type(config.model).__name__}", original=exc,
        ) from exc
    if bound is None:
        raise AgentConfigurationError(
            f"LLM does not support tool binding: {type(config.model).__name__}"
        )
    return bound


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


async def astream_agent(
    config: AgentConfig,
    input: Any,
    *,
    history: HistoryStore | None = None,
) -> AsyncIterator[list[Message]]:
    """Run the agent loop, yielding growing session-history snapshots.

    Each snapshot is a complete message list for this invocation so far
    (caller history excluded); the last one is the final session history.
    Single pass: iterate it once.

    Args:
        config: Agent configuration.
        input: A string (human turn), a message-like, or a list of them.
        history: Store for this invocation; defaults to ``config.history``.

    Raises:
        AgentConfigurationError: The model can't bind tools (before any turn).
        BudgetExhaustedError: A turn was needed after ``max_turns`` turns.
    """
    store = history if history is not None else config.history
    bound = _bind_model(config)
    new_messages = coerce_messages(input)
    prior: list[Message] = await store.aget_messages() if store is not None else []
    if store is not None:
        await store.aadd_messages(new_messages)

    tools = config.all_tools
    stop_name = config.stop_tool.name if config.stop_tool is not None else None
    state = LoopState.start(config.max_turns)

    while True:
        try:
            state.consume_turn()
        except BudgetExhaustedError:
            logger.error("Agent turn budget exhausted after %d turns", state.max_turns)
            raise
        logger.debug("Agent turn %d/%d", state.turns_taken, state.max_turns)

        context = clean_history([*prior, *new_messages, *state.session])
        accumulator = StreamAccumulator()
        async for partial in accumulator.aiter_snapshots(bound.stream(context)):
            state.current = partial
            yield state.snapshot(partial)

        message = accumulator.finalize()
        state.current = message
        state.tool_call_detected = message.has_tool_calls
        state.session.append(message)
        if store is not None:
            await store.aadd_messages([message])

        if not state.tool_call_detected:
            logger.debug("Agent finished after %d turns", state.turns_taken)
            yield state.snapshot()
            return

        results = await dispatch_tool_calls(
            message,
            tools,
            hooks=config.hooks,
            max_result_length=config.tool_result_max_length,
        )
        state.session.extend(results)
        if store is not None:
            await store.aadd_messages(results)
        yield state.snapshot()

        if stop_name is not None and any(call.name == stop_name for call in message.tool_calls):
            logger.info("Stop tool %r called; agent finished after %d turns", stop_name, state.turns_taken)
            return


async def acall_agent(
    config: AgentConfig,
    input: Any,
    *,
    history: HistoryStore | None = None,
) -> list[Message]:
    """Run the agent loop to completion and return the final session history."""
    final: list[Message] = []
    async for snapshot in astream_agent(config, input, history=history):
        final = snapshot
    return final


# ---------------------------------------------------------------------------
# Sync facades
# ---------------------------------------------------------------------------


def _run_sync(coro: Any) -> Any:
    """Run a coroutine synchronously, handling nested event loops."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop is not None and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def call_agent(
    config: AgentConfig,
    input: Any,
    *,
    history: HistoryStore | None = None,
) -> list[Message]:
    """Sync version of acall_agent."""
    return _run_sync(acall_agent(config, input, history=history))


def stream_agent(
    config: AgentConfig,
    input: Any,
    *,
    history: HistoryStore | None = None,
) -> Iterator[list[Message]]:
    """Sync version of astream_agent, driven on a private event loop.

    Not usable from inside a running event loop; use astream_agent there.
    """
    loop = asyncio.new_event_loop()
    agen = astream_agent(config, input, history=history)
    try:
        while True:
            try:
                snapshot = loop.run_until_complete(agen.__anext__())
            except StopAsyncIteration:
                return
            yield snapshot
    finally:
        loop.run_until_complete(agen.aclose())
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.run_until_complete(loop.shutdown_default_executor())
        loop.close()
