"""Bounded, streaming tool-calling agent loop over litellm.

A model keeps calling tools across turns until it answers without tool calls
or calls the designated stop tool. Every turn spends one unit of the turn
budget; running out is fatal. Tool failures never escape the loop; they
come back to the model as ``status="error"`` tool messages.

Usage:
    from pydantic import BaseModel
    from llm_agent import AgentConfig, LiteLLMChatModel, acall_agent, tool

    class EchoArgs(BaseModel):
        text: str

    echo = tool("echo", "Echo text back.", EchoArgs, lambda a: {"echoed": a.text})
    config = AgentConfig(model=LiteLLMChatModel("gpt-4o"), tools=(echo,))

    messages = await acall_agent(config, "Echo 'ping', then say done.")

    # Streaming: each item is the full session history so far
    async for snapshot in astream_agent(config, "Echo 'ping'"):
        print(snapshot[-1])

    # Sync
    messages = call_agent(config, "hi")
"""

from llm_agent.agent import (
    AgentConfig,
    LoopState,
    acall_agent,
    astream_agent,
    call_agent,
    stream_agent,
)
from llm_agent.config import AgentSettings
from llm_agent.errors import (
    AgentConfigurationError,
    AgentError,
    BudgetExhaustedError,
    LLMAuthError,
    LLMContentFilterError,
    LLMError,
    LLMModelNotFoundError,
    LLMRateLimitError,
    LLMTransientError,
    ToolExecutionError,
    ToolResolutionError,
    classify_error,
    wrap_error,
)
from llm_agent.history import (
    HistoryStore,
    InMemoryHistory,
    JsonlHistory,
    clean_history,
    record_function_calls,
    record_tool_calls,
)
from llm_agent.hooks import ToolHooks, jsonl_hooks, logging_hooks
from llm_agent.messages import (
    AIMessage,
    AIMessageChunk,
    FunctionMessage,
    HumanMessage,
    InvalidToolCall,
    Message,
    SystemMessage,
    ToolCall,
    ToolCallChunk,
    ToolMessage,
    coerce_message,
    coerce_messages,
    to_openai_messages,
)
from llm_agent.models import (
    BoundChatModel,
    ChatModel,
    FallbackChatModel,
    LiteLLMChatModel,
)
from llm_agent.streaming import StreamAccumulator
from llm_agent.tools import (
    ToolDefinition,
    dispatch_tool_calls,
    serialize_tool_result,
    tool,
    tool_from_callable,
)

__all__ = [
    # Loop
    "AgentConfig",
    "LoopState",
    "acall_agent",
    "astream_agent",
    "call_agent",
    "stream_agent",
    # Config
    "AgentSettings",
    # Errors
    "AgentConfigurationError",
    "AgentError",
    "BudgetExhaustedError",
    "LLMAuthError",
    "LLMContentFilterError",
    "LLMError",
    "LLMModelNotFoundError",
    "LLMRateLimitError",
    "LLMTransientError",
    "ToolExecutionError",
    "ToolResolutionError",
    "classify_error",
    "wrap_error",
    # History
    "HistoryStore",
    "InMemoryHistory",
    "JsonlHistory",
    "clean_history",
    "record_function_calls",
    "record_tool_calls",
    # Hooks
    "ToolHooks",
    "jsonl_hooks",
    "logging_hooks",
    # Messages
    "AIMessage",
    "AIMessageChunk",
    "FunctionMessage",
    "HumanMessage",
    "InvalidToolCall",
    "Message",
    "SystemMessage",
    "ToolCall",
    "ToolCallChunk",
    "ToolMessage",
    "coerce_message",
    "coerce_messages",
    "to_openai_messages",
    # Models
    "BoundChatModel",
    "ChatModel",
    "FallbackChatModel",
    "LiteLLMChatModel",
    # Streaming
    "StreamAccumulator",
    # Tools
    "ToolDefinition",
    "dispatch_tool_calls",
    "serialize_tool_result",
    "tool",
    "tool_from_callable",
]
