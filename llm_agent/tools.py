"""Tool definitions and the tool-call dispatcher.

Define tools either with an explicit pydantic argument model:

    class EchoArgs(BaseModel):
        text: str

    echo = tool("echo", "Echo text back.", EchoArgs, lambda args: {"echoed": args.text})

or straight from a typed Python function:

    async def search(query: str, limit: int = 10) -> list[str]:
        '''Search the index.'''
        ...

    search_tool = tool_from_callable(search)

A tool's ``func`` may be a sync callable, an async callable, or a mapping of
named sub-capabilities (nested freely). A mapping runs every member
concurrently with the same arguments and returns ``{name: result}``.

dispatch_tool_calls() runs all calls of one AI turn concurrently and returns
one ToolMessage per call in the original call order. A failing call never
affects its siblings; every failure becomes a ``status="error"`` message.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json as _json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence, get_type_hints

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

from llm_agent.config import DEFAULT_TOOL_RESULT_MAX_LENGTH
from llm_agent.errors import ToolExecutionError, ToolResolutionError
from llm_agent.hooks import ToolHooks, fire_tool_end, fire_tool_error, fire_tool_start
from llm_agent.messages import AIMessage, InvalidToolCall, ToolCall, ToolMessage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDefinition:
    """A named capability the model may call.

    Attributes:
        name: Unique within one agent configuration.
        description: Shown to the model.
        func: Sync callable, async callable, or mapping of named sub-capabilities.
        args_schema: Pydantic model validating the raw arguments. None accepts
            any JSON object and passes it through as a dict.
        unpack_arguments: Call ``func(**fields)`` instead of ``func(validated)``.
    """

    name: str
    description: str
    func: Any
    args_schema: type[BaseModel] | None = None
    unpack_arguments: bool = False

    def validate_arguments(self, raw: Mapping[str, Any]) -> Any:
        """Parse raw model arguments into typed arguments. Raises ValidationError."""
        if self.args_schema is None:
            return dict(raw)
        return self.args_schema.model_validate(dict(raw))

    def parameters_schema(self) -> dict[str, Any]:
        if self.args_schema is None:
            return {"type": "object", "properties": {}}
        schema = self.args_schema.model_json_schema()
        schema.pop("title", None)
        return schema

    def to_openai_tool(self) -> dict[str, Any]:
        """OpenAI function-calling schema: {"type": "function", "function": {...}}."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }

    async def ainvoke(self, raw_args: Mapping[str, Any]) -> Any:
        """Validate then run the capability."""
        arguments = self.validate_arguments(raw_args)
        return await _run_capability(self.func, arguments, self.unpack_arguments)


def tool(
    name: str,
    description: str,
    args_schema: type[BaseModel] | None,
    func: Any,
) -> ToolDefinition:
    """Build a tool whose capability receives the validated argument model."""
    return ToolDefinition(name=name, description=description, func=func, args_schema=args_schema)


def _callable_description(fn: Callable[..., Any]) -> str:
    override = getattr(fn, "__tool_description__", None)
    if isinstance(override, str) and override.strip():
        return override.strip()
    if fn.__doc__:
        return fn.__doc__.strip().split("\n")[0].strip()
    return ""


def tool_from_callable(
    fn: Callable[..., Any],
    *,
    name: str | None = None,
    description: str | None = None,
) -> ToolDefinition:
    """Build a tool from a typed function.

    The argument model is generated from the signature; every parameter must
    have a type annotation (raises ValueError otherwise). Description comes
    from ``__tool_description__`` or the first docstring line.
    """
    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    fields: dict[str, Any] = {}
    for param_name, param in sig.parameters.items():
        if param_name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            raise ValueError(f"{fn.__name__!r} uses *args/**kwargs; tool parameters must be explicit.")
        if param_name not in hints:
            raise ValueError(
                f"Parameter {param_name!r} of {fn.__name__!r} has no type annotation. "
                f"All parameters must be typed for schema generation."
            )
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param_name] = (hints[param_name], default)

    tool_name = name or fn.__name__
    model_name = "".join(part.capitalize() for part in tool_name.split("_")) + "Args"
    args_model = create_model(model_name, __config__=ConfigDict(extra="forbid"), **fields)
    return ToolDefinition(
        name=tool_name,
        description=description if description is not None else _callable_description(fn),
        func=fn,
        args_schema=args_model,
        unpack_arguments=True,
    )


async def _run_capability(func: Any, arguments: Any, unpack: bool) -> Any:
    if isinstance(func, Mapping):
        names = list(func.keys())
        results = await asyncio.gather(
            *(_run_capability(func[n], arguments, unpack) for n in names)
        )
        return dict(zip(names, results))

    if not callable(func):
        raise TypeError(f"Tool capability must be callable or a mapping, got {type(func).__name__}")

    if unpack:
        if isinstance(arguments, BaseModel):
            kwargs = {k: getattr(arguments, k) for k in type(arguments).model_fields}
        else:
            kwargs = dict(arguments)
        call = functools.partial(func, **kwargs)
    else:
        call = functools.partial(func, arguments)

    if inspect.iscoroutinefunction(func):
        return await call()
    result = await asyncio.to_thread(call)
    if inspect.isawaitable(result):
        result = await result
    return result


# ---------------------------------------------------------------------------
# Result serialization
# ---------------------------------------------------------------------------


def _dumps(value: Any) -> str:
    return _json.dumps(value, separators=(",", ":"), default=str)


def serialize_tool_result(value: Any) -> str:
    """Strings pass through; everything else becomes compact JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return _dumps(value.model_dump(mode="json"))
    return _dumps(value)


def _truncate(text: str, max_length: int) -> str:
    """Truncate text if it exceeds max_length, appending a notice."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


def _error_content(error: BaseException) -> str:
    if isinstance(error, ToolExecutionError) and error.payload is not None:
        return _dumps(error.payload)
    if isinstance(error, ValidationError):
        return _dumps({"error": f"Invalid arguments: {error}"})
    return _dumps({"error": str(error) or type(error).__name__})


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def _error_message(call: ToolCall, content: str) -> ToolMessage:
    return ToolMessage(content=content, tool_call_id=call.id, name=call.name, status="error")


async def _dispatch_one(
    call: ToolCall,
    definition: ToolDefinition | None,
    hooks: ToolHooks | None,
    max_result_length: int,
) -> ToolMessage:
    await fire_tool_start(hooks, call, definition)

    if definition is None:
        error = ToolResolutionError(call.name)
        logger.warning("Tool call %s requested unknown tool %r", call.id, call.name)
        await fire_tool_error(hooks, call, error)
        return _error_message(call, _dumps({"success": False, "error": str(error)}))

    logger.debug("Dispatching tool call %s: %s", call.id, call.name)
    try:
        result = await definition.ainvoke(call.args)
        content = _truncate(serialize_tool_result(result), max_result_length)
    except Exception as exc:
        logger.warning("Tool %r (call %s) failed: %s: %s", call.name, call.id, type(exc).__name__, exc)
        await fire_tool_error(hooks, call, exc)
        return _error_message(call, _error_content(exc))

    await fire_tool_end(hooks, call, content)
    return ToolMessage(content=content, tool_call_id=call.id, name=call.name, status="success")


async def _reject_invalid(invalid: InvalidToolCall, hooks: ToolHooks | None) -> ToolMessage:
    call = ToolCall(id=invalid.id, name=invalid.name, args={})
    error = ToolExecutionError(
        f'Invalid arguments for tool "{invalid.name}": {invalid.error} Arguments: {invalid.args}'
    )
    logger.warning("Tool call %s rejected: %s", invalid.id, error)
    await fire_tool_start(hooks, call, None)
    await fire_tool_error(hooks, call, error)
    return _error_message(call, _error_content(error))


async def dispatch_tool_calls(
    message: AIMessage,
    tools: Sequence[ToolDefinition],
    *,
    hooks: ToolHooks | None = None,
    max_result_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
) -> list[ToolMessage]:
    """Run every tool call of one AI turn concurrently.

    Returns one ToolMessage per call, valid or invalid, in the order the
    model emitted them (see AIMessage.ordered_tool_calls). Completion order
    never affects result order.
    """
    registry = {t.name: t for t in tools}
    pending = [
        _reject_invalid(call, hooks)
        if isinstance(call, InvalidToolCall)
        else _dispatch_one(call, registry.get(call.name), hooks, max_result_length)
        for call in message.ordered_tool_calls()
    ]
    return list(await asyncio.gather(*pending))
