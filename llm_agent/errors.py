"""Structured error types for llm_agent.

Only two kinds of failure ever cross the agent loop boundary:

    from llm_agent.errors import AgentConfigurationError, BudgetExhaustedError

    try:
        messages = await acall_agent(config, "Plan my trip")
    except BudgetExhaustedError as exc:
        # Runaway loop: start a new invocation, maybe with a larger budget
        ...
    except AgentConfigurationError:
        # Model can't bind tools, duplicate tool names, ...: fix the config
        ...

Tool failures (unknown tool, bad arguments, raised exceptions) are folded
back into the conversation as ``status="error"`` tool messages and are never
raised to the caller.

Model transport failures from the litellm adapter are wrapped into the
``LLMError`` hierarchy so callers don't have to parse raw litellm exceptions.
"""

from __future__ import annotations

from typing import Any, Mapping


class AgentError(Exception):
    """Base for all llm_agent errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class AgentConfigurationError(AgentError):
    """Invalid agent configuration or unsupported model capability. Never retried."""


class BudgetExhaustedError(AgentError):
    """The turn budget ran out before the next model turn could start."""

    def __init__(self, max_turns: int) -> None:
        super().__init__(f"Max turns reached ({max_turns}); agent loop aborted.")
        self.max_turns = max_turns


class ToolResolutionError(AgentError):
    """The model asked for a tool that isn't configured."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f'Tool "{tool_name}" was not found.')
        self.tool_name = tool_name


class ToolExecutionError(AgentError):
    """A tool failed. Raise it from a tool to control the error content.

    When ``payload`` is given it is sent to the model verbatim instead of the
    default ``{"error": message}`` object.
    """

    def __init__(
        self,
        message: str,
        *,
        payload: Mapping[str, Any] | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.payload = dict(payload) if payload is not None else None


# ---------------------------------------------------------------------------
# Model transport errors
# ---------------------------------------------------------------------------


class LLMError(AgentError):
    """Base for model transport errors raised by the litellm adapter."""


class LLMRateLimitError(LLMError):
    """Transient rate limit (429)."""


class LLMAuthError(LLMError):
    """Authentication failed (401/403): API key invalid or forbidden."""


class LLMModelNotFoundError(LLMError):
    """Model doesn't exist (404)."""


class LLMContentFilterError(LLMError):
    """Content policy violation; request was blocked."""


class LLMTransientError(LLMError):
    """Server error (500/502/503), timeout, connection."""


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


_LITELLM_CLASSES: tuple[tuple[tuple[str, ...], type[LLMError]], ...] = (
    (("AuthenticationError", "PermissionDeniedError"), LLMAuthError),
    (("NotFoundError",), LLMModelNotFoundError),
    (("ContentPolicyViolationError",), LLMContentFilterError),
    (("RateLimitError",), LLMRateLimitError),
    (
        ("InternalServerError", "ServiceUnavailableError", "APIConnectionError", "Timeout"),
        LLMTransientError,
    ),
)


def classify_error(error: Exception) -> type[LLMError]:
    """Classify a model transport exception into an LLMError subtype.

    Uses litellm exception types first, falls back to string matching.
    """
    import litellm

    for names, cls in _LITELLM_CLASSES:
        types = _litellm_error_types(litellm, names)
        if types and isinstance(error, types):
            return cls

    error_str = str(error).lower()
    if "401" in error_str or "403" in error_str or "unauthorized" in error_str:
        return LLMAuthError
    if "404" in error_str or "does not exist" in error_str:
        return LLMModelNotFoundError
    if "content" in error_str and ("policy" in error_str or "filter" in error_str):
        return LLMContentFilterError
    if "rate" in error_str and "limit" in error_str:
        return LLMRateLimitError
    if any(p in error_str for p in ("timeout", "timed out", "connection", "500", "502", "503")):
        return LLMTransientError
    return LLMError


def wrap_error(error: Exception) -> AgentError:
    """Wrap an exception in the matching LLMError subclass.

    Errors that are already AgentErrors are returned unchanged.
    """
    if isinstance(error, AgentError):
        return error
    cls = classify_error(error)
    return cls(str(error), original=error)
