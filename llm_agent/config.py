"""Typed runtime defaults for llm_agent."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

MAX_TURNS_ENV = "LLM_AGENT_MAX_TURNS"
TOOL_RESULT_MAX_LENGTH_ENV = "LLM_AGENT_TOOL_RESULT_MAX_LENGTH"
MODEL_ENV = "LLM_AGENT_MODEL"

DEFAULT_MAX_TURNS: int = 10
"""Model turns one invocation may use before BudgetExhaustedError."""

DEFAULT_TOOL_RESULT_MAX_LENGTH: int = 50_000
"""Maximum character length for a single tool result. Longer results are truncated."""

DEFAULT_MODEL: str = "gpt-4o-mini"


def _env_int(name: str, default: int, *, minimum: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; expected an integer. Defaulting to %d.", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Invalid %s=%r; must be >= %d. Defaulting to %d.", name, raw, minimum, default)
        return default
    return value


@dataclass(frozen=True)
class AgentSettings:
    """Defaults resolved once and passed explicitly into AgentConfig."""

    max_turns: int = DEFAULT_MAX_TURNS
    tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH
    default_model: str = DEFAULT_MODEL

    @classmethod
    def from_env(cls) -> "AgentSettings":
        """Build settings from LLM_AGENT_* environment variables."""
        model = os.environ.get(MODEL_ENV, "").strip() or DEFAULT_MODEL
        return cls(
            max_turns=_env_int(MAX_TURNS_ENV, DEFAULT_MAX_TURNS, minimum=0),
            tool_result_max_length=_env_int(
                TOOL_RESULT_MAX_LENGTH_ENV, DEFAULT_TOOL_RESULT_MAX_LENGTH, minimum=1,
            ),
            default_model=model,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "AgentSettings":
        """Load settings from a .yaml/.yml or .json file.

        Missing keys keep their defaults; unknown keys are rejected.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        text = path.read_text()
        suffix = path.suffix.lower()
        if suffix == ".json":
            data = json.loads(text)
        elif suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            raise ValueError(
                f"Unsupported settings extension {suffix!r} for {path}. "
                "Use .json, .yaml, or .yml."
            )
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"Settings root must be a mapping. Got: {type(data).__name__}")
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "AgentSettings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown settings keys: {', '.join(unknown)}")
        settings = cls(**data)
        if not isinstance(settings.max_turns, int) or settings.max_turns < 0:
            raise ValueError(f"max_turns must be a non-negative integer, got {settings.max_turns!r}")
        if not isinstance(settings.tool_result_max_length, int) or settings.tool_result_max_length < 1:
            raise ValueError(
                f"tool_result_max_length must be a positive integer, got {settings.tool_result_max_length!r}"
            )
        return settings
