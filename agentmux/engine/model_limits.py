"""Context window limits per agent model.

Result events only report token usage; the window they count against
comes from these tables. Lookups are case-insensitive. A versioned
identifier falls back to its base model by dropping trailing
``-suffix`` segments (``gpt-4o-2024`` -> ``gpt-4o``,
``gemini-2.5-pro-001`` -> ``gemini-2.5-pro``). Unknown or missing
models resolve to the agent's default model limit.
"""
from __future__ import annotations

from .models import AgentType, agent_type_value

DEFAULT_CONTEXT_WINDOW_LIMIT = 200_000

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-5"
CLAUDE_CONTEXT_LIMITS: dict[str, int] = {
    "claude-opus-4-1": 200_000,
    "claude-opus-4-5": 200_000,
    "claude-sonnet-4-5": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-haiku-4-5": 200_000,
    "opus": 200_000,
    "sonnet": 200_000,
    "haiku": 200_000,
}

DEFAULT_CODEX_MODEL = "gpt-5-codex"
_CODEX_DEFAULT_LIMIT = 400_000
CODEX_CONTEXT_LIMITS: dict[str, int] = {
    "gpt-5.1-codex": _CODEX_DEFAULT_LIMIT,
    "gpt-5.1-codex-mini": _CODEX_DEFAULT_LIMIT,
    "gpt-5.1": _CODEX_DEFAULT_LIMIT,
    "gpt-5-codex": _CODEX_DEFAULT_LIMIT,
    "gpt-5-codex-mini": _CODEX_DEFAULT_LIMIT,
    "gpt-5": _CODEX_DEFAULT_LIMIT,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 64_000,
}

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
GEMINI_CONTEXT_LIMITS: dict[str, int] = {
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.5-flash": 1_048_576,
    "gemini-2.5-flash-lite": 1_048_576,
}

DEFAULT_MODELS: dict[str, str] = {
    AgentType.CLAUDE_CODE.value: DEFAULT_CLAUDE_MODEL,
    AgentType.CODEX.value: DEFAULT_CODEX_MODEL,
    AgentType.GEMINI.value: DEFAULT_GEMINI_MODEL,
}

_TABLES: dict[str, dict[str, int]] = {
    AgentType.CLAUDE_CODE.value: CLAUDE_CONTEXT_LIMITS,
    AgentType.CODEX.value: CODEX_CONTEXT_LIMITS,
    AgentType.GEMINI.value: GEMINI_CONTEXT_LIMITS,
}


def _lookup(table: dict[str, int], model: str | None, default: int) -> int:
    if not model:
        return default
    key = model.strip().lower()
    while key:
        if key in table:
            return table[key]
        if "-" not in key:
            break
        key = key.rsplit("-", 1)[0]
    return default


def default_model_for(agent_type: AgentType | str) -> str | None:
    return DEFAULT_MODELS.get(agent_type_value(agent_type))


def get_context_window_limit(agent_type: AgentType | str, model: str | None = None) -> int:
    """Context window for *model* on *agent_type*. Never raises."""
    agent = agent_type_value(agent_type)
    table = _TABLES.get(agent)
    if table is None:
        return DEFAULT_CONTEXT_WINDOW_LIMIT
    default = table[DEFAULT_MODELS[agent]]
    return _lookup(table, model, default)


def get_claude_context_window_limit(model: str | None = None) -> int:
    return get_context_window_limit(AgentType.CLAUDE_CODE, model)


def get_codex_context_window_limit(model: str | None = None) -> int:
    return get_context_window_limit(AgentType.CODEX, model)


def get_gemini_context_window_limit(model: str | None = None) -> int:
    return get_context_window_limit(AgentType.GEMINI, model)
