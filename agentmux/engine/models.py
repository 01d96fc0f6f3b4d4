"""Core data models for the agent multiplexer.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AgentType(str, Enum):
    """Built-in agent backends. Custom adapters may use any string."""
    CLAUDE_CODE = "claude-code"
    CODEX = "codex"
    GEMINI = "gemini"


class SessionStatus(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class PromptMode(str, Enum):
    """How a prompt is routed relative to the target session."""
    CONTINUE = "continue"
    FORK = "fork"
    SUBSESSION = "subsession"


class PermissionMode(str, Enum):
    """Unified permission modes understood by every adapter.

    Agent-native extensions (e.g. Gemini's ``autoEdit``/``yolo``) are
    plain strings handled by the translator in permissions.py.
    """
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"
    ASK = "ask"
    AUTO = "auto"
    ON_FAILURE = "on-failure"
    ALLOW_ALL = "allow-all"


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class ToolServerScope(str, Enum):
    GLOBAL = "global"
    SESSION = "session"


class ToolServerTransport(str, Enum):
    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def agent_type_value(agent_type: AgentType | str) -> str:
    """Return the registry key for an agent type or plain string."""
    if isinstance(agent_type, AgentType):
        return agent_type.value
    return str(agent_type)


@dataclass(frozen=True)
class AgentCapabilities:
    """Fixed capability record reported by an adapter."""
    can_read: bool = False
    can_write: bool = False
    can_execute: bool = False
    can_fetch: bool = False
    can_use_mcp: bool = False
    supports_planning: bool = False
    extensions: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_read": self.can_read,
            "can_write": self.can_write,
            "can_execute": self.can_execute,
            "can_fetch": self.can_fetch,
            "can_use_mcp": self.can_use_mcp,
            "supports_planning": self.supports_planning,
            "extensions": dict(self.extensions),
        }


@dataclass(frozen=True)
class AgentDescriptor:
    """Registered description of an agent backend. Immutable."""
    agent_type: str
    capabilities: AgentCapabilities
    default_permission_mode: str


@dataclass
class TokenUsage:
    """Token accounting captured from a vendor result event."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> TokenUsage:
        """Build from a vendor usage dict, tolerating naming variants."""
        if not data:
            return cls()

        def _int(*keys: str) -> int:
            for key in keys:
                value = data.get(key)
                if value:
                    try:
                        return int(value)
                    except (TypeError, ValueError):
                        continue
            return 0

        return cls(
            input_tokens=_int("input_tokens", "prompt_tokens", "input"),
            output_tokens=_int(
                "output_tokens", "completion_tokens", "candidates", "output",
            ),
            cache_read_tokens=_int(
                "cache_read_input_tokens",
                "cache_read_tokens",
                "cached_input_tokens",
                "cached",
            ),
            cache_creation_tokens=_int(
                "cache_creation_input_tokens", "cache_creation_tokens",
            ),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ToolCall:
    """A single tool invocation reported by the agent."""
    tool: str
    params: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None
    result: Any = None
    success: bool = True


@dataclass
class AgentResponse:
    """Outcome of one adapter execute() turn."""
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    status: ResponseStatus = ResponseStatus.SUCCESS
    error: str | None = None
    usage: TokenUsage | None = None
    model: str | None = None
    context_window_limit: int | None = None
    continuation_id: str | None = None
    messages: list[str] = field(default_factory=list)
    stopped: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Session:
    """Complete state of one agent session.

    Owned by SessionManager; adapters only see a private cache entry.
    """
    session_id: str = field(default_factory=_make_id)
    agent_type: str = AgentType.CLAUDE_CODE.value
    permission_mode: str = PermissionMode.DEFAULT.value
    title: str | None = None
    description: str | None = None
    parent_session_id: str | None = None
    forked_from_session_id: str | None = None
    worktree_id: str | None = None
    working_directory: str | None = None
    tool_server_ids: list[str] = field(default_factory=list)
    status: SessionStatus = SessionStatus.IDLE
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    task_ids: list[str] = field(default_factory=list)
    child_session_ids: list[str] = field(default_factory=list)
    continuation_id: str | None = None
    last_error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Task:
    """One prompt execution inside a session."""
    task_id: str = field(default_factory=_make_id)
    session_id: str = ""
    prompt: str = ""
    status: TaskStatus = TaskStatus.RUNNING
    parent_task_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    result: AgentResponse | None = None
    error: str | None = None


@dataclass
class SessionConfig:
    """Parameters for SessionManager.create_session()."""
    agent_type: str
    session_id: str | None = None
    permission_mode: str | None = None
    title: str | None = None
    description: str | None = None
    parent_session_id: str | None = None
    worktree_id: str | None = None
    working_directory: str | None = None
    tool_server_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SpawnOptions:
    """Overrides for a child session. Unset fields inherit from the parent."""
    agent_type: str | None = None
    permission_mode: str | None = None
    title: str | None = None
    working_directory: str | None = None
    tool_server_ids: list[str] | None = None
    task_id: str | None = None


@dataclass
class PromptOptions:
    """Routing options for SessionManager.prompt_session()."""
    prompt: str
    mode: PromptMode = PromptMode.CONTINUE
    agent_type: str | None = None
    permission_mode: str | None = None
    title: str | None = None
    task_id: str | None = None


@dataclass
class PromptOutcome:
    """What prompt_session() produced: the session that ran, its task, the response."""
    session: Session
    task: Task
    response: AgentResponse


@dataclass
class Genealogy:
    ancestors: list[Session] = field(default_factory=list)
    descendants: list[Session] = field(default_factory=list)
    siblings: list[Session] = field(default_factory=list)


@dataclass
class TaskGenealogy:
    ancestors: list[Task] = field(default_factory=list)
    descendants: list[Task] = field(default_factory=list)


@dataclass
class ToolServerAuth:
    """Authentication block of a tool server. Values may be templated."""
    type: str = "none"  # "none", "bearer", "oauth", "api-key"
    token: str | None = None
    api_url: str | None = None
    api_token: str | None = None
    api_secret: str | None = None


@dataclass
class ToolServerDescriptor:
    """An MCP tool server that may be attached to sessions."""
    server_id: str
    name: str
    scope: ToolServerScope = ToolServerScope.GLOBAL
    transport: ToolServerTransport = ToolServerTransport.STDIO
    enabled: bool = True
    command: str | None = None
    args: list[str] = field(default_factory=list)
    url: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    auth: ToolServerAuth | None = None
    required_env: list[str] = field(default_factory=list)
