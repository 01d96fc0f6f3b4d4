"""agentmux engine: one session model over Claude Code, Codex and Gemini."""
from .models import (
    AgentCapabilities,
    AgentDescriptor,
    AgentResponse,
    AgentType,
    Genealogy,
    PermissionMode,
    PromptMode,
    PromptOptions,
    PromptOutcome,
    ResponseStatus,
    Session,
    SessionConfig,
    SessionStatus,
    SpawnOptions,
    Task,
    TaskGenealogy,
    TaskStatus,
    TokenUsage,
    ToolServerDescriptor,
)
from .config import EngineConfig
from .errors import (
    AuthError,
    ExecutionError,
    IdleTimeoutError,
    InvalidTransitionError,
    NotFoundError,
    OrchestrationError,
    SessionBusyError,
    TemplateResolutionError,
)
from .permissions import PermissionGate, translate_permission_mode
from .streaming import CancellationToken, StreamingMessageProcessor

__all__ = [
    # Orchestrator (lazy import to avoid circular deps)
    "AgentOrchestrator",
    "SessionManager",
    # Models
    "AgentCapabilities",
    "AgentDescriptor",
    "AgentResponse",
    "AgentType",
    "Genealogy",
    "PermissionMode",
    "PromptMode",
    "PromptOptions",
    "PromptOutcome",
    "ResponseStatus",
    "Session",
    "SessionConfig",
    "SessionStatus",
    "SpawnOptions",
    "Task",
    "TaskGenealogy",
    "TaskStatus",
    "TokenUsage",
    "ToolServerDescriptor",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "OrchestrationConfig",
    "load_yaml_config",
    # Permissions & streaming
    "PermissionGate",
    "translate_permission_mode",
    "CancellationToken",
    "StreamingMessageProcessor",
    # Errors
    "AuthError",
    "ExecutionError",
    "IdleTimeoutError",
    "InvalidTransitionError",
    "NotFoundError",
    "OrchestrationError",
    "SessionBusyError",
    "TemplateResolutionError",
]


def __getattr__(name: str):
    if name == "AgentOrchestrator":
        from .orchestrator import AgentOrchestrator
        return AgentOrchestrator
    if name == "SessionManager":
        from .session_manager import SessionManager
        return SessionManager
    if name == "OrchestrationConfig":
        from .yaml_config import OrchestrationConfig
        return OrchestrationConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
