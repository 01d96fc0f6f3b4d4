"""Exception hierarchy for the agent multiplexer.

Specific exceptions for each failure mode. Cooperative stops are
not errors: they surface as a ``stopped`` stream event instead.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all agentmux errors."""


class AuthError(OrchestrationError):
    """Credentials are missing, invalid, or expired."""
    def __init__(self, agent_type: str, reason: str):
        self.agent_type = agent_type
        self.reason = reason
        super().__init__(f"Authentication failed for {agent_type}: {reason}")


class NotFoundError(OrchestrationError):
    """Unknown session, task, or agent id."""
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ExecutionError(OrchestrationError):
    """An adapter failed mid-turn.

    The original exception is kept on ``cause`` (and ``__cause__``
    when raised with ``from``).
    """
    def __init__(
        self,
        agent_type: str,
        session_id: str,
        reason: str,
        *,
        cause: BaseException | None = None,
        messages_processed: int = 0,
        partial_log: str = "",
    ):
        self.agent_type = agent_type
        self.session_id = session_id
        self.reason = reason
        self.cause = cause
        self.messages_processed = messages_processed
        self.partial_log = partial_log
        message = (
            f"{agent_type} error in session {session_id} after "
            f"{messages_processed} messages: {reason}"
        )
        if partial_log:
            message += f"\n\nstderr output:\n{partial_log}"
        super().__init__(message)


class IdleTimeoutError(ExecutionError):
    """The vendor stream produced no events within the idle threshold."""
    def __init__(
        self,
        idle_seconds: float,
        timeout_seconds: float,
        messages_processed: int,
        *,
        agent_type: str = "",
        session_id: str = "",
    ):
        self.idle_seconds = idle_seconds
        self.timeout_seconds = timeout_seconds
        super().__init__(
            agent_type or "agent",
            session_id or "?",
            f"idle timeout: no activity for {idle_seconds:.0f}s "
            f"(timeout: {timeout_seconds:.0f}s)",
            messages_processed=messages_processed,
        )


class TemplateResolutionError(OrchestrationError):
    """A required tool-server template field could not be resolved."""
    def __init__(self, server_name: str, fields: list[str]):
        self.server_name = server_name
        self.fields = fields
        super().__init__(
            f"Unresolved required templates in tool server "
            f"'{server_name}': {', '.join(fields)}"
        )


class SessionBusyError(OrchestrationError):
    """A prompt was rejected because the session already has a running turn."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has a running task")


class InvalidTransitionError(OrchestrationError, ValueError):
    """Illegal session state change."""
    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        allowed_str = ", ".join(allowed) or "none (terminal)"
        super().__init__(
            f"Invalid state transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )
