"""Abstract base for agent adapters.

Each adapter wraps one vendor runtime (Claude Agent SDK, Codex CLI,
Gemini CLI) behind the same contract. The split is:

- VendorClient / VendorCall: vendor-specific I/O. A call yields raw
  VendorEvents and can be aborted.
- AgentAdapter: vendor-neutral turn handling shared by every backend
  (auth, permission translation, streaming normalization, response
  assembly, error wrapping, private session cache).

Concrete adapters only declare their capabilities and build their
vendor client.
"""
from __future__ import annotations

import abc
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..auth import AuthCredentials, AuthProvider
from ..errors import AuthError, ExecutionError, IdleTimeoutError, NotFoundError
from ..mcp_scoping import to_mcp_config
from ..models import (
    AgentCapabilities,
    AgentDescriptor,
    AgentResponse,
    ResponseStatus,
    Session,
    SessionStatus,
    ToolCall,
    ToolServerDescriptor,
    TokenUsage,
)
from ..permissions import (
    NativePermission,
    PermissionGate,
    PermissionTable,
    get_permission_table,
    resolve_session_permission_mode,
)
from ..streaming import (
    DEFAULT_ABORT_GRACE_SECONDS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    CancellationToken,
    CompleteEvent,
    EndEvent,
    ErrorEvent,
    NormalizedEvent,
    ResultEvent,
    SessionIdCapturedEvent,
    StoppedEvent,
    StreamingMessageProcessor,
    VendorEvent,
)

logger = logging.getLogger(__name__)

# Async hook the vendor calls before running a tool: (tool_name, input) -> allow?
ApprovalHook = Callable[[str, dict[str, Any]], Awaitable[bool]]

# Async observer for normalized events of a running turn.
StreamObserver = Callable[[NormalizedEvent], Awaitable[None]]

# Tool names whose input names a file the agent wrote
_FILE_WRITE_TOOLS = {
    "Write", "Edit", "MultiEdit", "NotebookEdit",
    "write_file", "replace", "edit_file",
}
_FILE_PATH_KEYS = ("file_path", "path", "absolute_path", "notebook_path")

_STDERR_TAIL_LINES = 40


@dataclass
class VendorOptions:
    """Everything a vendor call needs besides the prompt."""
    continuation_id: str | None = None
    fork_from: str | None = None
    permission: NativePermission | None = None
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    cwd: str | None = None
    model: str | None = None
    approval_hook: ApprovalHook | None = field(default=None, repr=False)
    credentials: AuthCredentials | None = field(default=None, repr=False)


class VendorCall(abc.ABC):
    """One in-flight vendor invocation.

    Iterating yields raw VendorEvents. After ``abort()`` the call must
    wind down and yield a final ``aborted`` event (or simply end);
    vendors never signal a stop through error text.
    """

    def __init__(self) -> None:
        self.abort_requested = False
        self._stderr_lines: list[str] = []

    def __aiter__(self) -> AsyncIterator[VendorEvent]:
        return self.events()

    @abc.abstractmethod
    def events(self) -> AsyncIterator[VendorEvent]:
        """Yield raw vendor events until the call finishes."""

    async def abort(self) -> None:
        """Request cancellation. Safe to call more than once."""
        if self.abort_requested:
            return
        self.abort_requested = True
        await self._abort()

    @abc.abstractmethod
    async def _abort(self) -> None:
        """Vendor-specific interrupt."""

    def record_stderr(self, line: str) -> None:
        line = line.rstrip()
        if not line:
            return
        self._stderr_lines.append(line)
        if len(self._stderr_lines) > _STDERR_TAIL_LINES:
            del self._stderr_lines[0]

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_lines)


class VendorClient(abc.ABC):
    """Factory for vendor calls, one per adapter."""

    @abc.abstractmethod
    def submit(self, prompt: str, options: VendorOptions) -> VendorCall:
        """Start a call. Work begins when the call is iterated."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if the vendor runtime is installed."""

    async def shutdown(self) -> None:
        """Clean up long-lived resources. Default no-op."""
        return None


@dataclass
class AdapterSessionState:
    """An adapter's private view of one session. Not the source of truth."""
    session_id: str
    status: SessionStatus = SessionStatus.IDLE
    continuation_id: str | None = None
    permission_mode: str | None = None
    working_directory: str | None = None
    tool_server_ids: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class _TurnCollector:
    """Accumulates normalized events into an AgentResponse."""

    def __init__(self) -> None:
        self.messages: list[CompleteEvent] = []
        self.usage: TokenUsage | None = None
        self.model: str | None = None
        self.context_window_limit: int | None = None
        self.error: str | None = None
        self.end_reason: str | None = None
        self.stopped = False
        self.continuation_id: str | None = None
        self.result_seen = False

    def add(self, event: NormalizedEvent) -> None:
        if isinstance(event, CompleteEvent):
            self.messages.append(event)
        elif isinstance(event, ResultEvent):
            self.result_seen = True
            self.usage = event.usage
            self.model = event.model
            self.context_window_limit = event.context_window_limit
        elif isinstance(event, ErrorEvent):
            self.error = event.message
        elif isinstance(event, EndEvent):
            self.end_reason = event.reason
        elif isinstance(event, StoppedEvent):
            self.stopped = True
            self.end_reason = "stopped"
        elif isinstance(event, SessionIdCapturedEvent):
            self.continuation_id = event.continuation_id

    def build(self, files_from: Callable[[ToolCall], list[str]]) -> AgentResponse:
        texts = [m.text for m in self.messages if m.text]
        tool_calls = [call for m in self.messages for call in m.tool_uses]
        files: list[str] = []
        for call in tool_calls:
            for path in files_from(call):
                if path not in files:
                    files.append(path)

        if self.stopped or not (self.result_seen or self.end_reason == "end"):
            status = ResponseStatus.PARTIAL
        else:
            status = ResponseStatus.SUCCESS

        return AgentResponse(
            content=texts[-1] if texts else "",
            tool_calls=tool_calls,
            files_modified=files,
            status=status,
            usage=self.usage,
            model=self.model,
            context_window_limit=self.context_window_limit,
            continuation_id=self.continuation_id,
            messages=texts,
            stopped=self.stopped,
            metadata={"end_reason": self.end_reason},
        )


class AgentAdapter(abc.ABC):
    """Vendor-neutral adapter contract.

    Subclasses implement ``agent_type``, ``get_capabilities`` and pass
    a VendorClient. Everything else is shared.
    """

    def __init__(
        self,
        vendor_client: VendorClient,
        auth_provider: AuthProvider,
        *,
        default_permission_mode: str | None = None,
        default_model: str | None = None,
        idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
        abort_grace_seconds: float = DEFAULT_ABORT_GRACE_SECONDS,
        permission_gate: PermissionGate | None = None,
    ) -> None:
        self._vendor = vendor_client
        self._auth = auth_provider
        self._permission_table = get_permission_table(self.agent_type).with_default(
            default_permission_mode
        )
        self._default_model = default_model
        self._idle_timeout = idle_timeout_seconds
        self._abort_grace = abort_grace_seconds
        self._gate = permission_gate
        self._credentials: AuthCredentials | None = None
        self._initialized = False
        self._sessions: dict[str, AdapterSessionState] = {}
        self._active_calls: dict[str, VendorCall] = {}

    # ── Identity ──────────────────────────────────────────────

    @property
    @abc.abstractmethod
    def agent_type(self) -> str:
        """Registry key, e.g. 'claude-code'."""

    @abc.abstractmethod
    def get_capabilities(self) -> AgentCapabilities:
        """Fixed capability record."""

    @property
    def permission_table(self) -> PermissionTable:
        return self._permission_table

    @property
    def vendor_client(self) -> VendorClient:
        return self._vendor

    @property
    def initialized(self) -> bool:
        return self._initialized

    def get_descriptor(self) -> AgentDescriptor:
        return AgentDescriptor(
            agent_type=self.agent_type,
            capabilities=self.get_capabilities(),
            default_permission_mode=self._permission_table.default_mode,
        )

    def is_available(self) -> bool:
        return self._vendor.is_available()

    # ── Auth ──────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Validate credentials. Idempotent; raises AuthError."""
        if self._initialized:
            return
        try:
            credentials = await self._auth.get_credentials()
            if credentials.is_expired():
                logger.info("%s credentials expired, refreshing", self.agent_type)
                credentials = await self._auth.refresh_credentials()
            valid = await self._auth.validate_credentials(credentials)
        except AuthError:
            raise
        except Exception as exc:
            raise AuthError(self.agent_type, f"credential check failed: {exc}") from exc
        if not valid:
            raise AuthError(self.agent_type, "invalid or missing credentials")
        self._credentials = credentials
        self._initialized = True
        logger.info("Adapter %s initialized", self.agent_type)

    async def health_check(self) -> bool:
        """True if credentials validate and the runtime is present. Never raises."""
        try:
            credentials = await self._auth.get_credentials()
            if not await self._auth.validate_credentials(credentials):
                return False
            return self._vendor.is_available()
        except Exception as exc:
            logger.debug("Health check for %s failed: %s", self.agent_type, exc)
            return False

    # ── Session cache ─────────────────────────────────────────

    def open_session(self, session: Session) -> AdapterSessionState:
        """Create or refresh the cache entry for *session*."""
        state = self._sessions.get(session.session_id)
        if state is None:
            state = AdapterSessionState(session_id=session.session_id)
            self._sessions[session.session_id] = state
        state.continuation_id = session.continuation_id
        state.permission_mode = session.permission_mode
        state.working_directory = session.working_directory
        state.tool_server_ids = list(session.tool_server_ids)
        state.status = session.status
        state.updated_at = datetime.now(timezone.utc)
        return state

    def get_session_state(self, session_id: str) -> AdapterSessionState | None:
        return self._sessions.get(session_id)

    def update_session(self, session_id: str, **changes: Any) -> AdapterSessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise NotFoundError("session", session_id)
        for key, value in changes.items():
            if not hasattr(state, key):
                raise AttributeError(f"Unknown session field: {key}")
            if key == "permission_mode":
                value = resolve_session_permission_mode(self._permission_table, value)
            setattr(state, key, value)
        state.updated_at = datetime.now(timezone.utc)
        return state

    def translate_permission_mode(self, mode: Any) -> NativePermission:
        return self._permission_table.translate(mode)

    # ── Execution ─────────────────────────────────────────────

    async def execute(
        self,
        session_id: str,
        prompt: str,
        *,
        permission_mode: str | None = None,
        fork_from: str | None = None,
        tool_servers: list[ToolServerDescriptor] | None = None,
        cancel: CancellationToken | None = None,
        on_event: StreamObserver | None = None,
    ) -> AgentResponse:
        """Run one turn and return its assembled response.

        ``fork_from`` asks the vendor to branch from that continuation
        instead of resuming the session's own. A cooperative stop
        returns a partial response with ``stopped=True``. Vendor
        failures raise ExecutionError; idle timeouts raise
        IdleTimeoutError.
        """
        await self.initialize()
        state = self._sessions.get(session_id)
        if state is None:
            raise NotFoundError("session", session_id)

        native = self._permission_table.translate(permission_mode or state.permission_mode)
        options = self._build_options(state, native, fork_from, tool_servers or [])
        processor = StreamingMessageProcessor(
            session_id,
            existing_continuation_id=options.continuation_id,
            idle_timeout_seconds=self._idle_timeout,
            abort_grace_seconds=self._abort_grace,
            agent_type=self.agent_type,
            model=self._default_model,
        )

        logger.info(
            "%s: executing turn for session %s (permission=%s, resume=%s, fork_from=%s)",
            self.agent_type, session_id, native.mode,
            options.continuation_id, options.fork_from,
        )
        state.status = SessionStatus.RUNNING
        call = self._vendor.submit(prompt, options)
        self._active_calls[session_id] = call
        collector = _TurnCollector()
        try:
            async for event in processor.stream(call, cancel=cancel, abort=call.abort):
                collector.add(event)
                if isinstance(event, SessionIdCapturedEvent):
                    state.continuation_id = event.continuation_id
                if on_event is not None:
                    await on_event(event)
        except IdleTimeoutError as exc:
            state.status = SessionStatus.FAILED
            exc.partial_log = call.stderr_tail()
            logger.error("%s: %s", self.agent_type, exc)
            await call.abort()
            raise
        except ExecutionError:
            state.status = SessionStatus.FAILED
            raise
        except Exception as exc:
            state.status = SessionStatus.FAILED
            logger.error(
                "%s: turn failed in session %s after %d messages: %s",
                self.agent_type, session_id, processor.state.message_count, exc,
            )
            raise ExecutionError(
                self.agent_type,
                session_id,
                str(exc) or type(exc).__name__,
                cause=exc,
                messages_processed=processor.state.message_count,
                partial_log=call.stderr_tail(),
            ) from exc
        finally:
            self._active_calls.pop(session_id, None)

        if collector.error is not None:
            state.status = SessionStatus.FAILED
            raise ExecutionError(
                self.agent_type,
                session_id,
                collector.error,
                messages_processed=processor.state.message_count,
                partial_log=call.stderr_tail(),
            )

        if state.status == SessionStatus.RUNNING:
            state.status = SessionStatus.IDLE
        state.updated_at = datetime.now(timezone.utc)
        response = collector.build(self.files_modified_by)
        response.metadata["native_permission_mode"] = native.mode
        if response.continuation_id is None:
            response.continuation_id = state.continuation_id
        logger.info(
            "%s: session %s turn finished (%s, %d messages, %s)",
            self.agent_type, session_id, response.status.value,
            processor.state.message_count, collector.end_reason,
        )
        return response

    def _build_options(
        self,
        state: AdapterSessionState,
        native: NativePermission,
        fork_from: str | None,
        tool_servers: list[ToolServerDescriptor],
    ) -> VendorOptions:
        mcp_servers: dict[str, dict[str, Any]] = {}
        if tool_servers:
            if self.get_capabilities().can_use_mcp:
                mcp_servers = to_mcp_config(tool_servers)
            else:
                logger.debug(
                    "%s does not support MCP; ignoring %d tool server(s)",
                    self.agent_type, len(tool_servers),
                )
        hook = None
        if self._gate is not None and self._gate.enabled:
            hook = self._approval_hook(self._gate, state.session_id)
        return VendorOptions(
            continuation_id=None if fork_from else state.continuation_id,
            fork_from=fork_from,
            permission=native,
            mcp_servers=mcp_servers,
            cwd=state.working_directory,
            model=self._default_model,
            approval_hook=hook,
            credentials=self._credentials,
        )

    @staticmethod
    def _approval_hook(gate: PermissionGate, session_id: str) -> ApprovalHook:
        async def _hook(tool_name: str, arguments: dict[str, Any]) -> bool:
            return await gate.request(session_id, tool_name, arguments)

        return _hook

    def files_modified_by(self, call: ToolCall) -> list[str]:
        """Paths a tool call wrote. Override for vendor-specific tools."""
        if call.tool not in _FILE_WRITE_TOOLS:
            return []
        for key in _FILE_PATH_KEYS:
            value = call.params.get(key)
            if isinstance(value, str) and value:
                return [value]
        return []

    # ── Teardown ──────────────────────────────────────────────

    async def terminate_session(self, session_id: str) -> None:
        """Abort any running call and drop the cache entry. Idempotent."""
        call = self._active_calls.get(session_id)
        if call is not None:
            logger.info("%s: aborting running call for session %s", self.agent_type, session_id)
            await call.abort()
        if self._sessions.pop(session_id, None) is not None:
            logger.debug("%s: dropped cached state for session %s", self.agent_type, session_id)

    async def cleanup(self) -> None:
        """Terminate running sessions, release the vendor client, clear the cache."""
        for session_id, state in list(self._sessions.items()):
            if state.status == SessionStatus.RUNNING:
                try:
                    await self.terminate_session(session_id)
                except Exception as exc:
                    logger.error(
                        "%s: error terminating session %s during cleanup: %s",
                        self.agent_type, session_id, exc,
                    )
        try:
            await self._vendor.shutdown()
        except Exception as exc:
            logger.error("%s: vendor shutdown failed: %s", self.agent_type, exc)
        self._sessions.clear()
        self._active_calls.clear()
        self._initialized = False
