"""Claude Code adapter backed by the Claude Agent SDK.

Uses claude_agent_sdk.ClaudeSDKClient so a running turn can be
interrupted. SDK messages are classified by shape:

    SystemMessage(subtype="init")      -> session   (continuation id)
    StreamEvent(content_block_delta)   -> text_delta
    AssistantMessage                   -> message   (text + tool uses)
    ResultMessage                      -> result    (usage) / error
    UserMessage (tool results echo)    -> ignored
"""
from __future__ import annotations

import logging
import shutil
from collections.abc import AsyncIterator
from typing import Any

from ..auth import AuthProvider, CliLoginAuthProvider
from ..models import AgentCapabilities, AgentType, ToolCall
from ..streaming import VendorEvent, VendorEventKind
from .base import AgentAdapter, VendorCall, VendorClient, VendorOptions

logger = logging.getLogger(__name__)

CLAUDE_CAPABILITIES = AgentCapabilities(
    can_read=True,
    can_write=True,
    can_execute=True,
    can_fetch=True,
    can_use_mcp=True,
    supports_planning=True,
    extensions={"skills": True, "worktrees": True, "memory": True},
)


def _block_id(state: dict[str, Any], index: int) -> str | None:
    base = state.get("message_id")
    if not base:
        return None
    return f"{base}:{index}"


def convert_sdk_message(message: Any, state: dict[str, Any]) -> VendorEvent | None:
    """Classify one SDK message.

    *state* tracks the streamed API message id and which content block
    comes next. Claude Code sends one AssistantMessage per content
    block, so each block gets its own ``<message id>:<index>`` id and
    text deltas are keyed the same way.
    """
    # ResultMessage
    if hasattr(message, "subtype") and hasattr(message, "is_error") and hasattr(message, "usage"):
        is_error = bool(getattr(message, "is_error", False))
        error = None
        if is_error:
            error = getattr(message, "result", None) or f"claude result: {message.subtype}"
        return VendorEvent(
            kind=VendorEventKind.RESULT,
            continuation_id=getattr(message, "session_id", None),
            usage=getattr(message, "usage", None) or {},
            error=error,
            raw=message,
        )

    # SystemMessage
    if hasattr(message, "subtype") and hasattr(message, "data"):
        data = getattr(message, "data", None) or {}
        if message.subtype == "init" and isinstance(data, dict):
            return VendorEvent(
                kind=VendorEventKind.SESSION,
                continuation_id=data.get("session_id"),
                model=data.get("model"),
                raw=message,
            )
        return None

    # StreamEvent (partial messages)
    if hasattr(message, "event") and isinstance(getattr(message, "event", None), dict):
        event = message.event
        etype = event.get("type")
        if etype == "message_start":
            state["message_id"] = (event.get("message") or {}).get("id")
            state["next_block"] = 0
            return VendorEvent(
                kind=VendorEventKind.SESSION,
                continuation_id=getattr(message, "session_id", None),
            )
        if etype == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return VendorEvent(
                    kind=VendorEventKind.TEXT_DELTA,
                    continuation_id=getattr(message, "session_id", None),
                    message_id=_block_id(state, int(event.get("index") or 0)),
                    text=delta["text"],
                )
        return None

    # AssistantMessage
    if hasattr(message, "content") and hasattr(message, "model"):
        texts: list[str] = []
        content: list[dict[str, Any]] = []
        tool_uses: list[ToolCall] = []
        blocks = list(message.content or [])
        text_offset: int | None = None
        for position, block in enumerate(blocks):
            if hasattr(block, "thinking"):
                continue
            if hasattr(block, "text"):
                if text_offset is None:
                    text_offset = position
                texts.append(block.text)
                content.append({"type": "text", "text": block.text})
            elif hasattr(block, "name") and hasattr(block, "input"):
                params = block.input if isinstance(block.input, dict) else {"input": block.input}
                tool_uses.append(ToolCall(
                    tool=block.name,
                    params=params,
                    tool_use_id=getattr(block, "id", None),
                ))
                content.append({
                    "type": "tool_use",
                    "id": getattr(block, "id", None),
                    "name": block.name,
                    "input": params,
                })
        index = state.get("next_block", 0)
        state["next_block"] = index + max(1, len(blocks))
        if not content:
            # thinking only
            return None
        return VendorEvent(
            kind=VendorEventKind.MESSAGE,
            message_id=_block_id(state, index + (text_offset or 0)),
            text="".join(texts),
            content=content,
            tool_uses=tool_uses,
            model=getattr(message, "model", None),
            raw=message,
        )

    return None


class ClaudeSdkCall(VendorCall):
    """One ClaudeSDKClient query/response cycle."""

    def __init__(self, prompt: str, options: VendorOptions) -> None:
        super().__init__()
        self._prompt = prompt
        self._options = options
        self._client: Any = None

    def _build_options_kwargs(self) -> dict[str, Any]:
        options = self._options
        kwargs: dict[str, Any] = dict(
            cwd=options.cwd or ".",
            mcp_servers=options.mcp_servers,
            stderr=self.record_stderr,
            include_partial_messages=True,
        )
        if options.permission is not None:
            kwargs["permission_mode"] = options.permission.settings.get(
                "permission_mode", options.permission.mode,
            )
        if options.model:
            kwargs["model"] = options.model
        if options.fork_from:
            kwargs["resume"] = options.fork_from
            kwargs["fork_session"] = True
        elif options.continuation_id:
            kwargs["resume"] = options.continuation_id
        credentials = options.credentials
        if credentials is not None and credentials.credentials.get("api_key"):
            kwargs["env"] = {"ANTHROPIC_API_KEY": str(credentials.credentials["api_key"])}
        if options.approval_hook is not None:
            kwargs["can_use_tool"] = self._can_use_tool
        return kwargs

    async def _can_use_tool(self, tool_name: str, tool_input: dict[str, Any], context: Any) -> Any:
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        hook = self._options.approval_hook
        if hook is not None and not await hook(tool_name, tool_input):
            return PermissionResultDeny(message=f"Permission denied for {tool_name}")
        return PermissionResultAllow()

    async def events(self) -> AsyncIterator[VendorEvent]:
        try:
            from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
        except ImportError:
            yield VendorEvent(
                kind=VendorEventKind.ERROR,
                error="claude_agent_sdk not installed",
            )
            return

        sdk_options = ClaudeAgentOptions(**self._build_options_kwargs())
        stream_state: dict[str, Any] = {}
        try:
            async with ClaudeSDKClient(options=sdk_options) as client:
                self._client = client
                if self.abort_requested:
                    yield VendorEvent(kind=VendorEventKind.ABORTED)
                    return
                await client.query(self._prompt)
                async for message in client.receive_response():
                    event = convert_sdk_message(message, stream_state)
                    if event is None:
                        continue
                    if self.abort_requested and event.kind == VendorEventKind.RESULT:
                        yield VendorEvent(
                            kind=VendorEventKind.ABORTED,
                            continuation_id=event.continuation_id,
                        )
                        return
                    yield event
        except Exception as exc:
            if not self.abort_requested:
                raise
            logger.debug("Claude SDK raised after interrupt: %s", exc)
        finally:
            self._client = None
        if self.abort_requested:
            yield VendorEvent(kind=VendorEventKind.ABORTED)

    async def _abort(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            await client.interrupt()
        except Exception as exc:
            logger.warning("Claude interrupt failed: %s", exc)


class ClaudeSdkClient(VendorClient):
    """VendorClient for the Claude Agent SDK."""

    def __init__(self, command: str = "claude") -> None:
        self._command = command

    def submit(self, prompt: str, options: VendorOptions) -> VendorCall:
        return ClaudeSdkCall(prompt, options)

    def is_available(self) -> bool:
        """The SDK ships its own CLI; fall back to checking the system one."""
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError:
            return shutil.which(self._command) is not None
        return True


class ClaudeCodeAdapter(AgentAdapter):
    """Adapter for Claude Code via the Claude Agent SDK.

    Auth: CLI login / OAuth by default. If ``api_key_env`` is set and
    present, the key is passed to the SDK environment.
    """

    def __init__(
        self,
        vendor_client: VendorClient | None = None,
        auth_provider: AuthProvider | None = None,
        *,
        command: str = "claude",
        api_key_env: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            vendor_client or ClaudeSdkClient(command=command),
            auth_provider or _ClaudeLoginProvider(command, api_key_env),
            **kwargs,
        )

    @property
    def agent_type(self) -> str:
        return AgentType.CLAUDE_CODE.value

    def get_capabilities(self) -> AgentCapabilities:
        return CLAUDE_CAPABILITIES


class _ClaudeLoginProvider(CliLoginAuthProvider):
    """The SDK bundles a CLI, so an importable SDK counts as installed."""

    async def validate_credentials(self, credentials: Any) -> bool:
        if await super().validate_credentials(credentials):
            return True
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError:
            return False
        return True
