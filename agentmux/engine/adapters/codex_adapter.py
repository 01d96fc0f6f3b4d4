"""OpenAI Codex CLI adapter.

Runs ``codex exec --json`` (``codex exec resume <thread_id>`` to
continue) and parses its JSONL output:

    thread.started {thread_id}                -> session
    item.completed agent_message              -> message
    item.completed command_execution          -> message with a tool use
    item.completed file_change / mcp_tool_call -> message with a tool use
    turn.completed {usage}                    -> result
    turn.failed {error} / error {message}     -> error

Permission modes map onto Codex's approval policy and sandbox.
Codex has no fork primitive: forks start a fresh thread.
"""
from __future__ import annotations

import logging
import shutil
from typing import Any

from ..auth import AuthProvider, CliLoginAuthProvider
from ..models import AgentCapabilities, AgentType, ToolCall
from ..streaming import VendorEvent, VendorEventKind
from .base import AgentAdapter, VendorCall, VendorClient, VendorOptions
from .process import JsonLinesProcessCall

logger = logging.getLogger(__name__)

CODEX_CAPABILITIES = AgentCapabilities(
    can_read=True,
    can_write=True,
    can_execute=True,
    can_fetch=False,
    can_use_mcp=False,
    supports_planning=False,
    extensions={"multiFile": True, "diff": True},
)


def parse_codex_event(data: dict[str, Any]) -> list[VendorEvent]:
    """Convert one ``codex exec --json`` line into raw vendor events."""
    etype = data.get("type", "")

    if etype == "thread.started":
        return [VendorEvent(
            kind=VendorEventKind.SESSION,
            continuation_id=data.get("thread_id"),
        )]

    if etype == "item.completed":
        item = data.get("item") or {}
        item_type = item.get("type", "")
        item_id = item.get("id")

        if item_type == "agent_message":
            return [VendorEvent(
                kind=VendorEventKind.MESSAGE,
                message_id=item_id,
                text=item.get("text", ""),
            )]

        call: ToolCall | None = None
        if item_type == "command_execution":
            exit_code = item.get("exit_code")
            call = ToolCall(
                tool="command_execution",
                params={"command": item.get("command", "")},
                tool_use_id=item_id,
                result=item.get("aggregated_output", item.get("output", "")),
                success=item.get("status") != "failed" and exit_code in (None, 0),
            )
        elif item_type == "file_change":
            call = ToolCall(
                tool="file_change",
                params={"changes": item.get("changes") or []},
                tool_use_id=item_id,
                success=item.get("status") != "failed",
            )
        elif item_type == "mcp_tool_call":
            arguments = item.get("arguments", item.get("input"))
            call = ToolCall(
                tool=str(item.get("tool") or item.get("tool_name") or "mcp_tool_call"),
                params=arguments if isinstance(arguments, dict) else {"input": arguments},
                tool_use_id=item_id,
                result=item.get("result"),
                success=item.get("status") != "failed",
            )
        if call is not None:
            return [VendorEvent(
                kind=VendorEventKind.MESSAGE,
                message_id=item_id,
                text="",
                content=[{"type": "tool_use", "id": item_id, "name": call.tool, "input": call.params}],
                tool_uses=[call],
            )]
        return []

    if etype == "turn.completed":
        return [VendorEvent(
            kind=VendorEventKind.RESULT,
            usage=data.get("usage") or {},
            model=data.get("model"),
            raw=data,
        )]

    if etype == "turn.failed":
        error = data.get("error") or {}
        message = error.get("message") if isinstance(error, dict) else str(error)
        return [VendorEvent(kind=VendorEventKind.ERROR, error=message or "turn failed")]

    if etype == "error":
        return [VendorEvent(
            kind=VendorEventKind.ERROR,
            error=str(data.get("message") or data),
        )]

    return []


class CodexExecCall(JsonLinesProcessCall):
    """One ``codex exec --json`` subprocess."""

    def build_command(self) -> list[str]:
        options = self._options
        settings = options.permission.settings if options.permission else {}
        cmd = [self._command]
        # Tool servers are not forwarded; keep ~/.codex/config.toml servers out too
        cmd.extend(["-c", "mcp_servers={}"])
        if settings.get("approval_policy"):
            cmd.extend(["-c", f'approval_policy="{settings["approval_policy"]}"'])
        if settings.get("sandbox"):
            cmd.extend(["-c", f'sandbox_mode="{settings["sandbox"]}"'])
        if options.model:
            cmd.extend(["-c", f'model="{options.model}"'])
        cmd.append("exec")
        cmd.append("--json")
        cmd.append("--skip-git-repo-check")
        if options.cwd:
            cmd.extend(["-C", options.cwd])
        if options.continuation_id:
            cmd.extend(["resume", options.continuation_id])
        elif options.fork_from:
            logger.info(
                "Codex cannot fork thread %s; starting a fresh thread",
                options.fork_from,
            )
        cmd.append("-")
        return cmd

    def stdin_payload(self) -> bytes | None:
        return self._prompt.encode("utf-8")

    def parse_line(self, data: dict[str, Any]) -> list[VendorEvent]:
        return parse_codex_event(data)


class CodexExecClient(VendorClient):
    """VendorClient for the Codex CLI."""

    def __init__(self, command: str = "codex") -> None:
        self._command = command

    def submit(self, prompt: str, options: VendorOptions) -> VendorCall:
        return CodexExecCall(
            self._command, prompt, options, api_key_var="OPENAI_API_KEY",
        )

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None


class CodexAdapter(AgentAdapter):
    """Adapter for the OpenAI Codex CLI.

    Auth: works with the CLI's own login by default. If
    ``api_key_env`` is set and present, the key is passed to the
    subprocess as OPENAI_API_KEY.
    """

    def __init__(
        self,
        vendor_client: VendorClient | None = None,
        auth_provider: AuthProvider | None = None,
        *,
        command: str = "codex",
        api_key_env: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            vendor_client or CodexExecClient(command=command),
            auth_provider or CliLoginAuthProvider(command, api_key_env),
            **kwargs,
        )

    @property
    def agent_type(self) -> str:
        return AgentType.CODEX.value

    def get_capabilities(self) -> AgentCapabilities:
        return CODEX_CAPABILITIES

    def files_modified_by(self, call: ToolCall) -> list[str]:
        if call.tool == "file_change":
            return [
                str(change["path"])
                for change in call.params.get("changes", [])
                if isinstance(change, dict) and change.get("path")
                and change.get("kind") != "delete"
            ]
        return super().files_modified_by(call)
