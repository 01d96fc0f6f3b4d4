"""Gemini CLI adapter.

Runs ``gemini --output-format=stream-json`` and parses:

    init {session_id}                       -> session
    message role=assistant delta=true       -> text_delta
    message role=assistant                  -> message
    tool_use {tool_name, tool_id, parameters} -> closes the current
                                               assistant message with
                                               the tool use attached
    result {status, stats}                  -> result / error
    error {severity, message}               -> error (warnings are logged)
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

GEMINI_CAPABILITIES = AgentCapabilities(
    can_read=True,
    can_write=True,
    can_execute=True,
    can_fetch=True,
    can_use_mcp=False,
    supports_planning=False,
    extensions={"autoEdit": True, "yolo": True},
)


class GeminiStreamParser:
    """Stateful stream-json parser.

    Gemini streams assistant text as deltas without message ids, so
    the parser numbers assistant segments: a tool use closes the
    current segment and the next delta opens a new one.
    """

    def __init__(self) -> None:
        self._segment = 0

    @property
    def message_id(self) -> str:
        return f"gemini-{self._segment}"

    def parse(self, data: dict[str, Any]) -> list[VendorEvent]:
        etype = data.get("type", "")

        if etype == "init":
            return [VendorEvent(
                kind=VendorEventKind.SESSION,
                continuation_id=data.get("session_id"),
                model=data.get("model"),
            )]

        if etype == "message":
            if data.get("role") != "assistant":
                return []
            text = data.get("content") or ""
            if data.get("delta"):
                if not text:
                    return []
                return [VendorEvent(
                    kind=VendorEventKind.TEXT_DELTA,
                    message_id=self.message_id,
                    text=text,
                )]
            event = VendorEvent(
                kind=VendorEventKind.MESSAGE,
                message_id=self.message_id,
                text=text,
            )
            self._segment += 1
            return [event]

        if etype == "tool_use":
            params = data.get("parameters")
            call = ToolCall(
                tool=str(data.get("tool_name", "")),
                params=params if isinstance(params, dict) else {"input": params},
                tool_use_id=data.get("tool_id"),
            )
            event = VendorEvent(
                kind=VendorEventKind.MESSAGE,
                message_id=self.message_id,
                # None: take the text streamed so far for this segment
                text=None,
                content=[{"type": "tool_use", "id": call.tool_use_id, "name": call.tool, "input": call.params}],
                tool_uses=[call],
            )
            self._segment += 1
            return [event]

        if etype == "tool_result":
            logger.debug(
                "Gemini tool %s finished: %s", data.get("tool_id"), data.get("status"),
            )
            return []

        if etype == "error":
            if data.get("severity") == "warning":
                logger.warning("Gemini warning: %s", data.get("message"))
                return []
            return [VendorEvent(
                kind=VendorEventKind.ERROR,
                error=str(data.get("message") or data),
            )]

        if etype == "result":
            error = None
            if data.get("status") not in (None, "success"):
                detail = data.get("error")
                if isinstance(detail, dict):
                    detail = detail.get("message")
                error = str(detail or f"gemini result status: {data.get('status')}")
            return [VendorEvent(
                kind=VendorEventKind.RESULT,
                usage=data.get("stats") or {},
                error=error,
                raw=data,
            )]

        return []


class GeminiCliCall(JsonLinesProcessCall):
    """One ``gemini --prompt`` subprocess."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._parser = GeminiStreamParser()

    def build_command(self) -> list[str]:
        options = self._options
        settings = options.permission.settings if options.permission else {}
        cmd = [self._command]
        if options.model:
            cmd.extend(["--model", options.model])
        if settings.get("approval_mode"):
            cmd.extend(["--approval-mode", settings["approval_mode"]])
        if options.continuation_id:
            cmd.extend(["--resume", options.continuation_id])
        elif options.fork_from:
            logger.info(
                "Gemini cannot fork session %s; starting a fresh session",
                options.fork_from,
            )
        # --flag=value keeps yargs from reading the prompt as a positional
        cmd.append(f"--prompt={self._prompt}")
        cmd.append("--output-format=stream-json")
        return cmd

    def parse_line(self, data: dict[str, Any]) -> list[VendorEvent]:
        return self._parser.parse(data)


class GeminiCliClient(VendorClient):
    """VendorClient for the Gemini CLI."""

    def __init__(self, command: str = "gemini") -> None:
        self._command = command

    def submit(self, prompt: str, options: VendorOptions) -> VendorCall:
        return GeminiCliCall(
            self._command, prompt, options, api_key_var="GEMINI_API_KEY",
        )

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None


class GeminiAdapter(AgentAdapter):
    """Adapter for the Gemini CLI.

    Auth: uses the CLI's cached credentials. If ``api_key_env`` is
    set and present, the key is passed as GEMINI_API_KEY.
    """

    def __init__(
        self,
        vendor_client: VendorClient | None = None,
        auth_provider: AuthProvider | None = None,
        *,
        command: str = "gemini",
        api_key_env: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            vendor_client or GeminiCliClient(command=command),
            auth_provider or CliLoginAuthProvider(command, api_key_env),
            **kwargs,
        )

    @property
    def agent_type(self) -> str:
        return AgentType.GEMINI.value

    def get_capabilities(self) -> AgentCapabilities:
        return GEMINI_CAPABILITIES
