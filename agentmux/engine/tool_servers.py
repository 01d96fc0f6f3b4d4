"""Tool-server (MCP) repository interface and in-memory implementation.

Config format accepted by ``parse_tool_server`` (YAML or JSON):

    github:
      type: http
      url: https://mcp.github.com/v1
      scope: global
      headers:
        Authorization: "Bearer {{ user.env.GITHUB_TOKEN }}"
    filesystem:
      command: npx
      args: ["-y", "@modelcontextprotocol/server-filesystem"]
      scope: session
      env:
        ROOT: "{{ session.working_directory }}"
"""
from __future__ import annotations

import abc
import logging
from typing import Any

from .models import (
    ToolServerAuth,
    ToolServerDescriptor,
    ToolServerScope,
    ToolServerTransport,
)

logger = logging.getLogger(__name__)


class ToolServerRepository(abc.ABC):
    """Source of tool-server descriptors and session assignments."""

    @abc.abstractmethod
    async def find_all(
        self,
        scope: ToolServerScope | None = None,
        enabled: bool | None = None,
    ) -> list[ToolServerDescriptor]:
        """Return servers matching *scope* / *enabled* (None = any)."""

    @abc.abstractmethod
    async def list_servers(
        self,
        session_id: str,
        enabled_only: bool = True,
    ) -> list[ToolServerDescriptor]:
        """Return servers explicitly assigned to *session_id*."""


class InMemoryToolServerRepository(ToolServerRepository):
    """Keeps descriptors and assignments in dicts, in insertion order."""

    def __init__(self, servers: list[ToolServerDescriptor] | None = None) -> None:
        self._servers: dict[str, ToolServerDescriptor] = {}
        self._assignments: dict[str, list[str]] = {}
        for server in servers or []:
            self.add(server)

    def add(self, server: ToolServerDescriptor) -> None:
        self._servers[server.server_id] = server

    def remove(self, server_id: str) -> bool:
        removed = self._servers.pop(server_id, None) is not None
        for assigned in self._assignments.values():
            if server_id in assigned:
                assigned.remove(server_id)
        return removed

    def assign(self, session_id: str, server_id: str) -> None:
        assigned = self._assignments.setdefault(session_id, [])
        if server_id not in assigned:
            assigned.append(server_id)

    def unassign(self, session_id: str, server_id: str) -> None:
        assigned = self._assignments.get(session_id, [])
        if server_id in assigned:
            assigned.remove(server_id)

    async def find_all(
        self,
        scope: ToolServerScope | None = None,
        enabled: bool | None = None,
    ) -> list[ToolServerDescriptor]:
        return [
            server for server in self._servers.values()
            if (scope is None or server.scope == scope)
            and (enabled is None or server.enabled == enabled)
        ]

    async def list_servers(
        self,
        session_id: str,
        enabled_only: bool = True,
    ) -> list[ToolServerDescriptor]:
        result = []
        for server_id in self._assignments.get(session_id, []):
            server = self._servers.get(server_id)
            if server is None:
                logger.debug(
                    "Session %s assigned to unknown tool server %s",
                    session_id, server_id,
                )
                continue
            if enabled_only and not server.enabled:
                continue
            result.append(server)
        return result


def parse_tool_server(server_id: str, cfg: dict[str, Any]) -> ToolServerDescriptor | None:
    """Parse one raw config entry. Returns None (logged) when invalid."""
    if not isinstance(cfg, dict):
        logger.warning("Tool server %s: config must be a mapping", server_id)
        return None

    transport_raw = cfg.get("type") or cfg.get("transport") or (
        "http" if cfg.get("url") else "stdio"
    )
    try:
        transport = ToolServerTransport(transport_raw)
    except ValueError:
        logger.warning(
            "Tool server %s: unknown transport %r, skipping",
            server_id, transport_raw,
        )
        return None

    try:
        scope = ToolServerScope(cfg.get("scope", "global"))
    except ValueError:
        logger.warning(
            "Tool server %s: unknown scope %r, skipping",
            server_id, cfg.get("scope"),
        )
        return None

    if transport == ToolServerTransport.STDIO and not cfg.get("command"):
        logger.warning("Tool server %s: stdio transport needs a command", server_id)
        return None
    if transport != ToolServerTransport.STDIO and not cfg.get("url"):
        logger.warning("Tool server %s: %s transport needs a url", server_id, transport.value)
        return None

    auth = None
    auth_raw = cfg.get("auth")
    if isinstance(auth_raw, dict):
        auth = ToolServerAuth(
            type=str(auth_raw.get("type", "bearer")),
            token=auth_raw.get("token"),
            api_url=auth_raw.get("api_url"),
            api_token=auth_raw.get("api_token"),
            api_secret=auth_raw.get("api_secret"),
        )

    return ToolServerDescriptor(
        server_id=str(cfg.get("id", server_id)),
        name=str(cfg.get("name", server_id)),
        scope=scope,
        transport=transport,
        enabled=bool(cfg.get("enabled", True)),
        command=cfg.get("command"),
        args=[str(a) for a in cfg.get("args", [])],
        url=cfg.get("url"),
        env={str(k): str(v) for k, v in (cfg.get("env") or {}).items()},
        headers={str(k): str(v) for k, v in (cfg.get("headers") or {}).items()},
        auth=auth,
        required_env=[str(k) for k in cfg.get("required_env", [])],
    )
