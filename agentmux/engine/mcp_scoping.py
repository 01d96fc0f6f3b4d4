"""Tool-server (MCP) scoping for sessions.

Scoping rules:
- ALL enabled global-scoped servers are included in every session
- PLUS enabled session-scoped servers explicitly assigned to the session
- Deduplicated by server id; the global entry wins on collision

Template resolution:
Config fields may contain templates like ``{{ user.env.GITHUB_TOKEN }}``,
resolved by dotted lookup into a caller-supplied context. Required fields
(url, command, args, headers, auth values, env keys listed in
``required_env``) must resolve or the server is dropped. Other env values
are optional: unresolved ones are removed and the server is kept.

Resolution runs fresh on every prompt. The template context carries
per-user secrets that may change between calls, so nothing is cached.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import TemplateResolutionError
from .models import ToolServerAuth, ToolServerDescriptor, ToolServerScope, ToolServerTransport
from .tool_servers import ToolServerRepository

logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

SOURCE_GLOBAL = "global"
SOURCE_SESSION = "session-assigned"


@dataclass
class ResolvedToolServer:
    """A tool server with its templates resolved and where it came from."""
    server: ToolServerDescriptor
    source: str


@dataclass
class ToolServerResolution:
    """Outcome of resolving the tool servers for one prompt."""
    servers: list[ResolvedToolServer] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    oauth_servers_needing_auth: list[str] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [entry.server.server_id for entry in self.servers]

    @property
    def descriptors(self) -> list[ToolServerDescriptor]:
        return [entry.server for entry in self.servers]


@dataclass
class TemplateResolution:
    server: ToolServerDescriptor
    unresolved_optional: list[str] = field(default_factory=list)


def contains_template(value: Any) -> bool:
    return isinstance(value, str) and _TEMPLATE_RE.search(value) is not None


def _lookup(context: Mapping[str, Any], path: str) -> str | None:
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    if current is None or isinstance(current, Mapping):
        return None
    text = str(current)
    return text or None


def render_template(value: str, context: Mapping[str, Any]) -> tuple[str, list[str]]:
    """Substitute every template in *value*.

    Returns the rendered string and the list of paths that did not
    resolve (left in place in the returned string).
    """
    unresolved: list[str] = []

    def _sub(match: re.Match[str]) -> str:
        resolved = _lookup(context, match.group(1))
        if resolved is None:
            unresolved.append(match.group(1))
            return match.group(0)
        return resolved

    return _TEMPLATE_RE.sub(_sub, value), unresolved


def resolve_server_templates(
    server: ToolServerDescriptor,
    context: Mapping[str, Any],
) -> TemplateResolution:
    """Resolve all templated fields of *server*.

    Raises TemplateResolutionError if a required field stays unresolved.
    """
    missing_required: list[str] = []
    unresolved_optional: list[str] = []

    def _required(label: str, value: str | None) -> str | None:
        if not contains_template(value):
            return value
        rendered, unresolved = render_template(value, context)  # type: ignore[arg-type]
        if unresolved:
            missing_required.append(label)
        return rendered

    url = _required("url", server.url)
    command = _required("command", server.command)
    args = [_required(f"args[{i}]", arg) or "" for i, arg in enumerate(server.args)]
    headers = {
        key: _required(f"headers.{key}", value) or ""
        for key, value in server.headers.items()
    }

    env: dict[str, str] = {}
    for key, value in server.env.items():
        if not contains_template(value):
            env[key] = value
            continue
        rendered, unresolved = render_template(value, context)
        if not unresolved:
            env[key] = rendered
        elif key in server.required_env:
            missing_required.append(f"env.{key}")
        else:
            unresolved_optional.append(f"env.{key}")
    for key in server.required_env:
        if key not in server.env:
            missing_required.append(f"env.{key}")

    auth = server.auth
    if auth is not None:
        auth = ToolServerAuth(
            type=auth.type,
            token=_required("auth.token", auth.token),
            api_url=_required("auth.api_url", auth.api_url),
            api_token=_required("auth.api_token", auth.api_token),
            api_secret=_required("auth.api_secret", auth.api_secret),
        )

    if missing_required:
        raise TemplateResolutionError(server.name, missing_required)

    resolved = replace(
        server,
        url=url,
        command=command,
        args=args,
        headers=headers,
        env=env,
        auth=auth,
    )
    return TemplateResolution(server=resolved, unresolved_optional=unresolved_optional)


def _has_templates(server: ToolServerDescriptor) -> bool:
    fields: list[Any] = [server.url, server.command, *server.args]
    fields.extend(server.headers.values())
    fields.extend(server.env.values())
    if server.auth is not None:
        fields.extend([
            server.auth.token,
            server.auth.api_url,
            server.auth.api_token,
            server.auth.api_secret,
        ])
    return any(contains_template(value) for value in fields) or bool(server.required_env)


async def resolve_tool_servers(
    session_id: str,
    repository: ToolServerRepository | None,
    template_context: Mapping[str, Any] | None = None,
) -> ToolServerResolution:
    """Compute the ordered tool-server set visible to *session_id*."""
    resolution = ToolServerResolution()
    if repository is None:
        logger.debug("No tool-server repository; session %s gets no MCP servers", session_id)
        return resolution

    context = template_context or {}
    candidates: list[ResolvedToolServer] = []
    seen: set[str] = set()

    try:
        global_servers = await repository.find_all(
            scope=ToolServerScope.GLOBAL, enabled=True,
        )
        session_servers = await repository.list_servers(session_id, enabled_only=True)
    except Exception as exc:
        # Never block a prompt on the repository
        logger.error(
            "Failed to load tool servers for session %s: %s",
            session_id, exc, exc_info=True,
        )
        return resolution

    for source, servers in (
        (SOURCE_GLOBAL, global_servers),
        (SOURCE_SESSION, session_servers),
    ):
        for server in servers or []:
            if server.server_id in seen:
                logger.warning(
                    "Skipping duplicate %s tool server: %s (%s)",
                    source, server.name, server.server_id,
                )
                continue
            seen.add(server.server_id)
            candidates.append(ResolvedToolServer(server=server, source=source))

    logger.debug(
        "Session %s: %d global + %d assigned tool server(s), %d after dedupe",
        session_id, len(global_servers or []), len(session_servers or []),
        len(candidates),
    )

    for entry in candidates:
        server = entry.server
        if _has_templates(server):
            try:
                result = resolve_server_templates(server, context)
            except TemplateResolutionError as exc:
                logger.warning("Skipping tool server %r: %s", server.name, exc)
                resolution.skipped.append(server.server_id)
                continue
            if result.unresolved_optional:
                logger.warning(
                    "Tool server %r has unresolved optional templates: %s",
                    server.name, ", ".join(result.unresolved_optional),
                )
            entry = ResolvedToolServer(server=result.server, source=entry.source)

        auth = entry.server.auth
        if auth is not None and auth.type == "oauth" and not auth.token:
            resolution.oauth_servers_needing_auth.append(entry.server.server_id)
        resolution.servers.append(entry)

    if resolution.skipped:
        logger.info(
            "Session %s: skipped %d tool server(s) with unresolved required templates",
            session_id, len(resolution.skipped),
        )
    return resolution


def build_template_context_from_env(
    env: Mapping[str, str],
    allowed_keys: list[str] | None = None,
    extra: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a template context exposing only user-designated env vars.

    Only names in *allowed_keys* appear under ``user.env``; the rest of
    the process environment stays out of tool-server configs.
    """
    user_env = {key: env[key] for key in allowed_keys or [] if key in env}
    context: dict[str, Any] = {"user": {"env": user_env}}
    for key, value in (extra or {}).items():
        context[key] = value
    return context


def to_mcp_config(servers: list[ToolServerDescriptor]) -> dict[str, dict[str, Any]]:
    """Build the ``mcp_servers`` dict vendors expect, keyed by server name."""
    configs: dict[str, dict[str, Any]] = {}
    for server in servers:
        if server.transport == ToolServerTransport.STDIO:
            config: dict[str, Any] = {
                "type": "stdio",
                "command": server.command,
                "args": list(server.args),
            }
            if server.env:
                config["env"] = dict(server.env)
        else:
            config = {"type": server.transport.value, "url": server.url}
            headers = dict(server.headers)
            if server.auth is not None and server.auth.token and "Authorization" not in headers:
                headers["Authorization"] = f"Bearer {server.auth.token}"
            if headers:
                config["headers"] = headers
        configs[server.name] = config
    return configs
