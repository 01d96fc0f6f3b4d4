"""Tests for tool-server scoping and template resolution."""
from __future__ import annotations

import pytest

from agentmux.engine.errors import TemplateResolutionError
from agentmux.engine.mcp_scoping import (
    build_template_context_from_env,
    render_template,
    resolve_server_templates,
    resolve_tool_servers,
    to_mcp_config,
)
from agentmux.engine.models import (
    ToolServerAuth,
    ToolServerDescriptor,
    ToolServerScope,
    ToolServerTransport,
)
from agentmux.engine.tool_servers import InMemoryToolServerRepository, parse_tool_server


def _server(server_id, scope=ToolServerScope.GLOBAL, **kwargs):
    kwargs.setdefault("command", "mcp-server")
    return ToolServerDescriptor(server_id=server_id, name=f"srv-{server_id}", scope=scope, **kwargs)


@pytest.mark.asyncio
async def test_global_plus_assigned_with_failed_template_dropped():
    repo = InMemoryToolServerRepository([
        _server("1"),
        _server("2", headers={"Authorization": "Bearer {{ user.env.MISSING }}"}),
        _server("3", scope=ToolServerScope.SESSION),
    ])
    repo.assign("s1", "2")
    repo.assign("s1", "3")

    resolution = await resolve_tool_servers("s1", repo, {"user": {"env": {}}})

    assert resolution.ids == ["1", "3"]
    assert resolution.skipped == ["2"]
    assert [e.source for e in resolution.servers] == ["global", "session-assigned"]


@pytest.mark.asyncio
async def test_disabled_and_unassigned_servers_excluded():
    repo = InMemoryToolServerRepository([
        _server("g-off", enabled=False),
        _server("s-other", scope=ToolServerScope.SESSION),
        _server("s-off", scope=ToolServerScope.SESSION, enabled=False),
    ])
    repo.assign("s1", "s-off")
    repo.assign("s2", "s-other")

    resolution = await resolve_tool_servers("s1", repo)
    assert resolution.ids == []


@pytest.mark.asyncio
async def test_no_repository_means_no_servers():
    resolution = await resolve_tool_servers("s1", None)
    assert resolution.servers == []


@pytest.mark.asyncio
async def test_templates_resolved_fresh_per_call():
    repo = InMemoryToolServerRepository([
        _server("gh", transport=ToolServerTransport.HTTP, command=None,
                url="https://mcp.example.com",
                headers={"Authorization": "Bearer {{ user.env.TOKEN }}"}),
    ])
    first = await resolve_tool_servers("s1", repo, {"user": {"env": {"TOKEN": "a"}}})
    second = await resolve_tool_servers("s1", repo, {"user": {"env": {"TOKEN": "b"}}})
    assert first.descriptors[0].headers["Authorization"] == "Bearer a"
    assert second.descriptors[0].headers["Authorization"] == "Bearer b"


@pytest.mark.asyncio
async def test_oauth_server_without_token_reported():
    repo = InMemoryToolServerRepository([
        _server("o", auth=ToolServerAuth(type="oauth")),
    ])
    resolution = await resolve_tool_servers("s1", repo)
    assert resolution.ids == ["o"]
    assert resolution.oauth_servers_needing_auth == ["o"]


@pytest.mark.asyncio
async def test_repository_failure_yields_empty_resolution():
    class BrokenRepo(InMemoryToolServerRepository):
        async def find_all(self, scope=None, enabled=None):
            raise ConnectionError("db down")

    resolution = await resolve_tool_servers("s1", BrokenRepo())
    assert resolution.servers == []


def test_optional_env_dropped_required_env_fails():
    server = _server(
        "fs",
        env={"ROOT": "{{ session.working_directory }}", "EXTRA": "{{ user.env.NOPE }}"},
    )
    resolved = resolve_server_templates(server, {"session": {"working_directory": "/repo"}})
    assert resolved.server.env == {"ROOT": "/repo"}
    assert resolved.unresolved_optional == ["env.EXTRA"]

    strict = _server("fs", env={"EXTRA": "{{ user.env.NOPE }}"}, required_env=["EXTRA"])
    with pytest.raises(TemplateResolutionError) as exc_info:
        resolve_server_templates(strict, {})
    assert exc_info.value.fields == ["env.EXTRA"]


def test_render_template_reports_unresolved():
    text, unresolved = render_template(
        "{{ a.b }}-{{ missing }}", {"a": {"b": "x"}},
    )
    assert text == "x-{{ missing }}"
    assert unresolved == ["missing"]


def test_template_context_only_exposes_allowed_env():
    context = build_template_context_from_env(
        {"GITHUB_TOKEN": "t", "AWS_SECRET": "s"},
        ["GITHUB_TOKEN", "NOT_SET"],
        extra={"session": {"id": "s1"}},
    )
    assert context == {"user": {"env": {"GITHUB_TOKEN": "t"}}, "session": {"id": "s1"}}


def test_to_mcp_config_shapes():
    config = to_mcp_config([
        _server("a", args=["--root", "."], env={"K": "v"}),
        ToolServerDescriptor(
            server_id="b", name="remote", transport=ToolServerTransport.SSE,
            url="https://x", auth=ToolServerAuth(type="bearer", token="tok"),
        ),
    ])
    assert config["srv-a"] == {
        "type": "stdio", "command": "mcp-server", "args": ["--root", "."], "env": {"K": "v"},
    }
    assert config["remote"] == {
        "type": "sse", "url": "https://x", "headers": {"Authorization": "Bearer tok"},
    }


def test_parse_tool_server_validation():
    http = parse_tool_server("gh", {"url": "https://mcp", "scope": "session"})
    assert http.transport == ToolServerTransport.HTTP
    assert http.scope == ToolServerScope.SESSION
    assert parse_tool_server("bad", {"type": "stdio"}) is None
    assert parse_tool_server("bad", {"command": "x", "scope": "planet"}) is None
    assert parse_tool_server("bad", "not a mapping") is None
