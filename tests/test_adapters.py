"""Tests for the shared adapter contract, the registry, and Claude message mapping."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from agentmux.engine.adapters.base import VendorOptions
from agentmux.engine.adapters.claude_adapter import (
    CLAUDE_CAPABILITIES,
    ClaudeCodeAdapter,
    ClaudeSdkCall,
    convert_sdk_message,
)
from agentmux.engine.adapters.codex_adapter import CodexAdapter
from agentmux.engine.adapters.gemini_adapter import GeminiAdapter
from agentmux.engine.adapters.registry import AgentRegistry, build_agent_registry
from agentmux.engine.auth import AuthCredentials, AuthProvider, StaticAuthProvider
from agentmux.engine.errors import AuthError, IdleTimeoutError, NotFoundError
from agentmux.engine.models import (
    AgentCapabilities,
    ResponseStatus,
    Session,
    SessionStatus,
    ToolCall,
    ToolServerDescriptor,
)
from agentmux.engine.permissions import PermissionGate, translate_permission_mode
from agentmux.engine.streaming import CompleteEvent, StreamingMessageProcessor, VendorEventKind
from agentmux.engine.yaml_config import AgentConfig

from conftest import FakeAdapter, ScriptedVendorClient, message, result, session_event


class ExpiringProvider(AuthProvider):
    def __init__(self):
        self.refreshed = 0

    async def get_credentials(self):
        return AuthCredentials(
            type="oauth",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

    async def refresh_credentials(self):
        self.refreshed += 1
        return AuthCredentials(type="oauth")

    async def validate_credentials(self, credentials):
        return not credentials.is_expired()


class ExplodingProvider(StaticAuthProvider):
    async def get_credentials(self):
        raise OSError("keychain locked")


# ── Auth ──


@pytest.mark.asyncio
async def test_initialize_is_idempotent(adapter):
    await adapter.initialize()
    await adapter.initialize()
    assert adapter.initialized is True


@pytest.mark.asyncio
async def test_initialize_invalid_credentials_raises_auth_error():
    adapter = FakeAdapter(auth_provider=StaticAuthProvider(valid=False))
    with pytest.raises(AuthError) as exc_info:
        await adapter.initialize()
    assert exc_info.value.agent_type == "claude-code"
    assert adapter.initialized is False


@pytest.mark.asyncio
async def test_initialize_refreshes_expired_credentials():
    provider = ExpiringProvider()
    adapter = FakeAdapter(auth_provider=provider)
    await adapter.initialize()
    assert provider.refreshed == 1


@pytest.mark.asyncio
async def test_initialize_wraps_provider_failure():
    adapter = FakeAdapter(auth_provider=ExplodingProvider())
    with pytest.raises(AuthError, match="keychain locked"):
        await adapter.initialize()


@pytest.mark.asyncio
async def test_health_check_never_raises():
    assert await FakeAdapter(auth_provider=ExplodingProvider()).health_check() is False
    assert await FakeAdapter(auth_provider=StaticAuthProvider(valid=False)).health_check() is False

    vendor = ScriptedVendorClient()
    adapter = FakeAdapter(vendor)
    assert await adapter.health_check() is True
    vendor.available = False
    assert await adapter.health_check() is False


# ── Execute ──


@pytest.mark.asyncio
async def test_execute_unknown_session_raises(adapter):
    with pytest.raises(NotFoundError):
        await adapter.execute("nope", "hi")


@pytest.mark.asyncio
async def test_execute_assembles_response(adapter, vendor):
    vendor.queue([
        session_event("t-9"),
        message("Editing now", "m1", tool_uses=[
            ToolCall(tool="Edit", params={"file_path": "src/app.py"}),
            ToolCall(tool="Read", params={"file_path": "README.md"}),
        ]),
        message("Done.", "m2", tool_uses=[ToolCall(tool="Write", params={"file_path": "src/app.py"})]),
        result({"input_tokens": 12, "output_tokens": 5, "cache_read_input_tokens": 2}),
    ])
    adapter.open_session(Session(session_id="s1", permission_mode="acceptEdits"))

    seen = []

    async def observer(event):
        seen.append(event.type)

    response = await adapter.execute("s1", "fix it", on_event=observer)

    assert response.status == ResponseStatus.SUCCESS
    assert response.content == "Done."
    assert response.messages == ["Editing now", "Done."]
    assert response.files_modified == ["src/app.py"]
    assert [c.tool for c in response.tool_calls] == ["Edit", "Read", "Write"]
    assert response.usage.cache_read_tokens == 2
    assert response.model == "claude-sonnet-4-5"
    assert response.context_window_limit == 200_000
    assert response.continuation_id == "t-9"
    assert response.metadata["native_permission_mode"] == "acceptEdits"
    assert seen[0] == "start" and seen[-1] == "end"
    assert adapter.get_session_state("s1").continuation_id == "t-9"
    assert adapter.get_session_state("s1").status == SessionStatus.IDLE


@pytest.mark.asyncio
async def test_execute_without_result_is_partial(adapter, vendor):
    vendor.queue([message("cut short")])
    adapter.open_session(Session(session_id="s1"))
    response = await adapter.execute("s1", "go")
    assert response.status == ResponseStatus.PARTIAL
    assert response.content == "cut short"


@pytest.mark.asyncio
async def test_execute_idle_timeout_marks_failed():
    vendor = ScriptedVendorClient([message("a"), 1.0, result()])
    adapter = FakeAdapter(vendor, idle_timeout_seconds=0.05)
    adapter.open_session(Session(session_id="s1"))
    with pytest.raises(IdleTimeoutError):
        await adapter.execute("s1", "go")
    assert adapter.get_session_state("s1").status == SessionStatus.FAILED
    assert vendor.made[0].abort_requested is True


@pytest.mark.asyncio
async def test_mcp_servers_only_for_capable_agents():
    servers = [ToolServerDescriptor(server_id="fs", name="filesystem", command="mcp-fs")]

    capable = ScriptedVendorClient()
    adapter = FakeAdapter(capable)
    adapter.open_session(Session(session_id="s1"))
    await adapter.execute("s1", "go", tool_servers=servers)
    assert list(capable.calls[0][1].mcp_servers) == ["filesystem"]

    incapable = ScriptedVendorClient()
    adapter = FakeAdapter(incapable, agent_type="codex", capabilities=AgentCapabilities())
    adapter.open_session(Session(session_id="s1", agent_type="codex"))
    await adapter.execute("s1", "go", tool_servers=servers)
    assert incapable.calls[0][1].mcp_servers == {}


@pytest.mark.asyncio
async def test_approval_hook_only_with_callback():
    plain = ScriptedVendorClient()
    adapter = FakeAdapter(plain, permission_gate=PermissionGate())
    adapter.open_session(Session(session_id="s1"))
    await adapter.execute("s1", "go")
    assert plain.calls[0][1].approval_hook is None

    async def callback(session_id, tool_name, arguments):
        return "allow" if tool_name == "Read" else "deny"

    gated = ScriptedVendorClient()
    adapter = FakeAdapter(gated, permission_gate=PermissionGate(callback))
    adapter.open_session(Session(session_id="s1"))
    await adapter.execute("s1", "go")
    hook = gated.calls[0][1].approval_hook
    assert await hook("Read", {}) is True
    assert await hook("Bash", {"command": "rm -rf /"}) is False


@pytest.mark.asyncio
async def test_update_session_cache():
    adapter = FakeAdapter()
    adapter.open_session(Session(session_id="s1"))
    state = adapter.update_session("s1", permission_mode="bogus", working_directory="/w")
    assert state.permission_mode == "default"
    assert state.working_directory == "/w"
    with pytest.raises(NotFoundError):
        adapter.update_session("missing", working_directory="/w")


@pytest.mark.asyncio
async def test_cleanup_shuts_down_vendor_and_clears_cache(adapter, vendor):
    adapter.open_session(Session(session_id="s1"))
    await adapter.initialize()
    await adapter.cleanup()
    assert vendor.shutdown_called is True
    assert adapter.get_session_state("s1") is None
    assert adapter.initialized is False


def test_descriptor_reports_table_default():
    adapter = FakeAdapter(agent_type="codex", default_permission_mode="auto")
    descriptor = adapter.get_descriptor()
    assert descriptor.agent_type == "codex"
    assert descriptor.default_permission_mode == "auto"


# ── Built-in adapters ──


def test_codex_files_modified_skips_deletes():
    adapter = CodexAdapter(vendor_client=ScriptedVendorClient(), auth_provider=StaticAuthProvider())
    call = ToolCall(tool="file_change", params={"changes": [
        {"path": "a.py", "kind": "update"},
        {"path": "b.py", "kind": "delete"},
        {"path": "c.py", "kind": "add"},
    ]})
    assert adapter.files_modified_by(call) == ["a.py", "c.py"]


def test_builtin_adapters_identify_themselves():
    vendor = ScriptedVendorClient()
    auth = StaticAuthProvider()
    assert ClaudeCodeAdapter(vendor, auth).agent_type == "claude-code"
    assert CodexAdapter(vendor, auth).agent_type == "codex"
    assert GeminiAdapter(vendor, auth).agent_type == "gemini"
    assert ClaudeCodeAdapter(vendor, auth).get_capabilities() == CLAUDE_CAPABILITIES
    assert GeminiAdapter(vendor, auth).get_capabilities().extensions["yolo"] is True
    assert CodexAdapter(vendor, auth).get_capabilities().can_use_mcp is False


# ── Registry ──


def test_registry_lookup_and_replace():
    registry = AgentRegistry()
    first = FakeAdapter()
    registry.register(first)
    assert registry.get("claude-code") is first
    assert registry.get("codex") is None
    with pytest.raises(NotFoundError):
        registry.get_or_raise("codex")

    second = FakeAdapter()
    registry.register(second)
    assert registry.get("claude-code") is second
    assert registry.count == 1
    assert registry.unregister("claude-code") is second
    assert registry.count == 0


def test_registry_availability_report():
    registry = AgentRegistry()
    down = ScriptedVendorClient()
    down.available = False
    registry.register(FakeAdapter(agent_type="codex"))
    registry.register(FakeAdapter(down, agent_type="gemini"))
    assert registry.get_availability_report() == {"codex": True, "gemini": False}
    assert registry.list_available() == ["codex"]


def test_build_agent_registry_defaults_and_disabled():
    with patch("shutil.which", return_value=None):
        registry = build_agent_registry()
        assert sorted(registry.list_types()) == ["claude-code", "codex", "gemini"]

        registry = build_agent_registry({
            "codex": AgentConfig(type="codex", default_permission_mode="auto"),
            "gemini": AgentConfig(type="gemini", enabled=False),
        })
    assert registry.list_types() == ["codex"]
    assert registry.get("codex").permission_table.default_mode == "auto"


# ── Claude SDK mapping ──


def test_convert_sdk_messages_by_shape():
    state = {}
    init = SimpleNamespace(subtype="init", data={"session_id": "claude-1"})
    event = convert_sdk_message(init, state)
    assert event.kind == VendorEventKind.SESSION
    assert event.continuation_id == "claude-1"

    start = SimpleNamespace(
        event={"type": "message_start", "message": {"id": "msg_1"}}, session_id="claude-1",
    )
    convert_sdk_message(start, state)
    delta = SimpleNamespace(
        event={
            "type": "content_block_delta", "index": 1,
            "delta": {"type": "text_delta", "text": "Hi"},
        },
        session_id="claude-1",
    )
    event = convert_sdk_message(delta, state)
    assert event.kind == VendorEventKind.TEXT_DELTA
    assert event.message_id == "msg_1:1"
    assert event.text == "Hi"

    assistant = SimpleNamespace(model="claude", content=[
        SimpleNamespace(thinking="hmm", signature=""),
        SimpleNamespace(text="Hi there"),
        SimpleNamespace(id="tu_1", name="Write", input={"file_path": "x.py"}),
    ])
    event = convert_sdk_message(assistant, state)
    assert event.kind == VendorEventKind.MESSAGE
    assert event.text == "Hi there"
    assert event.message_id == "msg_1:1"
    assert event.model == "claude"
    assert event.tool_uses[0].tool == "Write"

    done = SimpleNamespace(
        subtype="success", is_error=False, usage={"input_tokens": 7},
        session_id="claude-1", result="Hi there",
    )
    event = convert_sdk_message(done, state)
    assert event.kind == VendorEventKind.RESULT
    assert event.error is None
    assert event.usage == {"input_tokens": 7}

    failed = SimpleNamespace(
        subtype="error_max_turns", is_error=True, usage=None, session_id="claude-1", result=None,
    )
    assert convert_sdk_message(failed, state).error == "claude result: error_max_turns"

    echo = SimpleNamespace(content=[SimpleNamespace(tool_use_id="tu_1", content="ok")])
    assert convert_sdk_message(echo, state) is None


def test_claude_content_blocks_get_distinct_message_ids():
    state = {}
    sdk_messages = [
        SimpleNamespace(
            event={"type": "message_start", "message": {"id": "msg_2"}}, session_id="claude-1",
        ),
        SimpleNamespace(model="claude", content=[SimpleNamespace(thinking="plan", signature="")]),
        SimpleNamespace(
            event={
                "type": "content_block_delta", "index": 1,
                "delta": {"type": "text_delta", "text": "Writing it"},
            },
            session_id="claude-1",
        ),
        SimpleNamespace(model="claude", content=[SimpleNamespace(text="Writing it")]),
        SimpleNamespace(model="claude", content=[
            SimpleNamespace(id="tu_9", name="Write", input={"file_path": "a.py"}),
        ]),
    ]
    raw = [convert_sdk_message(m, state) for m in sdk_messages]
    assert raw[1] is None
    assert raw[3].message_id == "msg_2:1"
    assert raw[4].message_id == "msg_2:2"

    processor = StreamingMessageProcessor("s1", existing_continuation_id="claude-1")
    events = [e for r in raw if r is not None for e in processor.process(r)]
    completes = [e for e in events if isinstance(e, CompleteEvent)]
    assert [c.message_id for c in completes] == ["msg_2:1", "msg_2:2"]
    assert completes[0].text == "Writing it"
    assert completes[1].tool_uses[0].tool == "Write"
    assert processor.state.pending_chunks == {}


@pytest.mark.asyncio
async def test_claude_can_use_tool_follows_hook():
    asked = []

    async def hook(tool, tool_input):
        asked.append(tool)
        return tool != "Bash"

    call = ClaudeSdkCall("hi", VendorOptions(approval_hook=hook))
    denied = await call._can_use_tool("Bash", {"command": "rm -rf /"}, None)
    allowed = await call._can_use_tool("Read", {"path": "a.py"}, None)
    assert denied.behavior == "deny"
    assert "Bash" in denied.message
    assert allowed.behavior == "allow"
    assert asked == ["Bash", "Read"]

    unhooked = await ClaudeSdkCall("hi", VendorOptions())._can_use_tool("Bash", {}, None)
    assert unhooked.behavior == "allow"


def test_claude_options_kwargs():
    options = VendorOptions(
        continuation_id="claude-1",
        permission=translate_permission_mode("claude-code", "allow-all"),
        mcp_servers={"fs": {"type": "stdio", "command": "mcp-fs", "args": []}},
        cwd="/repo",
        model="claude-sonnet",
        credentials=AuthCredentials(type="api-key", credentials={"api_key": "sk-test"}),
    )
    kwargs = ClaudeSdkCall("hi", options)._build_options_kwargs()
    assert kwargs["resume"] == "claude-1"
    assert "fork_session" not in kwargs
    assert kwargs["permission_mode"] == "bypassPermissions"
    assert kwargs["cwd"] == "/repo"
    assert kwargs["model"] == "claude-sonnet"
    assert kwargs["env"] == {"ANTHROPIC_API_KEY": "sk-test"}
    assert kwargs["include_partial_messages"] is True
    assert "can_use_tool" not in kwargs

    fork = ClaudeSdkCall("hi", VendorOptions(fork_from="claude-1"))._build_options_kwargs()
    assert fork["resume"] == "claude-1"
    assert fork["fork_session"] is True
