"""Tests for permission mode translation and the approval gate."""
from __future__ import annotations

import json

import pytest

from agentmux.engine.models import PermissionMode
from agentmux.engine.permissions import (
    BUILTIN_PERMISSION_TABLES,
    CODEX_PERMISSION_TABLE,
    GEMINI_PERMISSION_TABLE,
    PermissionGate,
    get_permission_table,
    resolve_session_permission_mode,
    translate_permission_mode,
)


@pytest.mark.parametrize("agent_type,mode,expected", [
    ("claude-code", "acceptEdits", "acceptEdits"),
    ("claude-code", "allow-all", "bypassPermissions"),
    ("claude-code", "ask", "default"),
    ("codex", "acceptEdits", "auto"),
    ("codex", "bypassPermissions", "allow-all"),
    ("codex", "plan", "ask"),
    ("gemini", "acceptEdits", "autoEdit"),
    ("gemini", "allow-all", "yolo"),
    ("gemini", "yolo", "yolo"),
])
def test_translate_known_modes(agent_type, mode, expected):
    assert translate_permission_mode(agent_type, mode).mode == expected


@pytest.mark.parametrize("mode", [None, "", "BYPASSPERMISSIONS", "root", 42, "Yolo"])
def test_unknown_modes_fall_back_to_default(mode):
    for table in BUILTIN_PERMISSION_TABLES.values():
        assert table.translate(mode).mode == table.default_mode


def test_enum_and_string_translate_alike():
    for table in BUILTIN_PERMISSION_TABLES.values():
        for mode in PermissionMode:
            assert table.translate(mode) == table.translate(mode.value)


def test_codex_native_settings():
    native = CODEX_PERMISSION_TABLE.translate("auto")
    assert native.settings["approval_policy"] == "on-request"
    assert native.settings["sandbox"] == "workspace-write"
    assert CODEX_PERMISSION_TABLE.translate(None).settings["sandbox"] == "read-only"


def test_gemini_autoedit_maps_to_cli_flag_value():
    assert GEMINI_PERMISSION_TABLE.translate("autoEdit").settings["approval_mode"] == "auto_edit"


def test_unknown_agent_gets_conservative_table():
    table = get_permission_table("my-agent")
    assert table.default_mode == "default"
    assert table.translate("bypassPermissions").mode == "default"


def test_with_default_ignores_non_native_mode():
    table = CODEX_PERMISSION_TABLE.with_default("bypassPermissions")
    assert table.default_mode == "ask"
    assert CODEX_PERMISSION_TABLE.with_default("auto").default_mode == "auto"


def test_resolve_session_mode_keeps_known_and_drops_unknown():
    assert resolve_session_permission_mode(GEMINI_PERMISSION_TABLE, None) == "default"
    assert resolve_session_permission_mode(GEMINI_PERMISSION_TABLE, "acceptEdits") == "acceptEdits"
    assert resolve_session_permission_mode(GEMINI_PERMISSION_TABLE, "autoEdit") == "autoEdit"
    assert resolve_session_permission_mode(GEMINI_PERMISSION_TABLE, "sudo") == "default"


# ── PermissionGate ──


@pytest.mark.asyncio
async def test_gate_without_callback_denies():
    gate = PermissionGate()
    assert gate.enabled is False
    assert await gate.request("s1", "Bash", {"command": "ls"}) is False


@pytest.mark.asyncio
async def test_gate_allow_always_is_per_session():
    asked = []

    async def callback(session_id, tool_name, arguments):
        asked.append((session_id, tool_name))
        return "allow_always"

    gate = PermissionGate(callback)
    assert await gate.request("s1", "Bash") is True
    assert await gate.request("s1", "Bash") is True
    assert asked == [("s1", "Bash")]

    assert await gate.request("s2", "Bash") is True
    assert len(asked) == 2

    gate.forget_session("s1")
    assert gate.is_allowed("s1", "Bash") is False


@pytest.mark.asyncio
async def test_gate_allow_global_persists(tmp_path):
    path = tmp_path / "allowed_tools.json"

    async def callback(session_id, tool_name, arguments):
        return "allow_global"

    gate = PermissionGate(callback, allowed_tools_path=path)
    assert await gate.request("s1", "WebFetch") is True
    assert json.loads(path.read_text()) == ["WebFetch"]

    reloaded = PermissionGate(allowed_tools_path=path)
    assert reloaded.is_allowed("other", "WebFetch") is True


@pytest.mark.asyncio
async def test_gate_deny():
    async def callback(session_id, tool_name, arguments):
        return "deny"

    gate = PermissionGate(callback)
    assert await gate.request("s1", "Bash") is False
    assert gate.is_allowed("s1", "Bash") is False
