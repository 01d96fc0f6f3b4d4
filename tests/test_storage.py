"""Tests for session/task storage."""
from __future__ import annotations

import json

import pytest

from agentmux.engine.adapters.registry import AgentRegistry
from agentmux.engine.models import (
    AgentResponse,
    ResponseStatus,
    Session,
    SessionConfig,
    SessionStatus,
    Task,
    TaskStatus,
    TokenUsage,
    ToolCall,
)
from agentmux.engine.session_manager import SessionManager
from agentmux.engine.storage import InMemoryStorage, JsonFileStorage, atomic_write_json

from conftest import FakeAdapter


@pytest.mark.asyncio
async def test_in_memory_storage_returns_copies():
    storage = InMemoryStorage()
    session = Session(session_id="s1")
    await storage.save_session(session)

    loaded = await storage.load_session("s1")
    loaded.title = "mutated"
    assert (await storage.load_session("s1")).title is None
    assert await storage.load_session("missing") is None
    assert await storage.delete_session("s1") is True
    assert await storage.delete_session("s1") is False


@pytest.mark.asyncio
async def test_queries_filter_and_keep_insertion_order():
    storage = InMemoryStorage()
    for sid, parent, status in [
        ("b", "root", SessionStatus.IDLE),
        ("a", "root", SessionStatus.FAILED),
        ("c", "other", SessionStatus.IDLE),
    ]:
        await storage.save_session(Session(session_id=sid, parent_session_id=parent, status=status))

    children = await storage.query_sessions(parent_session_id="root")
    assert [s.session_id for s in children] == ["b", "a"]
    idle = await storage.query_sessions(status="idle")
    assert [s.session_id for s in idle] == ["b", "c"]


@pytest.mark.asyncio
async def test_json_storage_round_trip_and_reload(tmp_path):
    storage = JsonFileStorage(tmp_path)
    session = Session(
        session_id="s1", agent_type="codex", permission_mode="auto",
        continuation_id="th_1", status=SessionStatus.FAILED, last_error="boom",
        metadata={"k": "v"},
    )
    task = Task(
        task_id="t1", session_id="s1", prompt="go", status=TaskStatus.COMPLETED,
        result=AgentResponse(
            content="done",
            tool_calls=[ToolCall(tool="Write", params={"file_path": "x.py"})],
            files_modified=["x.py"],
            status=ResponseStatus.SUCCESS,
            usage=TokenUsage(input_tokens=4, output_tokens=2),
            model="gpt-5-codex",
            context_window_limit=400_000,
        ),
    )
    await storage.save_session(session)
    await storage.save_task(task)

    reopened = JsonFileStorage(tmp_path)
    loaded = await reopened.load_session("s1")
    assert loaded.status == SessionStatus.FAILED
    assert loaded.continuation_id == "th_1"
    assert loaded.created_at == session.created_at
    assert loaded.metadata == {"k": "v"}

    loaded_task = await reopened.load_task("t1")
    assert loaded_task.status == TaskStatus.COMPLETED
    assert loaded_task.result.content == "done"
    assert loaded_task.result.usage.output_tokens == 2
    assert loaded_task.result.model == "gpt-5-codex"
    assert loaded_task.result.context_window_limit == 400_000
    assert loaded_task.result.tool_calls[0].params == {"file_path": "x.py"}

    on_disk = json.loads((tmp_path / "sessions" / "s1.json").read_text())
    assert on_disk["status"] == "failed"


@pytest.mark.asyncio
async def test_json_storage_order_survives_restart(tmp_path):
    storage = JsonFileStorage(tmp_path)
    for sid in ["zeta", "alpha", "mid"]:
        await storage.save_session(Session(session_id=sid, parent_session_id="p"))
    await storage.save_session(Session(session_id="zeta", parent_session_id="p", title="updated"))

    reopened = JsonFileStorage(tmp_path)
    await reopened.save_session(Session(session_id="late", parent_session_id="p"))
    sessions = await reopened.query_sessions(parent_session_id="p")
    assert [s.session_id for s in sessions] == ["zeta", "alpha", "mid", "late"]


def test_atomic_write_leaves_no_temp_files(tmp_path):
    target = tmp_path / "nested" / "doc.json"
    atomic_write_json(target, {"a": 1})
    atomic_write_json(target, {"a": 2})
    assert json.loads(target.read_text()) == {"a": 2}
    assert [p.name for p in target.parent.iterdir()] == ["doc.json"]


@pytest.mark.asyncio
async def test_session_manager_persists_through_json_storage(tmp_path):
    registry = AgentRegistry()
    registry.register(FakeAdapter())
    manager = SessionManager(registry, JsonFileStorage(tmp_path))

    parent = await manager.create_session(SessionConfig(agent_type="claude-code"))
    child = await manager.spawn_session(parent.session_id)
    outcome = await manager.prompt_session(child.session_id, "hello")

    restarted = SessionManager(registry, JsonFileStorage(tmp_path))
    genealogy = await restarted.get_genealogy(parent.session_id)
    assert [s.session_id for s in genealogy.descendants] == [child.session_id]
    tasks = await restarted.list_tasks(child.session_id)
    assert [t.task_id for t in tasks] == [outcome.task.task_id]
    assert tasks[0].result.content == "echo: hello"
