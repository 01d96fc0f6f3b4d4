"""Session and task persistence.

StorageAdapter is the seam: the session manager never touches files
directly. Two implementations ship:

- InMemoryStorage: dicts of deep copies; nothing survives the process
- JsonFileStorage: one JSON document per entity under
  ``<root>/sessions/`` and ``<root>/tasks/``, written atomically
  (tempfile + fsync + os.replace) so a crash never leaves a torn file

Queries return entities in insertion order.
"""
from __future__ import annotations

import abc
import copy
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import (
    AgentResponse,
    ResponseStatus,
    Session,
    SessionStatus,
    Task,
    TaskStatus,
    ToolCall,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class StorageAdapter(abc.ABC):
    """Persistence interface for sessions and tasks."""

    @abc.abstractmethod
    async def save_session(self, session: Session) -> None: ...

    @abc.abstractmethod
    async def load_session(self, session_id: str) -> Session | None: ...

    @abc.abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    @abc.abstractmethod
    async def save_task(self, task: Task) -> None: ...

    @abc.abstractmethod
    async def load_task(self, task_id: str) -> Task | None: ...

    @abc.abstractmethod
    async def query_sessions(
        self,
        *,
        worktree_id: str | None = None,
        status: SessionStatus | str | None = None,
        parent_session_id: str | None = None,
        agent_type: str | None = None,
    ) -> list[Session]:
        """Sessions matching every given filter, in insertion order."""

    @abc.abstractmethod
    async def query_tasks(
        self,
        *,
        session_id: str | None = None,
        status: TaskStatus | str | None = None,
        parent_task_id: str | None = None,
    ) -> list[Task]:
        """Tasks matching every given filter, in insertion order."""


def _status_value(status: Any) -> str | None:
    if status is None:
        return None
    return status.value if hasattr(status, "value") else str(status)


def _session_matches(
    session: Session,
    worktree_id: str | None,
    status: str | None,
    parent_session_id: str | None,
    agent_type: str | None,
) -> bool:
    return (
        (worktree_id is None or session.worktree_id == worktree_id)
        and (status is None or session.status.value == status)
        and (parent_session_id is None or session.parent_session_id == parent_session_id)
        and (agent_type is None or session.agent_type == agent_type)
    )


def _task_matches(
    task: Task,
    session_id: str | None,
    status: str | None,
    parent_task_id: str | None,
) -> bool:
    return (
        (session_id is None or task.session_id == session_id)
        and (status is None or task.status.value == status)
        and (parent_task_id is None or task.parent_task_id == parent_task_id)
    )


class InMemoryStorage(StorageAdapter):
    """Keeps deep copies so callers never alias stored state."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._tasks: dict[str, Task] = {}

    async def save_session(self, session: Session) -> None:
        self._sessions[session.session_id] = copy.deepcopy(session)

    async def load_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    async def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    async def save_task(self, task: Task) -> None:
        self._tasks[task.task_id] = copy.deepcopy(task)

    async def load_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task is not None else None

    async def query_sessions(
        self,
        *,
        worktree_id: str | None = None,
        status: SessionStatus | str | None = None,
        parent_session_id: str | None = None,
        agent_type: str | None = None,
    ) -> list[Session]:
        wanted = _status_value(status)
        return [
            copy.deepcopy(s) for s in self._sessions.values()
            if _session_matches(s, worktree_id, wanted, parent_session_id, agent_type)
        ]

    async def query_tasks(
        self,
        *,
        session_id: str | None = None,
        status: TaskStatus | str | None = None,
        parent_task_id: str | None = None,
    ) -> list[Task]:
        wanted = _status_value(status)
        return [
            copy.deepcopy(t) for t in self._tasks.values()
            if _task_matches(t, session_id, wanted, parent_task_id)
        ]


# ── JSON serialization ────────────────────────────────────────


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def response_to_dict(response: AgentResponse) -> dict[str, Any]:
    return {
        "content": response.content,
        "tool_calls": [
            {
                "tool": call.tool,
                "params": call.params,
                "tool_use_id": call.tool_use_id,
                "result": call.result,
                "success": call.success,
            }
            for call in response.tool_calls
        ],
        "files_modified": list(response.files_modified),
        "status": response.status.value,
        "error": response.error,
        "usage": response.usage.to_dict() if response.usage else None,
        "model": response.model,
        "context_window_limit": response.context_window_limit,
        "continuation_id": response.continuation_id,
        "messages": list(response.messages),
        "stopped": response.stopped,
        "metadata": response.metadata,
    }


def response_from_dict(data: dict[str, Any]) -> AgentResponse:
    usage = data.get("usage")
    return AgentResponse(
        content=data.get("content", ""),
        tool_calls=[ToolCall(**call) for call in data.get("tool_calls", [])],
        files_modified=list(data.get("files_modified", [])),
        status=ResponseStatus(data.get("status", ResponseStatus.SUCCESS.value)),
        error=data.get("error"),
        usage=TokenUsage.from_mapping(usage) if usage else None,
        model=data.get("model"),
        context_window_limit=data.get("context_window_limit"),
        continuation_id=data.get("continuation_id"),
        messages=list(data.get("messages", [])),
        stopped=bool(data.get("stopped", False)),
        metadata=dict(data.get("metadata") or {}),
    )


def session_to_dict(session: Session) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "agent_type": session.agent_type,
        "permission_mode": session.permission_mode,
        "title": session.title,
        "description": session.description,
        "parent_session_id": session.parent_session_id,
        "forked_from_session_id": session.forked_from_session_id,
        "worktree_id": session.worktree_id,
        "working_directory": session.working_directory,
        "tool_server_ids": list(session.tool_server_ids),
        "status": session.status.value,
        "created_at": _dt(session.created_at),
        "updated_at": _dt(session.updated_at),
        "task_ids": list(session.task_ids),
        "child_session_ids": list(session.child_session_ids),
        "continuation_id": session.continuation_id,
        "last_error": session.last_error,
        "metadata": session.metadata,
    }


def session_from_dict(data: dict[str, Any]) -> Session:
    fields = dict(data)
    fields.pop("_seq", None)
    fields["status"] = SessionStatus(fields.get("status", SessionStatus.IDLE.value))
    fields["created_at"] = _parse_dt(fields.get("created_at"))
    fields["updated_at"] = _parse_dt(fields.get("updated_at"))
    return Session(**fields)


def task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "session_id": task.session_id,
        "prompt": task.prompt,
        "status": task.status.value,
        "parent_task_id": task.parent_task_id,
        "created_at": _dt(task.created_at),
        "completed_at": _dt(task.completed_at),
        "result": response_to_dict(task.result) if task.result else None,
        "error": task.error,
    }


def task_from_dict(data: dict[str, Any]) -> Task:
    result = data.get("result")
    return Task(
        task_id=data["task_id"],
        session_id=data.get("session_id", ""),
        prompt=data.get("prompt", ""),
        status=TaskStatus(data.get("status", TaskStatus.RUNNING.value)),
        parent_task_id=data.get("parent_task_id"),
        created_at=_parse_dt(data.get("created_at")),
        completed_at=_parse_dt(data.get("completed_at")),
        result=response_from_dict(result) if result else None,
        error=data.get("error"),
    )


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync to persist rename metadata."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Some filesystems do not support directory fsync
        pass


def atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """Atomically replace *path* with *data* as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class JsonFileStorage(StorageAdapter):
    """One JSON file per session and per task.

    Each document carries a ``_seq`` counter so queries can return
    entities in insertion order across restarts.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._sessions_dir = self._root / "sessions"
        self._tasks_dir = self._root / "tasks"
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        self._tasks_dir.mkdir(parents=True, exist_ok=True)
        self._seq: dict[str, int] = {}
        self._next_seq = 0
        for directory in (self._sessions_dir, self._tasks_dir):
            for path, data in self._iter_dir(directory):
                seq = int(data.get("_seq", 0))
                self._seq[path.stem] = seq
                self._next_seq = max(self._next_seq, seq + 1)
        logger.info(
            "JsonFileStorage at %s: %d existing record(s)", self._root, len(self._seq),
        )

    @property
    def root(self) -> Path:
        return self._root

    def _seq_for(self, key: str) -> int:
        seq = self._seq.get(key)
        if seq is None:
            seq = self._next_seq
            self._next_seq += 1
            self._seq[key] = seq
        return seq

    @staticmethod
    def _iter_dir(directory: Path):
        for path in directory.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Skipping unreadable record %s: %s", path, exc)
                continue
            if isinstance(data, dict):
                yield path, data

    def _read(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to read %s: %s", path, exc)
            return None
        return data if isinstance(data, dict) else None

    def _sorted(self, directory: Path) -> list[dict[str, Any]]:
        records = [data for _, data in self._iter_dir(directory)]
        records.sort(key=lambda d: int(d.get("_seq", 0)))
        return records

    async def save_session(self, session: Session) -> None:
        data = session_to_dict(session)
        data["_seq"] = self._seq_for(session.session_id)
        atomic_write_json(self._sessions_dir / f"{session.session_id}.json", data)

    async def load_session(self, session_id: str) -> Session | None:
        data = self._read(self._sessions_dir / f"{session_id}.json")
        return session_from_dict(data) if data is not None else None

    async def delete_session(self, session_id: str) -> bool:
        path = self._sessions_dir / f"{session_id}.json"
        if not path.exists():
            return False
        path.unlink()
        self._seq.pop(session_id, None)
        return True

    async def save_task(self, task: Task) -> None:
        data = task_to_dict(task)
        data["_seq"] = self._seq_for(task.task_id)
        atomic_write_json(self._tasks_dir / f"{task.task_id}.json", data)

    async def load_task(self, task_id: str) -> Task | None:
        data = self._read(self._tasks_dir / f"{task_id}.json")
        return task_from_dict(data) if data is not None else None

    async def query_sessions(
        self,
        *,
        worktree_id: str | None = None,
        status: SessionStatus | str | None = None,
        parent_session_id: str | None = None,
        agent_type: str | None = None,
    ) -> list[Session]:
        wanted = _status_value(status)
        sessions = [session_from_dict(d) for d in self._sorted(self._sessions_dir)]
        return [
            s for s in sessions
            if _session_matches(s, worktree_id, wanted, parent_session_id, agent_type)
        ]

    async def query_tasks(
        self,
        *,
        session_id: str | None = None,
        status: TaskStatus | str | None = None,
        parent_task_id: str | None = None,
    ) -> list[Task]:
        wanted = _status_value(status)
        tasks = [task_from_dict(d) for d in self._sorted(self._tasks_dir)]
        return [t for t in tasks if _task_matches(t, session_id, wanted, parent_task_id)]
