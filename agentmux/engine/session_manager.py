"""Session and task lifecycle, routing, and genealogy.

The SessionManager is the single owner of Session and Task records.
Adapters keep private caches; everything they learn that matters
across turns (the vendor continuation id, the final status) is
written back here.

Prompt routing:
- continue:   same session, resumes its vendor continuation
- fork:       new sibling (same parent, forked_from = source) with a
              fresh continuation; vendors that can branch history get
              the source continuation as the fork point
- subsession: new child of the source session

Concurrency:
- One run lock per session: a second prompt waits (busy_policy
  "wait") or raises SessionBusyError ("reject"). At most one task per
  session is ever RUNNING.
- One write lock per entity id: read-modify-write of a record is
  never interleaved.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from .adapters.base import AgentAdapter
from .adapters.registry import AgentRegistry
from .config import EngineConfig
from .errors import (
    ExecutionError,
    InvalidTransitionError,
    NotFoundError,
    OrchestrationError,
    SessionBusyError,
)
from .lifecycle import VALID_TRANSITIONS, validate_transition
from .mcp_scoping import resolve_tool_servers
from .models import (
    Genealogy,
    PromptMode,
    PromptOptions,
    PromptOutcome,
    Session,
    SessionConfig,
    SessionStatus,
    SpawnOptions,
    Task,
    TaskGenealogy,
    TaskStatus,
    agent_type_value,
)
from .notifications import NotificationChannel
from .permissions import PermissionGate, resolve_session_permission_mode
from .storage import InMemoryStorage, StorageAdapter, session_to_dict, task_to_dict
from .streaming import (
    CancellationToken,
    ChunkEvent,
    CompleteEvent,
    NormalizedEvent,
    SessionIdCapturedEvent,
)
from .tool_servers import ToolServerRepository

logger = logging.getLogger(__name__)

# Builds the tool-server template context for a session, fresh per prompt.
TemplateContextProvider = Callable[[Session], Mapping[str, Any]]

# Fields update_session() may change. Status and lineage are managed here.
_UPDATABLE_FIELDS = {
    "title",
    "description",
    "permission_mode",
    "worktree_id",
    "working_directory",
    "tool_server_ids",
    "metadata",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Creates, routes, and tracks sessions and their tasks."""

    def __init__(
        self,
        registry: AgentRegistry,
        storage: StorageAdapter | None = None,
        *,
        config: EngineConfig | None = None,
        tool_server_repository: ToolServerRepository | None = None,
        notifications: NotificationChannel | None = None,
        permission_gate: PermissionGate | None = None,
        template_context_provider: TemplateContextProvider | None = None,
    ) -> None:
        self._registry = registry
        self._storage = storage or InMemoryStorage()
        self._config = config or EngineConfig()
        self._tool_servers = tool_server_repository
        self._notifications = notifications
        self._gate = permission_gate
        self._template_context_provider = template_context_provider
        self._run_locks: dict[str, asyncio.Lock] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._cancel_tokens: dict[str, CancellationToken] = {}
        self._terminating: set[str] = set()

    @property
    def storage(self) -> StorageAdapter:
        return self._storage

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    # ── Locks & helpers ───────────────────────────────────────

    def _run_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._run_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._run_locks[session_id] = lock
        return lock

    def _write_lock(self, entity_id: str) -> asyncio.Lock:
        lock = self._write_locks.get(entity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._write_locks[entity_id] = lock
        return lock

    def is_running(self, session_id: str) -> bool:
        return session_id in self._cancel_tokens

    def running_session_ids(self) -> list[str]:
        return list(self._cancel_tokens)

    def _notify(self, event_type: str, **payload: Any) -> None:
        if self._notifications is None:
            return
        try:
            self._notifications.publish(event_type, **payload)
        except Exception as exc:
            logger.warning("Failed to publish %s notification: %s", event_type, exc)

    async def _load(self, session_id: str) -> Session:
        session = await self._storage.load_session(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    async def _mutate(
        self,
        session_id: str,
        change: Callable[[Session], None],
        *,
        notify: bool = True,
    ) -> Session:
        """Read-modify-write one session under its entity lock."""
        async with self._write_lock(session_id):
            session = await self._load(session_id)
            change(session)
            session.updated_at = _utcnow()
            await self._storage.save_session(session)
        if notify:
            self._notify("session_updated", session=session_to_dict(session))
        return session

    async def _set_status(
        self,
        session_id: str,
        target: SessionStatus,
        **fields: Any,
    ) -> Session:
        def _change(session: Session) -> None:
            if session.status != target:
                validate_transition(session.status, target)
                session.status = target
            for key, value in fields.items():
                setattr(session, key, value)

        return await self._mutate(session_id, _change)

    async def _save_task(self, task: Task, event_type: str = "task_updated") -> None:
        # Task writes only come from the turn holding the session's run lock.
        async with self._write_lock(task.task_id):
            await self._storage.save_task(task)
        self._write_locks.pop(task.task_id, None)
        self._notify(event_type, task=task_to_dict(task))

    def _release_session_locks(self, session_id: str) -> None:
        self._run_locks.pop(session_id, None)
        self._write_locks.pop(session_id, None)

    # ── Sessions ──────────────────────────────────────────────

    async def create_session(self, config: SessionConfig) -> Session:
        """Create an idle session. Unset permission mode → agent default."""
        agent_type = agent_type_value(config.agent_type)
        adapter = self._registry.get_or_raise(agent_type)
        permission_mode = resolve_session_permission_mode(
            adapter.permission_table, config.permission_mode,
        )

        session = Session(
            agent_type=agent_type,
            permission_mode=permission_mode,
            title=config.title,
            description=config.description,
            parent_session_id=config.parent_session_id,
            worktree_id=config.worktree_id,
            working_directory=config.working_directory or self._config.default_cwd,
            tool_server_ids=list(config.tool_server_ids),
            metadata=dict(config.metadata),
        )
        if config.session_id:
            if await self._storage.load_session(config.session_id) is not None:
                raise OrchestrationError(f"Session {config.session_id} already exists")
            session.session_id = config.session_id
        return await self._insert(session)

    async def _insert(self, session: Session) -> Session:
        """Persist a new session and link it into its parent's child index."""
        if session.parent_session_id is not None:
            await self._load(session.parent_session_id)
        async with self._write_lock(session.session_id):
            await self._storage.save_session(session)
        if session.parent_session_id is not None:
            child_id = session.session_id

            def _link(parent: Session) -> None:
                if child_id not in parent.child_session_ids:
                    parent.child_session_ids.append(child_id)

            await self._mutate(session.parent_session_id, _link)

        self._registry.get_or_raise(session.agent_type).open_session(session)
        logger.info(
            "Session %s created (agent=%s, permission=%s, parent=%s, forked_from=%s)",
            session.session_id, session.agent_type, session.permission_mode,
            session.parent_session_id, session.forked_from_session_id,
        )
        self._notify("session_created", session=session_to_dict(session))
        return session

    async def get_session(self, session_id: str) -> Session:
        return await self._load(session_id)

    async def update_session(self, session_id: str, **changes: Any) -> Session:
        """Patch mutable session fields."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session field(s): {', '.join(sorted(unknown))}")

        def _change(session: Session) -> None:
            for key, value in changes.items():
                if key == "permission_mode":
                    adapter = self._registry.get_or_raise(session.agent_type)
                    value = resolve_session_permission_mode(adapter.permission_table, value)
                setattr(session, key, value)

        session = await self._mutate(session_id, _change)
        adapter = self._registry.get(session.agent_type)
        if adapter is not None:
            adapter.open_session(session)
        return session

    async def list_sessions(
        self,
        *,
        worktree_id: str | None = None,
        status: SessionStatus | str | None = None,
        parent_session_id: str | None = None,
        agent_type: str | None = None,
    ) -> list[Session]:
        return await self._storage.query_sessions(
            worktree_id=worktree_id,
            status=status,
            parent_session_id=parent_session_id,
            agent_type=agent_type_value(agent_type) if agent_type else None,
        )

    async def spawn_session(
        self,
        parent_session_id: str,
        options: SpawnOptions | None = None,
    ) -> Session:
        """Create an idle child session pre-populated from its parent."""
        options = options or SpawnOptions()
        parent = await self._load(parent_session_id)
        agent_type = agent_type_value(options.agent_type or parent.agent_type)
        adapter = self._registry.get_or_raise(agent_type)

        if options.permission_mode is not None:
            requested = options.permission_mode
        elif agent_type == parent.agent_type:
            requested = parent.permission_mode
        else:
            requested = None
        child = Session(
            agent_type=agent_type,
            permission_mode=resolve_session_permission_mode(adapter.permission_table, requested),
            title=options.title or parent.title,
            parent_session_id=parent.session_id,
            worktree_id=parent.worktree_id,
            working_directory=options.working_directory or parent.working_directory,
            tool_server_ids=list(
                options.tool_server_ids
                if options.tool_server_ids is not None
                else parent.tool_server_ids
            ),
        )
        if options.task_id:
            child.metadata["spawned_by_task_id"] = options.task_id
        return await self._insert(child)

    async def _fork(self, source: Session, options: PromptOptions) -> tuple[Session, str | None]:
        """Create a sibling of *source*. Returns it and the fork point."""
        agent_type = agent_type_value(options.agent_type or source.agent_type)
        adapter = self._registry.get_or_raise(agent_type)
        same_agent = agent_type == source.agent_type
        requested = options.permission_mode or (source.permission_mode if same_agent else None)
        sibling = Session(
            agent_type=agent_type,
            permission_mode=resolve_session_permission_mode(adapter.permission_table, requested),
            title=options.title or source.title,
            description=source.description,
            parent_session_id=source.parent_session_id,
            forked_from_session_id=source.session_id,
            worktree_id=source.worktree_id,
            working_directory=source.working_directory,
            tool_server_ids=list(source.tool_server_ids),
        )
        fork_point = source.continuation_id if same_agent else None
        return await self._insert(sibling), fork_point

    async def stop_session(self, session_id: str) -> bool:
        """Cooperatively stop the in-flight turn. Returns False if none was running."""
        await self._load(session_id)
        token = self._cancel_tokens.get(session_id)
        if token is None:
            return False
        logger.info("Stopping in-flight turn of session %s", session_id)
        token.cancel("stop")
        return True

    async def terminate_session(self, session_id: str) -> Session:
        """Move the session to COMPLETED. Idempotent; stops any in-flight turn."""
        session = await self._load(session_id)
        if session.status == SessionStatus.COMPLETED:
            return session

        self._terminating.add(session_id)
        try:
            token = self._cancel_tokens.get(session_id)
            if token is not None:
                token.cancel("terminate")
            async with self._run_lock(session_id):
                session = await self._set_status(session_id, SessionStatus.COMPLETED)
        finally:
            self._terminating.discard(session_id)

        self._release_session_locks(session_id)
        adapter = self._registry.get(session.agent_type)
        if adapter is not None:
            await adapter.terminate_session(session_id)
        if self._gate is not None:
            self._gate.forget_session(session_id)
        logger.info("Session %s terminated", session_id)
        self._notify("session_terminated", session=session_to_dict(session))
        return session

    # ── Genealogy ─────────────────────────────────────────────

    async def get_genealogy(self, session_id: str) -> Genealogy:
        """Ancestors (nearest first), descendants (breadth-first), siblings."""
        session = await self._load(session_id)

        ancestors: list[Session] = []
        seen = {session.session_id}
        parent_id = session.parent_session_id
        while parent_id is not None:
            if parent_id in seen:
                logger.error("Session genealogy cycle at %s", parent_id)
                break
            parent = await self._storage.load_session(parent_id)
            if parent is None:
                logger.warning("Session %s has missing parent %s", session_id, parent_id)
                break
            seen.add(parent_id)
            ancestors.append(parent)
            parent_id = parent.parent_session_id

        descendants: list[Session] = []
        frontier = [session.session_id]
        while frontier:
            next_frontier: list[str] = []
            for current_id in frontier:
                for child in await self._storage.query_sessions(parent_session_id=current_id):
                    if child.session_id in seen:
                        continue
                    seen.add(child.session_id)
                    descendants.append(child)
                    next_frontier.append(child.session_id)
            frontier = next_frontier

        siblings: list[Session] = []
        if session.parent_session_id is not None:
            siblings = [
                s for s in await self._storage.query_sessions(
                    parent_session_id=session.parent_session_id,
                )
                if s.session_id != session.session_id
            ]
        return Genealogy(ancestors=ancestors, descendants=descendants, siblings=siblings)

    # ── Tasks ─────────────────────────────────────────────────

    async def get_task(self, task_id: str) -> Task:
        task = await self._storage.load_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    async def list_tasks(
        self,
        session_id: str,
        *,
        status: TaskStatus | str | None = None,
        parent_task_id: str | None = None,
    ) -> list[Task]:
        await self._load(session_id)
        return await self._storage.query_tasks(
            session_id=session_id, status=status, parent_task_id=parent_task_id,
        )

    async def get_task_genealogy(self, task_id: str) -> TaskGenealogy:
        """Ancestor and descendant tasks via parent_task_id, across sessions."""
        task = await self.get_task(task_id)
        seen = {task.task_id}

        ancestors: list[Task] = []
        parent_id = task.parent_task_id
        while parent_id is not None and parent_id not in seen:
            parent = await self._storage.load_task(parent_id)
            if parent is None:
                break
            seen.add(parent_id)
            ancestors.append(parent)
            parent_id = parent.parent_task_id

        descendants: list[Task] = []
        frontier = [task.task_id]
        while frontier:
            next_frontier: list[str] = []
            for current_id in frontier:
                for child in await self._storage.query_tasks(parent_task_id=current_id):
                    if child.task_id in seen:
                        continue
                    seen.add(child.task_id)
                    descendants.append(child)
                    next_frontier.append(child.task_id)
            frontier = next_frontier
        return TaskGenealogy(ancestors=ancestors, descendants=descendants)

    # ── Prompting ─────────────────────────────────────────────

    async def prompt_session(
        self,
        session_id: str,
        options: PromptOptions | str,
    ) -> PromptOutcome:
        """Route a prompt (continue / fork / subsession) and run it."""
        if isinstance(options, str):
            options = PromptOptions(prompt=options)
        mode = PromptMode(options.mode)
        source = await self._load(session_id)

        if mode == PromptMode.CONTINUE:
            if options.agent_type or options.permission_mode:
                logger.debug(
                    "Session %s: agent/permission overrides ignored for continue",
                    session_id,
                )
            return await self._run_turn(
                source.session_id, options.prompt, parent_task_id=options.task_id,
            )

        parent_task_id = options.task_id or (source.task_ids[-1] if source.task_ids else None)
        if mode == PromptMode.FORK:
            target, fork_point = await self._fork(source, options)
            return await self._run_turn(
                target.session_id, options.prompt,
                parent_task_id=parent_task_id, fork_from=fork_point,
            )

        target = await self.spawn_session(
            source.session_id,
            SpawnOptions(
                agent_type=options.agent_type,
                permission_mode=options.permission_mode,
                title=options.title,
                task_id=parent_task_id,
            ),
        )
        return await self._run_turn(
            target.session_id, options.prompt, parent_task_id=parent_task_id,
        )

    async def _run_turn(
        self,
        session_id: str,
        prompt: str,
        *,
        parent_task_id: str | None = None,
        fork_from: str | None = None,
    ) -> PromptOutcome:
        lock = self._run_lock(session_id)
        if lock.locked():
            if self._config.busy_policy == "reject":
                raise SessionBusyError(session_id)
            logger.info("Session %s busy; waiting for the running turn", session_id)

        async with lock:
            session = await self._load(session_id)
            if session_id in self._terminating:
                raise OrchestrationError(f"Session {session_id} is being terminated")
            if session.status == SessionStatus.COMPLETED:
                self._release_session_locks(session_id)
                raise InvalidTransitionError(
                    session.status.value,
                    SessionStatus.RUNNING.value,
                    sorted(s.value for s in VALID_TRANSITIONS[session.status]),
                )
            if session.status == SessionStatus.RUNNING:
                # We hold the run lock, so no turn of ours is in flight.
                session = await self._recover_stale_turn(session)
            validate_transition(session.status, SessionStatus.RUNNING)
            adapter = self._registry.get_or_raise(session.agent_type)

            task = Task(session_id=session_id, prompt=prompt, parent_task_id=parent_task_id)
            await self._save_task(task, "task_created")

            def _start(s: Session) -> None:
                validate_transition(s.status, SessionStatus.RUNNING)
                s.status = SessionStatus.RUNNING
                s.task_ids.append(task.task_id)
                s.last_error = None

            try:
                session = await self._mutate(session_id, _start)
            except Exception as exc:
                task.status = TaskStatus.FAILED
                task.completed_at = _utcnow()
                task.error = f"{type(exc).__name__}: {exc}"
                await self._save_task(task)
                raise
            token = CancellationToken()
            self._cancel_tokens[session_id] = token
            try:
                return await self._execute(adapter, session, task, prompt, token, fork_from)
            finally:
                self._cancel_tokens.pop(session_id, None)

    async def _execute(
        self,
        adapter: AgentAdapter,
        session: Session,
        task: Task,
        prompt: str,
        token: CancellationToken,
        fork_from: str | None,
    ) -> PromptOutcome:
        session_id = session.session_id

        async def _on_event(event: NormalizedEvent) -> None:
            await self._on_stream_event(session_id, task.task_id, event)

        try:
            context = self._template_context(session)
            resolution = await resolve_tool_servers(session_id, self._tool_servers, context)
            if resolution.oauth_servers_needing_auth:
                self._notify(
                    "oauth_needed",
                    session_id=session_id,
                    server_ids=list(resolution.oauth_servers_needing_auth),
                )
            adapter.open_session(session)
            response = await adapter.execute(
                session_id,
                prompt,
                permission_mode=session.permission_mode,
                fork_from=fork_from,
                tool_servers=resolution.descriptors,
                cancel=token,
                on_event=_on_event,
            )
        except asyncio.CancelledError:
            task.status = TaskStatus.STOPPED
            task.completed_at = _utcnow()
            task.error = "cancelled"
            await self._finish_cancelled(session_id, task)
            raise
        except Exception as exc:
            error = str(exc)
            if not isinstance(exc, OrchestrationError):
                error = f"{type(exc).__name__}: {exc}"
            task.status = TaskStatus.FAILED
            task.completed_at = _utcnow()
            task.error = error
            await self._save_task(task)
            await self._set_status(session_id, SessionStatus.FAILED, last_error=error)
            if isinstance(exc, ExecutionError):
                logger.error("Session %s turn failed: %s", session_id, exc.reason)
            raise

        task.status = TaskStatus.STOPPED if response.stopped else TaskStatus.COMPLETED
        task.completed_at = _utcnow()
        task.result = response
        await self._save_task(task)

        continuation = response.continuation_id

        def _finish(s: Session) -> None:
            validate_transition(s.status, SessionStatus.IDLE)
            s.status = SessionStatus.IDLE
            if continuation and s.continuation_id is None:
                s.continuation_id = continuation

        session = await self._mutate(session_id, _finish)
        logger.info(
            "Session %s task %s %s", session_id, task.task_id, task.status.value,
        )
        return PromptOutcome(session=session, task=task, response=response)

    async def _finish_cancelled(self, session_id: str, task: Task) -> None:
        await self._save_task(task)
        await self._set_status(session_id, SessionStatus.IDLE)

    async def _recover_stale_turn(self, session: Session) -> Session:
        """Fail a turn that was stored as running but has no live owner.

        This happens when a previous process died mid-turn with durable
        storage. Its running tasks are failed so the session can retry.
        """
        session_id = session.session_id
        error = "interrupted: turn did not finish"
        stale = await self._storage.query_tasks(
            session_id=session_id, status=TaskStatus.RUNNING,
        )
        logger.warning(
            "Session %s was stored as running with no live turn; "
            "failing %d stale task(s)",
            session_id, len(stale),
        )
        for task in stale:
            task.status = TaskStatus.FAILED
            task.completed_at = _utcnow()
            task.error = error
            await self._save_task(task)
        return await self._set_status(session_id, SessionStatus.FAILED, last_error=error)

    def _template_context(self, session: Session) -> Mapping[str, Any]:
        if self._template_context_provider is None:
            return {}
        try:
            return self._template_context_provider(session)
        except Exception as exc:
            logger.error(
                "Template context provider failed for session %s: %s",
                session.session_id, exc,
            )
            return {}

    async def _on_stream_event(
        self,
        session_id: str,
        task_id: str,
        event: NormalizedEvent,
    ) -> None:
        if isinstance(event, SessionIdCapturedEvent):
            continuation = event.continuation_id

            def _capture(s: Session) -> None:
                s.continuation_id = continuation

            await self._mutate(session_id, _capture, notify=False)
            logger.debug(
                "Session %s: stored vendor continuation id %s", session_id, continuation,
            )
        elif isinstance(event, CompleteEvent):
            self._notify(
                "message",
                session_id=session_id,
                task_id=task_id,
                message_id=event.message_id,
                role=event.role,
                text=event.text,
                tool_uses=[call.tool for call in event.tool_uses],
            )
        elif isinstance(event, ChunkEvent):
            self._notify(
                "message_chunk",
                session_id=session_id,
                task_id=task_id,
                message_id=event.message_id,
                text=event.text,
            )
