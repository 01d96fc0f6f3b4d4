"""Top-level façade wiring adapters, sessions, storage and notifications.

Typical use:

    orchestrator = AgentOrchestrator.from_yaml("agentmux.yaml")
    await orchestrator.initialize()
    session = await orchestrator.create_session("claude-code", working_directory=".")
    response = await orchestrator.execute_prompt(session.session_id, "Explain main.py")
    await orchestrator.shutdown()
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .adapters.base import AgentAdapter
from .adapters.registry import AgentRegistry, build_agent_registry
from .config import EngineConfig, EventCallback
from .errors import AuthError
from .mcp_scoping import build_template_context_from_env
from .models import (
    AgentDescriptor,
    AgentResponse,
    AgentType,
    Genealogy,
    PromptMode,
    PromptOptions,
    PromptOutcome,
    Session,
    SessionConfig,
    SpawnOptions,
    Task,
    agent_type_value,
)
from .notifications import NotificationChannel
from .permissions import PermissionGate
from .session_manager import SessionManager
from .storage import InMemoryStorage, JsonFileStorage, StorageAdapter
from .tool_servers import InMemoryToolServerRepository, ToolServerRepository

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """Everything a host needs to render one session."""
    session: Session
    agent: AgentDescriptor
    tasks: list[Task] = field(default_factory=list)
    genealogy: Genealogy = field(default_factory=Genealogy)


class AgentOrchestrator:
    """Façade over the registry and the session manager."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        registry: AgentRegistry | None = None,
        storage: StorageAdapter | None = None,
        tool_server_repository: ToolServerRepository | None = None,
        notifications: NotificationChannel | None = None,
        permission_gate: PermissionGate | None = None,
        event_sink: EventCallback | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._gate = permission_gate or PermissionGate(
            callback=self._config.permission_callback,
            allowed_tools_path=(
                Path(self._config.allowed_tools_path)
                if self._config.allowed_tools_path else None
            ),
        )
        self._registry = registry if registry is not None else AgentRegistry()
        if storage is None:
            storage = (
                JsonFileStorage(self._config.storage_dir)
                if self._config.storage_dir else InMemoryStorage()
            )
        self._notifications = notifications or NotificationChannel(
            maxsize=self._config.notification_queue_size,
        )
        if event_sink is not None:
            self._notifications.add_sink(event_sink)
        self._tool_servers = tool_server_repository
        self._sessions = SessionManager(
            self._registry,
            storage,
            config=self._config,
            tool_server_repository=tool_server_repository,
            notifications=self._notifications,
            permission_gate=self._gate,
            template_context_provider=self._template_context,
        )

    @classmethod
    def from_config(
        cls,
        config: EngineConfig | None = None,
        agent_configs: dict[str, Any] | None = None,
        tool_servers: list | None = None,
        **kwargs: Any,
    ) -> AgentOrchestrator:
        """Build with the built-in adapters registered."""
        config = config or EngineConfig.from_env()
        gate = kwargs.pop("permission_gate", None) or PermissionGate(
            callback=config.permission_callback,
            allowed_tools_path=(
                Path(config.allowed_tools_path) if config.allowed_tools_path else None
            ),
        )
        registry = build_agent_registry(agent_configs, config=config, permission_gate=gate)
        repository = kwargs.pop("tool_server_repository", None)
        if repository is None and tool_servers:
            repository = InMemoryToolServerRepository(tool_servers)
        return cls(
            config,
            registry=registry,
            tool_server_repository=repository,
            permission_gate=gate,
            **kwargs,
        )

    @classmethod
    def from_yaml(cls, path: str | Path, **kwargs: Any) -> AgentOrchestrator:
        from .yaml_config import load_yaml_config

        parsed = load_yaml_config(path)
        return cls.from_config(parsed.engine, parsed.agents, parsed.tool_servers, **kwargs)

    # ── Properties ────────────────────────────────────────────

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    @property
    def notifications(self) -> NotificationChannel:
        return self._notifications

    @property
    def permission_gate(self) -> PermissionGate:
        return self._gate

    # ── Agents ────────────────────────────────────────────────

    def register_agent(self, adapter: AgentAdapter) -> None:
        self._registry.register(adapter)

    def get_agent(self, agent_type: AgentType | str) -> AgentAdapter:
        return self._registry.get_or_raise(agent_type)

    def list_agents(self) -> list[AgentDescriptor]:
        return self._registry.descriptors()

    async def initialize(self) -> dict[str, bool]:
        """Initialize every adapter. Returns agent type → ready.

        Auth failures are logged, not raised: one missing credential
        should not take the other agents down. execute retries
        initialization and surfaces AuthError then.
        """
        report: dict[str, bool] = {}
        for agent_type in self._registry.list_types():
            adapter = self._registry.get_or_raise(agent_type)
            try:
                await adapter.initialize()
                report[agent_type] = True
            except AuthError as exc:
                logger.warning("%s", exc)
                report[agent_type] = False
        return report

    async def shutdown(self) -> None:
        """Stop in-flight turns, clean up adapters, close notifications."""
        for session_id in self._sessions.running_session_ids():
            try:
                await self._sessions.stop_session(session_id)
            except Exception as exc:
                logger.error("Error stopping session %s: %s", session_id, exc)
        await self._registry.cleanup_all()
        await self._notifications.flush()
        self._notifications.close()
        logger.info("Orchestrator shut down")

    # ── Sessions ──────────────────────────────────────────────

    async def create_session(
        self,
        agent_type: AgentType | str | None = None,
        **fields: Any,
    ) -> Session:
        agent = agent_type_value(agent_type or self._config.default_agent_type)
        return await self._sessions.create_session(SessionConfig(agent_type=agent, **fields))

    async def execute_prompt(self, session_id: str, prompt: str) -> AgentResponse:
        """Continue *session_id* with *prompt* and return the response."""
        outcome = await self._sessions.prompt_session(
            session_id, PromptOptions(prompt=prompt, mode=PromptMode.CONTINUE),
        )
        return outcome.response

    async def prompt(
        self,
        session_id: str,
        prompt: str,
        *,
        mode: PromptMode | str = PromptMode.CONTINUE,
        **overrides: Any,
    ) -> PromptOutcome:
        return await self._sessions.prompt_session(
            session_id, PromptOptions(prompt=prompt, mode=PromptMode(mode), **overrides),
        )

    async def spawn_subsession(
        self,
        parent_session_id: str,
        options: SpawnOptions | None = None,
    ) -> Session:
        return await self._sessions.spawn_session(parent_session_id, options)

    async def get_session_context(self, session_id: str) -> SessionContext:
        session = await self._sessions.get_session(session_id)
        adapter = self._registry.get_or_raise(session.agent_type)
        return SessionContext(
            session=session,
            agent=adapter.get_descriptor(),
            tasks=await self._sessions.list_tasks(session_id),
            genealogy=await self._sessions.get_genealogy(session_id),
        )

    async def stop_session(self, session_id: str) -> bool:
        return await self._sessions.stop_session(session_id)

    async def terminate_session(self, session_id: str) -> Session:
        return await self._sessions.terminate_session(session_id)

    def _template_context(self, session: Session) -> dict[str, Any]:
        return build_template_context_from_env(
            os.environ,
            self._config.user_env_keys,
            extra={
                "session": {
                    "id": session.session_id,
                    "working_directory": session.working_directory or "",
                    "worktree_id": session.worktree_id or "",
                },
            },
        )
