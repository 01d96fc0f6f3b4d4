"""Agent registry: maps agent type names to adapter instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import NotFoundError
from ..models import AgentDescriptor, AgentType, agent_type_value
from ..permissions import PermissionGate
from .base import AgentAdapter

if TYPE_CHECKING:
    from ..config import EngineConfig
    from ..yaml_config import AgentConfig

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Registry of available agent adapters.

    Maps agent type strings (e.g. 'claude-code', 'codex') to adapters.
    Registering the same type again replaces the previous adapter.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, AgentAdapter] = {}

    def register(self, adapter: AgentAdapter) -> None:
        """Register an adapter under its agent type."""
        name = adapter.agent_type
        if name in self._adapters:
            logger.info("Replacing registered adapter for %s", name)
        self._adapters[name] = adapter
        logger.info(
            "Agent registered: %s (available=%s)", name, adapter.is_available(),
        )

    def unregister(self, agent_type: AgentType | str) -> AgentAdapter | None:
        return self._adapters.pop(agent_type_value(agent_type), None)

    def get(self, agent_type: AgentType | str) -> AgentAdapter | None:
        """Get an adapter by type, or None if not registered."""
        return self._adapters.get(agent_type_value(agent_type))

    def get_or_raise(self, agent_type: AgentType | str) -> AgentAdapter:
        """Get an adapter by type, raising NotFoundError if not registered."""
        adapter = self.get(agent_type)
        if adapter is None:
            raise NotFoundError("agent", agent_type_value(agent_type))
        return adapter

    def list_types(self) -> list[str]:
        return list(self._adapters.keys())

    def list_available(self) -> list[str]:
        """Return types whose vendor runtime is installed."""
        return [name for name, a in self._adapters.items() if a.is_available()]

    def descriptors(self) -> list[AgentDescriptor]:
        return [a.get_descriptor() for a in self._adapters.values()]

    def get_availability_report(self) -> dict[str, bool]:
        return {name: a.is_available() for name, a in self._adapters.items()}

    def validate(self) -> dict[str, bool]:
        """Log availability of every registered adapter and return the report."""
        report = self.get_availability_report()
        available = [n for n, ok in report.items() if ok]
        unavailable = [n for n, ok in report.items() if not ok]
        if available:
            logger.info("Available agents: %s", ", ".join(available))
        if unavailable:
            logger.warning(
                "Unavailable agents (runtime not installed): %s",
                ", ".join(unavailable),
            )
        if not available:
            logger.error("No agents are available! Prompts cannot be executed.")
        return report

    async def cleanup_all(self) -> None:
        """Clean up every registered adapter."""
        for name, adapter in self._adapters.items():
            try:
                await adapter.cleanup()
            except Exception as exc:
                logger.error("Error cleaning up agent '%s': %s", name, exc)

    @property
    def count(self) -> int:
        return len(self._adapters)


def build_agent_registry(
    agent_configs: dict[str, AgentConfig] | None = None,
    *,
    config: EngineConfig | None = None,
    permission_gate: PermissionGate | None = None,
) -> AgentRegistry:
    """Build an AgentRegistry from YAML-sourced agent configs.

    With no configs, registers the three built-in adapters with
    their default commands.
    """
    from ..yaml_config import AgentConfig
    from .claude_adapter import ClaudeCodeAdapter
    from .codex_adapter import CodexAdapter
    from .gemini_adapter import GeminiAdapter

    adapter_classes: dict[str, type[AgentAdapter]] = {
        AgentType.CLAUDE_CODE.value: ClaudeCodeAdapter,
        AgentType.CODEX.value: CodexAdapter,
        AgentType.GEMINI.value: GeminiAdapter,
    }

    if not agent_configs:
        agent_configs = {name: AgentConfig(type=name) for name in adapter_classes}

    common: dict[str, Any] = {"permission_gate": permission_gate}
    if config is not None:
        common["idle_timeout_seconds"] = config.idle_timeout_seconds
        common["abort_grace_seconds"] = config.abort_grace_seconds

    registry = AgentRegistry()
    for name, cfg in agent_configs.items():
        if not cfg.enabled:
            logger.info("Agent '%s' disabled in config, skipping", name)
            continue
        adapter_cls = adapter_classes.get(cfg.type)
        if adapter_cls is None:
            logger.warning(
                "Unknown agent type '%s' for '%s', skipping", cfg.type, name,
            )
            continue
        kwargs: dict[str, Any] = dict(
            common,
            api_key_env=cfg.api_key_env,
            default_permission_mode=cfg.default_permission_mode,
            default_model=cfg.model,
        )
        if cfg.command:
            kwargs["command"] = cfg.command
        registry.register(adapter_cls(**kwargs))

    registry.validate()
    return registry
