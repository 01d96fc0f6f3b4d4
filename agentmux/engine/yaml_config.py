"""YAML configuration loader.

Loads a single YAML file describing the engine, the agent backends,
and the tool servers. Env vars (EngineConfig.from_env) still work
when no YAML is provided.

Example YAML:
    engine:
      default_agent: claude-code
      idle_timeout_seconds: 300
      busy_policy: wait
      storage_dir: ~/.agentmux/sessions
      user_env_keys: [GITHUB_TOKEN]

    agents:
      claude-code:
        type: claude-code
        model: claude-sonnet-4-5
      codex:
        type: codex
        command: codex
        api_key_env: OPENAI_API_KEY
        default_permission_mode: auto

    tool_servers:
      github:
        type: http
        url: https://mcp.github.com/v1
        headers:
          Authorization: "Bearer {{ user.env.GITHUB_TOKEN }}"
        required_env: []
      filesystem:
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "."]
        scope: session
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .config import EngineConfig
from .models import AgentType, ToolServerDescriptor
from .tool_servers import parse_tool_server

logger = logging.getLogger(__name__)

_KNOWN_AGENT_TYPES = {agent.value for agent in AgentType}


@dataclass
class AgentConfig:
    """Configuration for a single agent backend."""
    type: str  # "claude-code", "codex", or "gemini"
    command: str | None = None  # path to the vendor CLI binary
    api_key_env: str | None = None
    model: str | None = None
    default_permission_mode: str | None = None
    enabled: bool = True


@dataclass
class OrchestrationConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    agents: dict[str, AgentConfig] = field(default_factory=dict)
    tool_servers: list[ToolServerDescriptor] = field(default_factory=list)


def _expand_path(value: str | None) -> str | None:
    if not value:
        return None
    return os.path.expanduser(str(value))


def _parse_engine(engine_raw: dict) -> EngineConfig:
    keys = engine_raw.get("user_env_keys", []) or []
    if isinstance(keys, str):
        keys = [k.strip() for k in keys.split(",") if k.strip()]
    return EngineConfig(
        default_agent_type=str(engine_raw.get(
            "default_agent", EngineConfig.default_agent_type
        )),
        default_cwd=str(engine_raw.get("default_cwd", EngineConfig.default_cwd)),
        idle_timeout_seconds=float(engine_raw.get(
            "idle_timeout_seconds", EngineConfig.idle_timeout_seconds
        )),
        abort_grace_seconds=float(engine_raw.get(
            "abort_grace_seconds", EngineConfig.abort_grace_seconds
        )),
        busy_policy=str(engine_raw.get("busy_policy", EngineConfig.busy_policy)),
        storage_dir=_expand_path(engine_raw.get("storage_dir")),
        allowed_tools_path=_expand_path(engine_raw.get("allowed_tools_path")),
        user_env_keys=[str(k) for k in keys],
        notification_queue_size=int(engine_raw.get(
            "notification_queue_size", EngineConfig.notification_queue_size
        )),
        log_level=str(engine_raw.get("log_level", EngineConfig.log_level)),
    )


def _parse_agents(agents_raw: dict) -> dict[str, AgentConfig]:
    agents: dict[str, AgentConfig] = {}
    for name, cfg in agents_raw.items():
        cfg = cfg or {}
        if not isinstance(cfg, dict):
            logger.warning("Agent %s: config must be a mapping, skipping", name)
            continue
        agent_type = str(cfg.get("type", name))
        if agent_type not in _KNOWN_AGENT_TYPES:
            logger.warning(
                "Unknown agent type '%s' for '%s', skipping", agent_type, name,
            )
            continue
        agents[str(name)] = AgentConfig(
            type=agent_type,
            command=cfg.get("command"),
            api_key_env=cfg.get("api_key_env"),
            model=cfg.get("model"),
            default_permission_mode=cfg.get("default_permission_mode"),
            enabled=bool(cfg.get("enabled", True)),
        )
    return agents


def parse_config(raw: dict) -> OrchestrationConfig:
    """Build an OrchestrationConfig from an already-decoded mapping."""
    engine = _parse_engine(raw.get("engine", {}) or {})
    agents = _parse_agents(raw.get("agents", {}) or {})

    tool_servers: list[ToolServerDescriptor] = []
    for server_id, cfg in (raw.get("tool_servers", {}) or {}).items():
        server = parse_tool_server(str(server_id), cfg)
        if server is not None:
            tool_servers.append(server)

    logger.info(
        "Config: %d agent(s) [%s], %d tool server(s)",
        len(agents), ", ".join(agents) or "defaults", len(tool_servers),
    )
    return OrchestrationConfig(engine=engine, agents=agents, tool_servers=tool_servers)


def load_yaml_config(path: str | Path) -> OrchestrationConfig:
    """Load and parse a YAML config file."""
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )
    return parse_config(raw)
