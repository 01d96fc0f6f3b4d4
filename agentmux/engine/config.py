"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTMUX_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async sink for host notifications.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Optional async callback for mid-stream tool approval requests.
# Signature: async def callback(session_id, tool_name, arguments) -> str
# Returns: "allow", "deny", "allow_always", or "allow_global"
PermissionCallback = Callable[[str, str, dict[str, Any]], Awaitable[str]]

BUSY_POLICIES = ("wait", "reject")


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception as exc:
        # Host sinks must never break a turn
        logger.debug(
            "Event callback failed for %s: %s", event.get("event"), exc,
        )


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class EngineConfig:
    """Agent multiplexer configuration."""

    # Agent used when a caller does not name one
    default_agent_type: str = "claude-code"
    default_cwd: str = "."

    # Seconds of vendor silence before IdleTimeoutError.
    # Set to 0 (or a negative value) to disable.
    idle_timeout_seconds: float = 300.0
    # After an abort request, max wait for the vendor's aborted signal
    # before the processor emits `stopped` on its own.
    abort_grace_seconds: float = 5.0

    # What a second prompt on a running session does: "wait" or "reject"
    busy_policy: str = "wait"

    # Persist sessions/tasks as JSON under this directory.
    # None keeps everything in memory.
    storage_dir: str | None = None
    # Global tool allow list for "allow_global" approvals.
    # None keeps global approvals in memory only.
    allowed_tools_path: str | None = None

    # Environment variable names exposed to tool-server templates
    # as {{ user.env.NAME }}.
    user_env_keys: list[str] = field(default_factory=list)

    notification_queue_size: int = 1000

    # Logging
    log_level: str = "INFO"

    # Optional async callback for tool approval requests.
    permission_callback: PermissionCallback | None = field(
        default=None, repr=False,
    )

    def __post_init__(self) -> None:
        if self.busy_policy not in BUSY_POLICIES:
            logger.warning(
                "Unknown busy_policy %r, using 'wait'", self.busy_policy,
            )
            self.busy_policy = "wait"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTMUX_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTMUX_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: AGENTMUX_* env overrides: %s",
                ", ".join(sorted(env_vars)),
            )
        else:
            logger.debug(
                "EngineConfig.from_env: no AGENTMUX_* env vars set, using defaults"
            )

        config = cls(
            default_agent_type=os.getenv(
                "AGENTMUX_DEFAULT_AGENT", cls.default_agent_type
            ),
            default_cwd=os.getenv("AGENTMUX_DEFAULT_CWD", cls.default_cwd),
            idle_timeout_seconds=float(os.getenv(
                "AGENTMUX_IDLE_TIMEOUT", str(cls.idle_timeout_seconds)
            )),
            abort_grace_seconds=float(os.getenv(
                "AGENTMUX_ABORT_GRACE", str(cls.abort_grace_seconds)
            )),
            busy_policy=os.getenv("AGENTMUX_BUSY_POLICY", cls.busy_policy),
            storage_dir=os.getenv("AGENTMUX_STORAGE_DIR") or None,
            allowed_tools_path=os.getenv("AGENTMUX_ALLOWED_TOOLS") or None,
            user_env_keys=_env_list("AGENTMUX_USER_ENV_KEYS"),
            notification_queue_size=int(os.getenv(
                "AGENTMUX_QUEUE_SIZE", str(cls.notification_queue_size)
            )),
            log_level=os.getenv("AGENTMUX_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: agent=%s idle_timeout=%ss busy_policy=%s log_level=%s",
            config.default_agent_type, config.idle_timeout_seconds,
            config.busy_policy, config.log_level,
        )
        return config
