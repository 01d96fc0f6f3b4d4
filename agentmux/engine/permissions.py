"""Permission mode translation and per-session tool approval.

Translation maps the unified PermissionMode values (plus each agent's
native extensions) onto what a vendor actually understands:

    unified          claude-code          codex        gemini
    ---------------  -------------------  -----------  --------
    default          default              ask          default
    acceptEdits      acceptEdits          auto         autoEdit
    bypassPermissions bypassPermissions   allow-all    yolo
    plan             plan                 ask          default
    ask              default              ask          default
    auto             acceptEdits          auto         autoEdit
    on-failure       acceptEdits          on-failure   autoEdit
    allow-all        bypassPermissions    allow-all    yolo

Anything else (unknown, legacy, wrong case, None) resolves to the
agent's default. Matching is exact and case-sensitive, so a typo can
never land on an elevated mode.

Approval decisions are stored at two levels:
- Session: "allow_always" answers, forgotten when the session ends
- Global: "allow_global" answers, optionally persisted as a JSON list
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from .config import PermissionCallback
from .models import AgentType, PermissionMode, agent_type_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NativePermission:
    """A translated, vendor-native permission mode."""
    agent_type: str
    mode: str
    settings: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PermissionTable:
    """Translation table for one agent type."""
    agent_type: str
    default_mode: str
    native_modes: Mapping[str, Mapping[str, str]]
    unified_map: Mapping[str, str]

    def __post_init__(self) -> None:
        if self.default_mode not in self.native_modes:
            raise ValueError(
                f"Default mode {self.default_mode!r} is not native to "
                f"{self.agent_type}"
            )
        for unified, native in self.unified_map.items():
            if native not in self.native_modes:
                raise ValueError(
                    f"{self.agent_type}: {unified!r} maps to unknown "
                    f"native mode {native!r}"
                )

    def knows(self, mode: Any) -> bool:
        value = _mode_value(mode)
        return value is not None and (
            value in self.native_modes or value in self.unified_map
        )

    def translate(self, mode: Any) -> NativePermission:
        """Total translation; never raises."""
        value = _mode_value(mode)
        if value is not None and value in self.native_modes:
            name = value
        elif value is not None and value in self.unified_map:
            name = self.unified_map[value]
        else:
            if value is not None:
                logger.debug(
                    "Unknown permission mode %r for %s, using default %s",
                    value, self.agent_type, self.default_mode,
                )
            name = self.default_mode
        return NativePermission(
            agent_type=self.agent_type,
            mode=name,
            settings=self.native_modes[name],
        )

    def with_default(self, mode: str | None) -> PermissionTable:
        """Return a copy whose default is *mode*, if *mode* is native.

        A configured default that is not one of the agent's native
        modes is ignored (with a warning) rather than widening access.
        """
        if mode is None or mode == self.default_mode:
            return self
        value = _mode_value(mode)
        if value not in self.native_modes:
            logger.warning(
                "Configured default permission mode %r is not native to %s; "
                "keeping %s",
                mode, self.agent_type, self.default_mode,
            )
            return self
        return PermissionTable(
            agent_type=self.agent_type,
            default_mode=value,
            native_modes=self.native_modes,
            unified_map=self.unified_map,
        )


def _mode_value(mode: Any) -> str | None:
    # str-valued enums hash by member name, so always compare on .value
    if isinstance(mode, PermissionMode):
        return mode.value
    if isinstance(mode, str):
        return mode
    return None


def _frozen(mapping: dict[str, dict[str, str]]) -> Mapping[str, Mapping[str, str]]:
    return MappingProxyType(
        {key: MappingProxyType(dict(value)) for key, value in mapping.items()}
    )


CLAUDE_PERMISSION_TABLE = PermissionTable(
    agent_type=AgentType.CLAUDE_CODE.value,
    default_mode="default",
    native_modes=_frozen({
        "default": {"permission_mode": "default"},
        "acceptEdits": {"permission_mode": "acceptEdits"},
        "bypassPermissions": {"permission_mode": "bypassPermissions"},
        "plan": {"permission_mode": "plan"},
    }),
    unified_map=MappingProxyType({
        "default": "default",
        "acceptEdits": "acceptEdits",
        "bypassPermissions": "bypassPermissions",
        "plan": "plan",
        "ask": "default",
        "auto": "acceptEdits",
        "on-failure": "acceptEdits",
        "allow-all": "bypassPermissions",
    }),
)

CODEX_PERMISSION_TABLE = PermissionTable(
    agent_type=AgentType.CODEX.value,
    default_mode="ask",
    native_modes=_frozen({
        "ask": {"approval_policy": "untrusted", "sandbox": "read-only"},
        "auto": {"approval_policy": "on-request", "sandbox": "workspace-write"},
        "on-failure": {"approval_policy": "on-failure", "sandbox": "workspace-write"},
        "allow-all": {"approval_policy": "never", "sandbox": "danger-full-access"},
    }),
    unified_map=MappingProxyType({
        "default": "ask",
        "acceptEdits": "auto",
        "bypassPermissions": "allow-all",
        "plan": "ask",
        "ask": "ask",
        "auto": "auto",
        "on-failure": "on-failure",
        "allow-all": "allow-all",
    }),
)

GEMINI_PERMISSION_TABLE = PermissionTable(
    agent_type=AgentType.GEMINI.value,
    default_mode="default",
    native_modes=_frozen({
        "default": {"approval_mode": "default"},
        "autoEdit": {"approval_mode": "auto_edit"},
        "yolo": {"approval_mode": "yolo"},
    }),
    unified_map=MappingProxyType({
        "default": "default",
        "acceptEdits": "autoEdit",
        "bypassPermissions": "yolo",
        "plan": "default",
        "ask": "default",
        "auto": "autoEdit",
        # closest match: prompts on dangerous operations
        "on-failure": "autoEdit",
        "allow-all": "yolo",
    }),
)

BUILTIN_PERMISSION_TABLES: Mapping[str, PermissionTable] = MappingProxyType({
    table.agent_type: table
    for table in (
        CLAUDE_PERMISSION_TABLE,
        CODEX_PERMISSION_TABLE,
        GEMINI_PERMISSION_TABLE,
    )
})


def get_permission_table(agent_type: AgentType | str) -> PermissionTable:
    """Return the built-in table for *agent_type*.

    Unknown agent types get a conservative table whose only native
    mode is "default".
    """
    key = agent_type_value(agent_type)
    table = BUILTIN_PERMISSION_TABLES.get(key)
    if table is not None:
        return table
    return PermissionTable(
        agent_type=key,
        default_mode="default",
        native_modes=_frozen({"default": {}}),
        unified_map=MappingProxyType(
            {mode.value: "default" for mode in PermissionMode}
        ),
    )


def translate_permission_mode(
    agent_type: AgentType | str | PermissionTable,
    mode: Any,
) -> NativePermission:
    """Translate *mode* for an agent type (or explicit table). Never raises."""
    table = (
        agent_type
        if isinstance(agent_type, PermissionTable)
        else get_permission_table(agent_type)
    )
    return table.translate(mode)


def resolve_session_permission_mode(
    table: PermissionTable,
    requested: Any,
) -> str:
    """Pick the mode string to store on a session.

    Recognized unified or native values are kept as given so the
    host sees what it asked for; everything else becomes the default.
    """
    if requested is None:
        return table.default_mode
    if table.knows(requested):
        return _mode_value(requested)  # type: ignore[return-value]
    logger.warning(
        "Ignoring unknown permission mode %r for %s; using %s",
        requested, table.agent_type, table.default_mode,
    )
    return table.default_mode


class PermissionGate:
    """Serializes tool approval prompts per session.

    Concurrent tool calls inside one turn queue on the session's
    lock, so an "allow_always" answer to the first prompt covers the
    rest instead of prompting the user again.
    """

    def __init__(
        self,
        callback: PermissionCallback | None = None,
        allowed_tools_path: Path | None = None,
    ) -> None:
        self._callback = callback
        self._global_path = allowed_tools_path
        self._global_allowed: set[str] = self._load_file(allowed_tools_path)
        self._session_allowed: dict[str, set[str]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def enabled(self) -> bool:
        return self._callback is not None

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def is_allowed(self, session_id: str, tool_name: str) -> bool:
        return (
            tool_name in self._global_allowed
            or tool_name in self._session_allowed.get(session_id, set())
        )

    async def request(
        self,
        session_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> bool:
        """Ask the host whether *tool_name* may run. Returns True to allow."""
        if self.is_allowed(session_id, tool_name):
            return True
        async with self._lock_for(session_id):
            # An earlier prompt in this turn may have answered already
            if self.is_allowed(session_id, tool_name):
                return True
            if self._callback is None:
                logger.debug(
                    "No permission callback; denying %s for session %s",
                    tool_name, session_id,
                )
                return False
            decision = await self._callback(session_id, tool_name, arguments or {})
            logger.info(
                "Permission decision for %s in session %s: %s",
                tool_name, session_id, decision,
            )
            if decision == "allow":
                return True
            if decision == "allow_always":
                self._session_allowed.setdefault(session_id, set()).add(tool_name)
                return True
            if decision == "allow_global":
                self._add_global(tool_name)
                return True
            return False

    def forget_session(self, session_id: str) -> None:
        self._session_allowed.pop(session_id, None)
        self._locks.pop(session_id, None)

    def _add_global(self, tool_name: str) -> None:
        self._global_allowed.add(tool_name)
        if self._global_path is None:
            return
        try:
            self._global_path.parent.mkdir(parents=True, exist_ok=True)
            self._global_path.write_text(
                json.dumps(sorted(self._global_allowed), indent=2) + "\n"
            )
        except OSError:
            logger.warning("Failed to write %s", self._global_path)

    @staticmethod
    def _load_file(path: Path | None) -> set[str]:
        """Load a set of tool names from a JSON file."""
        if path is None or not path.exists():
            return set()
        try:
            data = json.loads(path.read_text())
            if isinstance(data, list):
                return {str(item) for item in data}
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
        return set()
