"""Shared fakes: a scripted vendor client and an adapter around it."""
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from agentmux.engine.adapters.base import (
    AgentAdapter,
    VendorCall,
    VendorClient,
    VendorOptions,
)
from agentmux.engine.adapters.registry import AgentRegistry
from agentmux.engine.auth import StaticAuthProvider
from agentmux.engine.config import EngineConfig
from agentmux.engine.models import AgentCapabilities
from agentmux.engine.notifications import NotificationChannel
from agentmux.engine.session_manager import SessionManager
from agentmux.engine.streaming import VendorEvent, VendorEventKind


def message(text: str, message_id: str | None = None, **kwargs: Any) -> VendorEvent:
    return VendorEvent(kind=VendorEventKind.MESSAGE, text=text, message_id=message_id, **kwargs)


def result(usage: dict | None = None, **kwargs: Any) -> VendorEvent:
    return VendorEvent(kind=VendorEventKind.RESULT, usage=usage or {}, **kwargs)


def session_event(continuation_id: str) -> VendorEvent:
    return VendorEvent(kind=VendorEventKind.SESSION, continuation_id=continuation_id)


class ScriptedCall(VendorCall):
    """Plays back a script of VendorEvents.

    Script items:
      VendorEvent  -> yielded
      float        -> pause (interrupted by abort)
      Exception    -> raised

    After abort() the call yields ``aborted`` and stops, unless
    ``confirm_abort`` is False, in which case it hangs.
    """

    def __init__(
        self,
        script: list[Any],
        *,
        confirm_abort: bool = True,
        client: ScriptedVendorClient | None = None,
    ) -> None:
        super().__init__()
        self.script = list(script)
        self.confirm_abort = confirm_abort
        self._client = client
        self._abort_signal = asyncio.Event()
        self.started = asyncio.Event()
        self.finished = False

    async def events(self):
        self.started.set()
        if self._client is not None:
            self._client.active += 1
            self._client.max_active = max(self._client.max_active, self._client.active)
        try:
            for item in self.script:
                if self.abort_requested:
                    break
                if isinstance(item, (int, float)):
                    try:
                        await asyncio.wait_for(self._abort_signal.wait(), timeout=item)
                    except asyncio.TimeoutError:
                        pass
                    continue
                if isinstance(item, BaseException):
                    raise item
                yield item
            if self.abort_requested:
                if not self.confirm_abort:
                    await asyncio.Event().wait()
                yield VendorEvent(kind=VendorEventKind.ABORTED)
        finally:
            self.finished = True
            if self._client is not None:
                self._client.active -= 1

    async def _abort(self) -> None:
        self._abort_signal.set()


class ScriptedVendorClient(VendorClient):
    """Hands out one ScriptedCall per submit, recording what was asked."""

    def __init__(self, *scripts: list[Any], confirm_abort: bool = True) -> None:
        self.scripts = list(scripts)
        self.confirm_abort = confirm_abort
        self.calls: list[tuple[str, VendorOptions]] = []
        self.made: list[ScriptedCall] = []
        self.available = True
        self.shutdown_called = False
        self.active = 0
        self.max_active = 0

    def queue(self, *scripts: list[Any]) -> None:
        self.scripts.extend(scripts)

    def submit(self, prompt: str, options: VendorOptions) -> VendorCall:
        self.calls.append((prompt, options))
        script = self.scripts.pop(0) if self.scripts else [message(f"echo: {prompt}"), result()]
        call = ScriptedCall(script, confirm_abort=self.confirm_abort, client=self)
        self.made.append(call)
        return call

    def is_available(self) -> bool:
        return self.available

    async def shutdown(self) -> None:
        self.shutdown_called = True


class FakeAdapter(AgentAdapter):
    """AgentAdapter over a ScriptedVendorClient."""

    def __init__(
        self,
        vendor_client: VendorClient | None = None,
        auth_provider=None,
        *,
        agent_type: str = "claude-code",
        capabilities: AgentCapabilities | None = None,
        **kwargs: Any,
    ) -> None:
        self._agent_type = agent_type
        self._capabilities = capabilities or AgentCapabilities(
            can_read=True, can_write=True, can_execute=True, can_use_mcp=True,
        )
        super().__init__(
            vendor_client or ScriptedVendorClient(),
            auth_provider or StaticAuthProvider(),
            **kwargs,
        )

    @property
    def agent_type(self) -> str:
        return self._agent_type

    def get_capabilities(self) -> AgentCapabilities:
        return self._capabilities


@pytest.fixture
def vendor() -> ScriptedVendorClient:
    return ScriptedVendorClient()


@pytest.fixture
def adapter(vendor: ScriptedVendorClient) -> FakeAdapter:
    return FakeAdapter(vendor, abort_grace_seconds=0.5)


@pytest.fixture
def registry(adapter: FakeAdapter) -> AgentRegistry:
    registry = AgentRegistry()
    registry.register(adapter)
    return registry


@pytest.fixture
def notifications() -> NotificationChannel:
    return NotificationChannel()


@pytest.fixture
def manager(registry: AgentRegistry, notifications: NotificationChannel) -> SessionManager:
    return SessionManager(registry, notifications=notifications)


def make_manager(registry: AgentRegistry, **config: Any) -> SessionManager:
    return SessionManager(registry, config=EngineConfig(**config))
