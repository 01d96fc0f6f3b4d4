"""Vendor calls backed by a CLI subprocess emitting JSON lines.

Commands are spawned with asyncio.create_subprocess_exec (array
based, no shell). stdout is parsed line by line; stderr is drained
concurrently into the call's stderr tail so a chatty CLI can never
block on a full pipe.
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

from ..streaming import VendorEvent, VendorEventKind
from .base import VendorCall, VendorOptions

logger = logging.getLogger(__name__)

_TERMINATE_TIMEOUT_SECONDS = 5.0


class JsonLinesProcessCall(VendorCall):
    """Base for CLI-backed calls. Subclasses build argv and parse lines."""

    def __init__(
        self,
        command: str,
        prompt: str,
        options: VendorOptions,
        *,
        api_key_var: str | None = None,
    ) -> None:
        super().__init__()
        self._command = command
        self._prompt = prompt
        self._options = options
        self._api_key_var = api_key_var
        self._proc: asyncio.subprocess.Process | None = None
        self._saw_result = False

    @abc.abstractmethod
    def build_command(self) -> list[str]:
        """Full argv for the CLI."""

    @abc.abstractmethod
    def parse_line(self, data: dict[str, Any]) -> list[VendorEvent]:
        """Convert one decoded JSON line into raw vendor events."""

    def stdin_payload(self) -> bytes | None:
        """Bytes written to stdin before it is closed. None means no stdin."""
        return None

    def build_env(self) -> dict[str, str] | None:
        """Subprocess environment with the API key injected, if one is known."""
        credentials = self._options.credentials
        key = credentials.credentials.get("api_key") if credentials else None
        if not key or not self._api_key_var:
            return None
        env = os.environ.copy()
        env[self._api_key_var] = str(key)
        return env

    async def events(self) -> AsyncIterator[VendorEvent]:
        cmd = self.build_command()
        payload = self.stdin_payload()
        logger.debug("Spawning vendor CLI: %s", " ".join(cmd[:4]))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if payload is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                cwd=self._options.cwd,
                limit=16 * 1024 * 1024,
            )
        except FileNotFoundError:
            yield VendorEvent(
                kind=VendorEventKind.ERROR,
                error=f"'{self._command}' CLI not found. Install it first.",
            )
            return
        self._proc = proc

        if payload is not None and proc.stdin is not None:
            proc.stdin.write(payload)
            await proc.stdin.drain()
            proc.stdin.close()

        stderr_task = asyncio.ensure_future(self._drain_stderr(proc))
        try:
            stdout = proc.stdout
            if stdout is None:
                raise RuntimeError(f"{self._command} started without a stdout pipe")
            while True:
                line = await stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON vendor output: %s", text[:200])
                    continue
                if not isinstance(data, dict):
                    continue
                for event in self.parse_line(data):
                    if event.kind == VendorEventKind.RESULT:
                        self._saw_result = True
                    yield event

            await proc.wait()
            await stderr_task

            if self.abort_requested:
                yield VendorEvent(kind=VendorEventKind.ABORTED)
            elif proc.returncode != 0 and not self._saw_result:
                yield VendorEvent(
                    kind=VendorEventKind.ERROR,
                    error=f"{self._command} exited with code {proc.returncode}",
                )
            elif not self._saw_result:
                yield VendorEvent(kind=VendorEventKind.END, reason="process_exit")
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            if proc.returncode is None:
                await self._terminate(proc)

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            self.record_stderr(line.decode("utf-8", errors="replace"))

    async def _abort(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        logger.info("Terminating vendor subprocess (pid=%s)", proc.pid)
        await self._terminate(proc)

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
