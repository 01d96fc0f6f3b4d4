"""Host notification channel.

The session manager publishes lifecycle and message events here.
Publishing never blocks a turn and never raises. Events reach the host
through push sinks, through the pull queue, or both: by default the
queue only buffers while no sink is attached, so a sink-only host
never fills it. When the queue is full the event is dropped and the
overflow is logged once until the queue is read again. Sink failures
are logged and swallowed.

Event types:
    session_created, session_updated, session_terminated
    task_created, task_updated
    message, message_chunk
    oauth_needed
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

from .config import EventCallback, fire_event

logger = logging.getLogger(__name__)


class NotificationChannel:
    """Async queue of host notifications plus optional push sinks.

    ``buffered`` forces the pull queue on (True) or off (False). Left
    as None, events are queued only while the channel has no sinks.
    """

    def __init__(
        self,
        maxsize: int = 1000,
        sinks: list[EventCallback] | None = None,
        *,
        buffered: bool | None = None,
    ) -> None:
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._sinks: list[EventCallback] = list(sinks or [])
        self._buffered = buffered
        self._pending: set[asyncio.Task] = set()
        self._closed = False
        self._overflowing = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def buffering(self) -> bool:
        if self._buffered is not None:
            return self._buffered
        return not self._sinks

    def add_sink(self, sink: EventCallback) -> None:
        self._sinks.append(sink)

    def publish(self, event_type: str, **payload: Any) -> dict[str, Any] | None:
        """Queue an event and push it to sinks. Returns the event, or None if closed."""
        if self._closed:
            return None
        event: dict[str, Any] = {
            "event": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        if self.buffering:
            self._enqueue(event)
        for sink in self._sinks:
            self._schedule(sink, event)
        return event

    def _enqueue(self, event: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if self._overflowing:
                logger.debug("Notification queue full, dropping %s", event["event"])
                return
            self._overflowing = True
            logger.warning(
                "Notification queue full (%d events), dropping until it is read",
                self._queue.maxsize,
            )

    def _schedule(self, sink: EventCallback, event: dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(fire_event(sink, event))
        except RuntimeError:
            logger.debug("No running loop; sink skipped for %s", event["event"])
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def get_nowait(self) -> dict[str, Any] | None:
        try:
            event = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        self._overflowing = False
        return event

    def drain(self) -> list[dict[str, Any]]:
        """Return and remove every queued event."""
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    async def consume(self) -> AsyncIterator[dict[str, Any]]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed or not self._queue.empty():
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            self._overflowing = False
            yield event

    async def flush(self) -> None:
        """Wait for in-flight sink deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        """Stop accepting events. Queued events can still be consumed."""
        self._closed = True
