"""Streaming message processor.

Folds one prompt call's raw vendor events into a deterministic
sequence of normalized events:

    start
    session_id_captured   (once, before events derived from the same raw event)
    chunk* / complete*    (one complete per assistant message, never merged)
    result                (token usage, model, context window; always before end)
    end | error+end | stopped

The fold itself (``process``) is synchronous and pure apart from the
clock, so it can be driven by tests event by event. ``stream`` is the
async pull loop around it; it owns the two clocks:

1. Idle timeout (default 300s):
   Wall-clock time since the last raw event. Any event resets it.
   Exceeding it raises IdleTimeoutError; it never kills the vendor
   call on its own, the caller decides.

2. Abort grace (default 5s):
   After the cancellation token fires, the vendor call is asked to
   abort and the loop waits this long for the vendor's ``aborted``
   event. If it does not arrive, ``stopped`` is emitted anyway.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import IdleTimeoutError
from .model_limits import default_model_for, get_context_window_limit
from .models import ToolCall, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT_SECONDS = 300.0
DEFAULT_ABORT_GRACE_SECONDS = 5.0


class VendorEventKind(str, Enum):
    """Kinds of raw events a vendor client may yield."""
    SESSION = "session"
    TEXT_DELTA = "text_delta"
    MESSAGE = "message"
    RESULT = "result"
    END = "end"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass
class VendorEvent:
    """A raw vendor event, already classified by the vendor client.

    Only ``kind`` is mandatory. Any kind may carry the vendor's
    continuation id once the vendor reveals it.
    """
    kind: VendorEventKind
    continuation_id: str | None = None
    message_id: str | None = None
    role: str = "assistant"
    text: str | None = None
    content: list[dict[str, Any]] = field(default_factory=list)
    tool_uses: list[ToolCall] = field(default_factory=list)
    usage: dict[str, Any] | None = None
    model: str | None = None
    reason: str | None = None
    error: str | None = None
    raw: Any = field(default=None, repr=False)


@dataclass
class NormalizedEvent:
    """Base normalized event."""
    type: str = ""


@dataclass
class StartEvent(NormalizedEvent):
    type: str = "start"
    session_id: str = ""


@dataclass
class ChunkEvent(NormalizedEvent):
    type: str = "chunk"
    message_id: str = ""
    text: str = ""


@dataclass
class CompleteEvent(NormalizedEvent):
    type: str = "complete"
    message_id: str = ""
    role: str = "assistant"
    text: str = ""
    content: list[dict[str, Any]] = field(default_factory=list)
    tool_uses: list[ToolCall] = field(default_factory=list)


@dataclass
class ResultEvent(NormalizedEvent):
    type: str = "result"
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str | None = None
    context_window_limit: int | None = None
    is_error: bool = False
    raw: Any = field(default=None, repr=False)


@dataclass
class SessionIdCapturedEvent(NormalizedEvent):
    type: str = "session_id_captured"
    continuation_id: str = ""


@dataclass
class StoppedEvent(NormalizedEvent):
    type: str = "stopped"
    reason: str = "aborted"


@dataclass
class ErrorEvent(NormalizedEvent):
    type: str = "error"
    message: str = ""


@dataclass
class EndEvent(NormalizedEvent):
    type: str = "end"
    reason: str = "end"


class CancellationToken:
    """Cooperative cancellation signal for one prompt call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "stop") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ProcessorState:
    """Mutable fold state. Exposed for diagnostics."""
    message_count: int = 0
    last_activity_time: float = 0.0
    started: bool = False
    continuation_revealed: bool = False
    captured_continuation_id: str | None = None
    current_message_id: str | None = None
    pending_chunks: dict[str, list[str]] = field(default_factory=dict)
    abort_requested: bool = False
    finished: bool = False
    end_reason: str | None = None
    usage: TokenUsage | None = None
    model: str | None = None


class StreamingMessageProcessor:
    """Normalizes one call's vendor event stream."""

    def __init__(
        self,
        session_id: str,
        *,
        existing_continuation_id: str | None = None,
        idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
        abort_grace_seconds: float = DEFAULT_ABORT_GRACE_SECONDS,
        agent_type: str = "",
        model: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_id = session_id
        self._existing_continuation_id = existing_continuation_id
        self._idle_timeout = idle_timeout_seconds
        self._abort_grace = abort_grace_seconds
        self._agent_type = agent_type
        self._model = model
        self._clock = clock
        self.state = ProcessorState(last_activity_time=clock())

    # ── Idle timeout ──────────────────────────────────────────

    def idle_seconds(self, now: float | None = None) -> float:
        current = self._clock() if now is None else now
        return max(0.0, current - self.state.last_activity_time)

    def has_timed_out(self, now: float | None = None) -> bool:
        if self._idle_timeout <= 0:
            return False
        return self.idle_seconds(now) > self._idle_timeout

    def check_idle(self, now: float | None = None) -> None:
        """Raise IdleTimeoutError if the stream has been silent too long."""
        if self.has_timed_out(now):
            raise IdleTimeoutError(
                idle_seconds=self.idle_seconds(now),
                timeout_seconds=self._idle_timeout,
                messages_processed=self.state.message_count,
                agent_type=self._agent_type,
                session_id=self._session_id,
            )

    # ── Fold ──────────────────────────────────────────────────

    def process(self, raw: VendorEvent) -> list[NormalizedEvent]:
        """Fold one raw event. Returns the normalized events it produced."""
        state = self.state
        if state.finished:
            logger.debug(
                "Session %s: ignoring %s after end of turn",
                self._session_id, raw.kind.value,
            )
            return []

        state.message_count += 1
        state.last_activity_time = self._clock()
        events: list[NormalizedEvent] = self._begin()

        if raw.continuation_id and not state.continuation_revealed:
            state.continuation_revealed = True
            if raw.continuation_id != self._existing_continuation_id:
                state.captured_continuation_id = raw.continuation_id
                events.append(
                    SessionIdCapturedEvent(continuation_id=raw.continuation_id)
                )

        if raw.model:
            state.model = raw.model

        kind = raw.kind
        if kind == VendorEventKind.SESSION:
            pass

        elif kind == VendorEventKind.TEXT_DELTA:
            if raw.text:
                message_id = (
                    raw.message_id or state.current_message_id or _new_message_id()
                )
                state.current_message_id = message_id
                state.pending_chunks.setdefault(message_id, []).append(raw.text)
                events.append(ChunkEvent(message_id=message_id, text=raw.text))

        elif kind == VendorEventKind.MESSAGE:
            if raw.role == "assistant":
                events.append(self._complete_message(raw))

        elif kind == VendorEventKind.RESULT:
            events.extend(self._flush_pending())
            usage = TokenUsage.from_mapping(raw.usage)
            state.usage = usage
            events.append(self._result(usage, raw))
            if raw.error:
                events.append(ErrorEvent(message=raw.error))
                events.append(self._end("error"))
            else:
                events.append(self._end(raw.reason or "result"))

        elif kind == VendorEventKind.END:
            events.extend(self._flush_pending())
            events.append(self._end(raw.reason or "end"))

        elif kind == VendorEventKind.ERROR:
            events.extend(self._flush_pending())
            events.append(ErrorEvent(message=raw.error or "unknown vendor error"))
            events.append(self._end("error"))

        elif kind == VendorEventKind.ABORTED:
            events.extend(self._stop(raw.reason or "aborted"))

        return events

    def finish(self) -> list[NormalizedEvent]:
        """Close the turn when the raw source is exhausted."""
        if self.state.finished:
            return []
        events = self._begin()
        if self.state.abort_requested:
            events.extend(self._stop("aborted"))
        else:
            events.extend(self._flush_pending())
            events.append(self._end("exhausted"))
        return events

    def stop(self, reason: str = "aborted") -> list[NormalizedEvent]:
        """Close the turn as stopped (abort grace elapsed)."""
        if self.state.finished:
            return []
        return self._begin() + self._stop(reason)

    def _begin(self) -> list[NormalizedEvent]:
        if self.state.started:
            return []
        self.state.started = True
        return [StartEvent(session_id=self._session_id)]

    def _complete_message(self, raw: VendorEvent) -> CompleteEvent:
        state = self.state
        message_id = raw.message_id or state.current_message_id or _new_message_id()
        chunks = state.pending_chunks.pop(message_id, [])
        if state.current_message_id == message_id:
            state.current_message_id = None
        text = raw.text if raw.text is not None else "".join(chunks)
        return CompleteEvent(
            message_id=message_id,
            role=raw.role,
            text=text,
            content=list(raw.content),
            tool_uses=list(raw.tool_uses),
        )

    def _flush_pending(self) -> list[NormalizedEvent]:
        """Emit complete events for messages that only arrived as chunks."""
        state = self.state
        events: list[NormalizedEvent] = []
        for message_id, chunks in state.pending_chunks.items():
            events.append(CompleteEvent(message_id=message_id, text="".join(chunks)))
        state.pending_chunks.clear()
        state.current_message_id = None
        return events

    def _result(self, usage: TokenUsage, raw: VendorEvent) -> ResultEvent:
        # Most vendors do not name the model on the result itself.
        model = self.state.model or self._model or default_model_for(self._agent_type)
        return ResultEvent(
            usage=usage,
            model=model,
            context_window_limit=get_context_window_limit(self._agent_type, model),
            is_error=bool(raw.error),
            raw=raw.raw,
        )

    def _end(self, reason: str) -> EndEvent:
        self.state.finished = True
        self.state.end_reason = reason
        return EndEvent(reason=reason)

    def _stop(self, reason: str) -> list[NormalizedEvent]:
        events = self._flush_pending()
        self.state.finished = True
        self.state.end_reason = "stopped"
        events.append(StoppedEvent(reason=reason))
        return events

    # ── Pull loop ─────────────────────────────────────────────

    async def stream(
        self,
        source: AsyncIterator[VendorEvent] | Any,
        cancel: CancellationToken | None = None,
        abort: Callable[[], Awaitable[None]] | None = None,
    ) -> AsyncIterator[NormalizedEvent]:
        """Pull raw events from *source* and yield normalized events.

        Terminates on end/error/stopped. Raises IdleTimeoutError when the
        source goes silent; any other exception from the source
        propagates, except after an abort request, where it is the
        vendor winding down and folds into ``stopped``.
        """
        iterator = source.__aiter__()
        next_task: asyncio.Future | None = None
        cancel_task: asyncio.Future | None = None
        abort_deadline: float | None = None

        try:
            while not self.state.finished:
                if next_task is None:
                    next_task = asyncio.ensure_future(iterator.__anext__())
                waiters: set[asyncio.Future] = {next_task}
                if cancel is not None and not self.state.abort_requested:
                    if cancel_task is None:
                        cancel_task = asyncio.ensure_future(cancel.wait())
                    waiters.add(cancel_task)

                done, _ = await asyncio.wait(
                    waiters,
                    timeout=self._wait_budget(abort_deadline),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if next_task in done:
                    finished_task, next_task = next_task, None
                    try:
                        raw = finished_task.result()
                    except StopAsyncIteration:
                        for event in self.finish():
                            yield event
                        break
                    except Exception as exc:
                        if not self.state.abort_requested:
                            raise
                        logger.debug(
                            "Session %s: vendor raised after abort request (%s); "
                            "treating as stopped",
                            self._session_id, exc,
                        )
                        for event in self.stop("aborted"):
                            yield event
                        break
                    for event in self.process(raw):
                        yield event
                    continue

                if cancel_task is not None and cancel_task in done:
                    cancel_task = None
                    self.state.abort_requested = True
                    abort_deadline = self._clock() + max(0.0, self._abort_grace)
                    logger.info(
                        "Session %s: stop requested (%s), aborting vendor call",
                        self._session_id, cancel.reason if cancel else "stop",
                    )
                    await self._request_abort(abort)
                    continue

                if self.state.abort_requested:
                    if abort_deadline is not None and self._clock() >= abort_deadline:
                        logger.warning(
                            "Session %s: vendor did not confirm abort within %ss",
                            self._session_id, self._abort_grace,
                        )
                        for event in self.stop("abort_timeout"):
                            yield event
                        break
                    continue

                self.check_idle()
        finally:
            await _cancel_quietly(next_task)
            await _cancel_quietly(cancel_task)
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as exc:
                    logger.debug("Error closing vendor stream: %s", exc)

    def _wait_budget(self, abort_deadline: float | None) -> float | None:
        budgets: list[float] = []
        if self._idle_timeout > 0 and not self.state.abort_requested:
            remaining = self._idle_timeout - self.idle_seconds()
            # wake just past the threshold so check_idle() sees it exceeded
            budgets.append(max(0.0, remaining) + 0.001)
        if abort_deadline is not None:
            budgets.append(max(0.0, abort_deadline - self._clock()))
        return min(budgets) if budgets else None

    async def _request_abort(self, abort: Callable[[], Awaitable[None]] | None) -> None:
        if abort is None:
            return
        try:
            await abort()
        except Exception as exc:
            logger.warning(
                "Session %s: abort request failed: %s", self._session_id, exc,
            )


def _new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


async def _cancel_quietly(task: asyncio.Future | None) -> None:
    if task is None or task.done():
        if task is not None and task.done() and not task.cancelled():
            # retrieve to avoid "exception was never retrieved"
            task.exception()
        return
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, StopAsyncIteration):
        pass
    except Exception as exc:
        logger.debug("Pending vendor read failed during shutdown: %s", exc)
