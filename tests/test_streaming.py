"""Tests for StreamingMessageProcessor."""
from __future__ import annotations

import pytest

from agentmux.engine.errors import IdleTimeoutError
from agentmux.engine.streaming import (
    CancellationToken,
    ChunkEvent,
    CompleteEvent,
    EndEvent,
    ResultEvent,
    SessionIdCapturedEvent,
    StoppedEvent,
    StreamingMessageProcessor,
    VendorEvent,
    VendorEventKind,
)

from conftest import ScriptedCall, message, result, session_event


def _types(events):
    return [e.type for e in events]


def _fold(processor, raws):
    events = []
    for raw in raws:
        events.extend(processor.process(raw))
    return events


def test_two_messages_produce_two_complete_events():
    processor = StreamingMessageProcessor("s1")
    events = _fold(processor, [
        session_event("thread-1"),
        message("first", "m1"),
        message("second", "m2"),
        result({"input_tokens": 10, "output_tokens": 4}),
    ])
    assert _types(events) == [
        "start", "session_id_captured", "complete", "complete", "result", "end",
    ]
    completes = [e for e in events if isinstance(e, CompleteEvent)]
    assert [c.text for c in completes] == ["first", "second"]
    usage = next(e for e in events if isinstance(e, ResultEvent)).usage
    assert usage.input_tokens == 10
    assert usage.output_tokens == 4


def test_chunks_then_message_without_text_joins_chunks():
    processor = StreamingMessageProcessor("s1")
    events = _fold(processor, [
        VendorEvent(kind=VendorEventKind.TEXT_DELTA, message_id="m1", text="Hel"),
        VendorEvent(kind=VendorEventKind.TEXT_DELTA, message_id="m1", text="lo"),
        VendorEvent(kind=VendorEventKind.MESSAGE, message_id="m1", text=None),
    ])
    assert _types(events) == ["start", "chunk", "chunk", "complete"]
    assert [e.text for e in events if isinstance(e, ChunkEvent)] == ["Hel", "lo"]
    assert events[-1].text == "Hello"


def test_result_flushes_chunk_only_message_before_result():
    processor = StreamingMessageProcessor("s1")
    events = _fold(processor, [
        VendorEvent(kind=VendorEventKind.TEXT_DELTA, message_id="m1", text="partial"),
        result(),
    ])
    assert _types(events) == ["start", "chunk", "complete", "result", "end"]
    assert events[2].text == "partial"


def test_continuation_captured_only_when_new():
    fresh = StreamingMessageProcessor("s1")
    events = _fold(fresh, [session_event("t-1"), message("x"), result(continuation_id="t-1")])
    captured = [e for e in events if isinstance(e, SessionIdCapturedEvent)]
    assert len(captured) == 1
    assert captured[0].continuation_id == "t-1"
    # captured before anything derived from the same raw event
    assert _types(events)[:2] == ["start", "session_id_captured"]

    resumed = StreamingMessageProcessor("s1", existing_continuation_id="t-1")
    events = _fold(resumed, [session_event("t-1"), message("x"), result()])
    assert "session_id_captured" not in _types(events)


def test_events_after_end_are_ignored():
    processor = StreamingMessageProcessor("s1")
    _fold(processor, [message("done"), result()])
    assert processor.process(message("late")) == []
    assert processor.finish() == []


def test_vendor_error_in_result_emits_error_then_end():
    processor = StreamingMessageProcessor("s1")
    events = _fold(processor, [message("x"), result(error="rate limited")])
    assert _types(events) == ["start", "complete", "result", "error", "end"]
    assert events[-1].reason == "error"
    assert events[2].is_error is True


def test_error_event_closes_turn():
    processor = StreamingMessageProcessor("s1")
    events = processor.process(VendorEvent(kind=VendorEventKind.ERROR, error="boom"))
    assert _types(events) == ["start", "error", "end"]
    assert events[1].message == "boom"


def test_aborted_event_emits_single_stopped():
    processor = StreamingMessageProcessor("s1")
    events = _fold(processor, [
        message("a"),
        VendorEvent(kind=VendorEventKind.ABORTED),
        VendorEvent(kind=VendorEventKind.ABORTED),
    ])
    assert _types(events) == ["start", "complete", "stopped"]


def test_finish_without_result_ends_exhausted():
    processor = StreamingMessageProcessor("s1")
    events = processor.process(
        VendorEvent(kind=VendorEventKind.TEXT_DELTA, message_id="m1", text="tail"),
    )
    events += processor.finish()
    assert _types(events) == ["start", "chunk", "complete", "end"]
    assert events[-1].reason == "exhausted"


def test_idle_timeout_uses_time_since_last_event():
    now = [0.0]
    processor = StreamingMessageProcessor(
        "s1", idle_timeout_seconds=10, agent_type="codex", clock=lambda: now[0],
    )
    now[0] = 5.0
    processor.check_idle()
    processor.process(message("tick"))
    now[0] = 14.0
    assert processor.has_timed_out() is False
    now[0] = 15.5
    assert processor.has_timed_out() is True
    with pytest.raises(IdleTimeoutError) as exc_info:
        processor.check_idle()
    assert exc_info.value.messages_processed == 1
    assert exc_info.value.agent_type == "codex"
    assert exc_info.value.timeout_seconds == 10


def test_idle_timeout_disabled_with_zero():
    now = [0.0]
    processor = StreamingMessageProcessor("s1", idle_timeout_seconds=0, clock=lambda: now[0])
    now[0] = 10_000.0
    assert processor.has_timed_out() is False


@pytest.mark.asyncio
async def test_stream_runs_to_end():
    call = ScriptedCall([session_event("t-1"), message("hi"), result()])
    processor = StreamingMessageProcessor("s1")
    events = [e async for e in processor.stream(call)]
    assert _types(events) == ["start", "session_id_captured", "complete", "result", "end"]
    assert call.finished


@pytest.mark.asyncio
async def test_stream_abort_mid_turn_ends_with_stopped():
    call = ScriptedCall([message("a"), 5.0, message("b"), result()])
    token = CancellationToken()
    processor = StreamingMessageProcessor("s1", abort_grace_seconds=1.0)

    events = []
    async for event in processor.stream(call, cancel=token, abort=call.abort):
        events.append(event)
        if isinstance(event, CompleteEvent):
            token.cancel("stop")

    assert isinstance(events[-1], StoppedEvent)
    assert _types(events).count("stopped") == 1
    assert "end" not in _types(events)
    assert [e.text for e in events if isinstance(e, CompleteEvent)] == ["a"]
    assert call.abort_requested


@pytest.mark.asyncio
async def test_stream_abort_not_confirmed_stops_after_grace():
    call = ScriptedCall([message("a"), 5.0, result()], confirm_abort=False)
    token = CancellationToken()
    processor = StreamingMessageProcessor("s1", abort_grace_seconds=0.05)

    events = []
    async for event in processor.stream(call, cancel=token, abort=call.abort):
        events.append(event)
        if isinstance(event, CompleteEvent):
            token.cancel()

    assert isinstance(events[-1], StoppedEvent)
    assert events[-1].reason == "abort_timeout"


class _RaisesWhenInterrupted(ScriptedCall):
    async def events(self):
        yield message("a")
        await self._abort_signal.wait()
        raise RuntimeError("interrupted")


@pytest.mark.asyncio
async def test_stream_vendor_error_after_abort_is_stopped():
    call = _RaisesWhenInterrupted([])
    token = CancellationToken()
    processor = StreamingMessageProcessor("s1", abort_grace_seconds=1.0)

    events = []
    async for event in processor.stream(call, cancel=token, abort=call.abort):
        events.append(event)
        if isinstance(event, CompleteEvent):
            token.cancel()

    assert _types(events)[-1] == "stopped"
    assert "error" not in _types(events)


@pytest.mark.asyncio
async def test_stream_idle_timeout_raises():
    call = ScriptedCall([message("a"), 1.0, result()])
    processor = StreamingMessageProcessor("s1", idle_timeout_seconds=0.05)

    events = []
    with pytest.raises(IdleTimeoutError):
        async for event in processor.stream(call):
            events.append(event)
    assert _types(events) == ["start", "complete"]


@pytest.mark.asyncio
async def test_stream_vendor_exception_propagates():
    call = ScriptedCall([message("a"), RuntimeError("vendor crashed")])
    processor = StreamingMessageProcessor("s1")
    with pytest.raises(RuntimeError, match="vendor crashed"):
        async for _ in processor.stream(call):
            pass


@pytest.mark.asyncio
async def test_stream_exhausted_source_ends():
    call = ScriptedCall([message("only")])
    processor = StreamingMessageProcessor("s1")
    events = [e async for e in processor.stream(call)]
    assert isinstance(events[-1], EndEvent)
    assert events[-1].reason == "exhausted"
