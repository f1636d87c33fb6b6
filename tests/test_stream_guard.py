import asyncio
import json

import pytest

from kg_chatbot.agent_loop import AgentLoop
from kg_chatbot.cancellation import wait_or_abort
from kg_chatbot.conversation import Turn
from kg_chatbot.exceptions import RequestCancelledError
from kg_chatbot.frames import DONE_MARKER, KEEPALIVE, FrameEmitter
from kg_chatbot.llm import ModelSession
from kg_chatbot.llm.events import TextBlockStarted, TextDelta
from kg_chatbot.stream_guard import StreamGuard


class RecordingWriter:
    def __init__(self, disconnect_after: str | None = None, fail_after: str | None = None):
        self.payloads: list[bytes] = []
        self.disconnect_after = disconnect_after
        self.fail_after = fail_after
        self.disconnected = False
        self._failing = False

    async def write(self, payload: bytes) -> None:
        if self._failing:
            raise ConnectionResetError("Cannot write to closing transport")
        self.payloads.append(payload)
        if self.disconnect_after and f'"type":"{self.disconnect_after}"'.encode() in payload:
            self.disconnected = True
        if self.fail_after and f'"type":"{self.fail_after}"'.encode() in payload:
            self._failing = True

    def frame_types(self) -> list[str]:
        return [
            json.loads(payload[len(b"data: "):])["type"]
            for payload in self.payloads
            if payload.startswith(b"data: {")
        ]


class HangingSession(ModelSession):
    """Streams one text block, then waits on the model until aborted."""

    def __init__(self):
        self.aborted = False
        self.closed = False

    async def stream_turn(self, turns, abort_event=None):
        yield TextBlockStarted("t1")
        yield TextDelta("t1", "Thinking")
        try:
            await wait_or_abort(asyncio.sleep(30), abort_event)
        except RequestCancelledError:
            self.aborted = True
            raise

    async def call_tool(self, call, abort_event=None):
        return ""

    async def aclose(self):
        self.closed = True


async def _frames(*items, delay=0.0):
    for item in items:
        if delay:
            await asyncio.sleep(delay)
        yield item


@pytest.mark.asyncio
async def test_completed_stream_ends_with_single_done_marker():
    writer = RecordingWriter()
    guard = StreamGuard(FrameEmitter(writer.write), keepalive_interval=10.0)

    await guard.run(_frames({"type": "start"}, {"type": "finish", "finishReason": "stop"}))

    assert writer.frame_types() == ["start", "finish"]
    assert writer.payloads[-1] == DONE_MARKER
    assert writer.payloads.count(DONE_MARKER) == 1
    assert guard.closed is True
    assert guard.cancel_reason == ""


@pytest.mark.asyncio
async def test_keepalive_comments_are_sent_while_waiting():
    writer = RecordingWriter()
    guard = StreamGuard(FrameEmitter(writer.write), keepalive_interval=0.02)

    await guard.run(_frames({"type": "start"}, {"type": "finish", "finishReason": "stop"}, delay=0.15))

    assert KEEPALIVE in writer.payloads
    assert writer.payloads[-1] == DONE_MARKER
    assert writer.payloads.index(KEEPALIVE) < writer.payloads.index(DONE_MARKER)


@pytest.mark.asyncio
async def test_disconnect_after_start_step_stops_frames():
    writer = RecordingWriter(disconnect_after="start-step")
    guard = StreamGuard(
        FrameEmitter(writer.write),
        is_disconnected=lambda: writer.disconnected,
        keepalive_interval=10.0,
    )
    session = HangingSession()
    loop = AgentLoop(session, abort_event=guard.abort_event)

    await guard.run(loop.run([Turn.text("user", "hi")]))

    assert writer.frame_types() == ["start", "start-step"]
    assert DONE_MARKER not in writer.payloads
    assert guard.abort_event.is_set()
    assert guard.cancel_reason == "client disconnected"


@pytest.mark.asyncio
async def test_disconnect_while_waiting_aborts_upstream():
    writer = RecordingWriter(disconnect_after="text-delta")
    guard = StreamGuard(
        FrameEmitter(writer.write),
        is_disconnected=lambda: writer.disconnected,
        keepalive_interval=0.02,
    )
    session = HangingSession()
    loop = AgentLoop(session, abort_event=guard.abort_event)

    await asyncio.wait_for(guard.run(loop.run([Turn.text("user", "hi")])), timeout=5.0)

    assert session.aborted is True
    assert writer.frame_types() == ["start", "start-step", "text-start", "text-delta"]
    assert KEEPALIVE not in writer.payloads
    assert DONE_MARKER not in writer.payloads
    assert guard.closed is True


@pytest.mark.asyncio
async def test_write_failure_cancels_stream():
    writer = RecordingWriter(fail_after="start-step")
    guard = StreamGuard(FrameEmitter(writer.write), keepalive_interval=10.0)
    session = HangingSession()
    loop = AgentLoop(session, abort_event=guard.abort_event)

    await asyncio.wait_for(guard.run(loop.run([Turn.text("user", "hi")])), timeout=5.0)

    assert writer.frame_types() == ["start", "start-step"]
    assert guard.cancel_reason.startswith("write failed")
    assert guard.abort_event.is_set()


@pytest.mark.asyncio
async def test_cancel_is_idempotent():
    guard = StreamGuard(FrameEmitter(RecordingWriter().write))

    guard.cancel("first")
    guard.cancel("second")

    assert guard.closed is True
    assert guard.cancel_reason == "first"
    assert guard.abort_event.is_set()
