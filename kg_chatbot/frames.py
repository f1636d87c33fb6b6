"""UI message stream frames and their SSE wire encoding."""

import asyncio
import json
from typing import Any, Awaitable, Callable

Frame = dict[str, Any]

KEEPALIVE = b": heartbeat\n\n"
DONE_MARKER = b"data: [DONE]\n\n"


def start() -> Frame:
    return {"type": "start"}


def start_step() -> Frame:
    return {"type": "start-step"}


def text_start(block_id: str) -> Frame:
    return {"type": "text-start", "id": block_id}


def text_delta(block_id: str, delta: str) -> Frame:
    return {"type": "text-delta", "id": block_id, "delta": delta}


def text_end(block_id: str) -> Frame:
    return {"type": "text-end", "id": block_id}


def tool_input_start(call_id: str, tool_name: str) -> Frame:
    return {"type": "tool-input-start", "toolCallId": call_id, "toolName": tool_name, "dynamic": True}


def tool_input_available(call_id: str, tool_name: str, tool_input: dict[str, Any]) -> Frame:
    return {
        "type": "tool-input-available",
        "toolCallId": call_id,
        "toolName": tool_name,
        "input": tool_input,
        "dynamic": True,
    }


def tool_output_available(call_id: str, output: str) -> Frame:
    return {"type": "tool-output-available", "toolCallId": call_id, "output": output, "dynamic": True}


def finish_step() -> Frame:
    return {"type": "finish-step"}


def finish(reason: str = "stop") -> Frame:
    return {"type": "finish", "finishReason": reason}


def error(message: str) -> Frame:
    return {"type": "error", "errorText": message}


def encode_frame(frame: Frame) -> bytes:
    """Serialize one frame as an SSE ``data:`` event."""
    return f"data: {json.dumps(frame, ensure_ascii=False, separators=(',', ':'))}\n\n".encode("utf-8")


class FrameEmitter:
    """Writes encoded frames to a response, one write per frame.

    Args:
        write: Coroutine function taking the bytes to send
            (``web.StreamResponse.write``).
    """

    def __init__(self, write: Callable[[bytes], Awaitable[Any]]):
        self._write = write
        self._lock = asyncio.Lock()

    async def _send(self, payload: bytes) -> None:
        # The heartbeat task writes concurrently with the frame stream.
        async with self._lock:
            await self._write(payload)

    async def emit(self, frame: Frame) -> None:
        await self._send(encode_frame(frame))

    async def keepalive(self) -> None:
        await self._send(KEEPALIVE)

    async def done(self) -> None:
        await self._send(DONE_MARKER)
