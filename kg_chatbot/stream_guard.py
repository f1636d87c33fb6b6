"""Cancellation and liveness for one streamed response."""

import asyncio
from typing import AsyncIterator, Callable

from kg_chatbot.cancellation import cancel_task
from kg_chatbot.exceptions import RequestCancelledError
from kg_chatbot.frames import Frame, FrameEmitter
from kg_chatbot.logging import get_logger

log = get_logger(__name__)


class StreamGuard:
    """Writes frames to the client until completion or disconnect.

    Owns the request's abort event and a closed flag that flips exactly once.
    A heartbeat task sends keep-alive comments while the stream is open and
    doubles as the disconnect probe between frames.

    Args:
        emitter: Frame writer for the response.
        is_disconnected: Returns True once the client connection is gone.
        keepalive_interval: Seconds between keep-alive comments.
    """

    def __init__(
        self,
        emitter: FrameEmitter,
        is_disconnected: Callable[[], bool] = lambda: False,
        keepalive_interval: float = 2.0,
    ):
        self.emitter = emitter
        self.is_disconnected = is_disconnected
        self.keepalive_interval = keepalive_interval
        self.abort_event = asyncio.Event()
        self.cancel_reason = ""
        self._closed = False
        self._heartbeat_task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _close(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        return True

    def cancel(self, reason: str = "client disconnected") -> None:
        """Close the stream and abort upstream work."""
        if self._close():
            self.cancel_reason = reason
            log.info("Stream cancelled", reason=reason)
        self.abort_event.set()

    async def _write(self, send) -> bool:
        if self._closed:
            return False
        if self.is_disconnected():
            self.cancel()
            return False
        try:
            await send()
        except ConnectionError as e:
            self.cancel(f"write failed: {e}")
            return False
        return True

    async def _heartbeat(self) -> None:
        while not self._closed:
            try:
                await asyncio.wait_for(self.abort_event.wait(), timeout=self.keepalive_interval)
            except asyncio.TimeoutError:
                pass
            else:
                return
            await self._write(self.emitter.keepalive)

    async def run(self, frames: AsyncIterator[Frame]) -> None:
        """Pump ``frames`` to the client; writes ``[DONE]`` on natural completion."""
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        try:
            async for frame in frames:
                if not await self._write(lambda: self.emitter.emit(frame)):
                    break
            else:
                if not self._closed and not self.is_disconnected():
                    self._close()
                    try:
                        await self.emitter.done()
                    except ConnectionError as e:
                        log.info("Client gone before [DONE]", error=str(e))
        except RequestCancelledError:
            log.info("Upstream work aborted", reason=self.cancel_reason or "aborted")
        finally:
            self._close()
            self.abort_event.set()
            await cancel_task(self._heartbeat_task)
            self._heartbeat_task = None
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()
