"""Agentic loop controller: model turns, tool execution, and UI frames."""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable

from kg_chatbot import frames
from kg_chatbot.cancellation import check_abort
from kg_chatbot.conversation import (
    Conversation,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
)
from kg_chatbot.exceptions import RequestCancelledError
from kg_chatbot.frames import Frame
from kg_chatbot.llm import ModelSession, ToolCall
from kg_chatbot.llm.events import (
    TOOL_USE,
    BlockEnded,
    TextBlockStarted,
    TextDelta,
    ToolBlockStarted,
    TurnFinished,
)
from kg_chatbot.logging import get_logger

log = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 10


class _StepFrames:
    """Keeps start-step/finish-step and text-start/text-end balanced."""

    def __init__(self):
        self.step_open = False
        self.open_text: list[str] = []

    def ensure_step(self) -> list[Frame]:
        if self.step_open:
            return []
        self.step_open = True
        return [frames.start_step()]

    def start_text(self, block_id: str) -> list[Frame]:
        out = self.ensure_step()
        self.open_text.append(block_id)
        out.append(frames.text_start(block_id))
        return out

    def end_text(self, block_id: str) -> list[Frame]:
        if block_id not in self.open_text:
            return []
        self.open_text.remove(block_id)
        return [frames.text_end(block_id)]

    def close(self) -> list[Frame]:
        out = [frames.text_end(block_id) for block_id in self.open_text]
        self.open_text = []
        if self.step_open:
            self.step_open = False
            out.append(frames.finish_step())
        return out


@dataclass
class _AssistantDraft:
    """Content of the assistant turn being streamed, in block order."""

    blocks: list[Any] = field(default_factory=list)
    calls: list[ToolCall] = field(default_factory=list)
    texts: dict[str, TextBlock] = field(default_factory=dict)
    tools: dict[str, ToolCall] = field(default_factory=dict)

    def start_text(self, block_id: str) -> None:
        block = TextBlock(text="")
        self.texts[block_id] = block
        self.blocks.append(block)

    def add_text(self, block_id: str, text: str) -> None:
        if block_id not in self.texts:
            self.start_text(block_id)
        self.texts[block_id].text += text

    def start_tool(self, event: ToolBlockStarted) -> None:
        call = ToolCall(
            call_id=event.block_id,
            block_id=event.upstream_id or event.block_id,
            name=event.tool_name,
        )
        self.tools[event.block_id] = call
        self.calls.append(call)
        self.blocks.append(call)

    def to_turn(self) -> Turn:
        content = []
        for block in self.blocks:
            if isinstance(block, ToolCall):
                content.append(ToolUseBlock(id=block.block_id, name=block.name, input=block.input))
            elif block.text:
                content.append(block)
        return Turn(role="assistant", content=content)


class AgentLoop:
    """Drives one chat request through at most ``max_iterations`` model calls.

    ``run`` is an async generator of UI message stream frames.  Tool failures
    are fed back to the model as ``"Error: ..."`` results; upstream failures end
    the stream with an ``error`` frame and ``finish``.  Cancellation propagates
    as ``RequestCancelledError`` without further frames.
    """

    def __init__(
        self,
        session: ModelSession,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        abort_event: asyncio.Event | None = None,
    ):
        self.session = session
        self.max_iterations = max_iterations
        self.abort_event = abort_event or asyncio.Event()
        self.conversation = Conversation()
        self.iterations = 0

    async def run(self, initial_turns: Iterable[Turn]) -> AsyncIterator[Frame]:
        for turn in initial_turns:
            self.conversation.append(turn)

        yield frames.start()
        step = _StepFrames()

        try:
            while self.iterations < self.max_iterations:
                self.iterations += 1
                check_abort(self.abort_event)
                log.info("Model turn", iteration=self.iterations, turns=len(self.conversation))

                draft = _AssistantDraft()
                reason = None
                stream = self.session.stream_turn(self.conversation.turns, self.abort_event)
                async with aclosing(stream):
                    async for event in stream:
                        if isinstance(event, TurnFinished):
                            reason = event.reason
                            break
                        for frame in self._on_event(event, step, draft):
                            yield frame

                for frame in step.close():
                    yield frame
                self.conversation.append(draft.to_turn())

                if reason != TOOL_USE or not draft.calls:
                    yield frames.finish("stop")
                    return

                results: list[ToolResultBlock] = []
                for call in draft.calls:
                    yield frames.tool_input_available(call.call_id, call.name, call.input)
                    output = await self._execute(call)
                    yield frames.tool_output_available(call.call_id, output)
                    results.append(ToolResultBlock(tool_use_id=call.block_id, content=output))
                self.conversation.append(Turn(role="user", content=results))

            log.warning("Iteration ceiling reached", max_iterations=self.max_iterations)
            yield frames.finish("stop")
        except RequestCancelledError:
            log.info("Agent loop cancelled", iteration=self.iterations)
            raise
        except Exception as e:
            log.error("Agent loop failed", iteration=self.iterations, error=str(e))
            yield frames.error(str(e))
            for frame in step.close():
                yield frame
            yield frames.finish("error")

    def _on_event(self, event, step: _StepFrames, draft: _AssistantDraft) -> list[Frame]:
        if isinstance(event, TextBlockStarted):
            draft.start_text(event.block_id)
            return step.start_text(event.block_id)

        if isinstance(event, TextDelta):
            if not event.text:
                return []
            draft.add_text(event.block_id, event.text)
            out = [] if event.block_id in step.open_text else step.start_text(event.block_id)
            out.append(frames.text_delta(event.block_id, event.text))
            return out

        if isinstance(event, ToolBlockStarted):
            draft.start_tool(event)
            out = step.ensure_step()
            out.append(frames.tool_input_start(event.block_id, event.tool_name))
            return out

        if isinstance(event, BlockEnded):
            call = draft.tools.get(event.block_id)
            if call is not None:
                call.input = dict(event.tool_input or {})
                return []
            return step.end_text(event.block_id)

        return []

    async def _execute(self, call: ToolCall) -> str:
        log.info("Executing tool", tool=call.name, call_id=call.call_id)
        try:
            return await self.session.call_tool(call, self.abort_event)
        except RequestCancelledError:
            raise
        except Exception as e:
            log.warning("Tool failed", tool=call.name, error=str(e))
            return f"Error: {e}"
