"""Anthropic Messages API backend - streams events and runs tools via the gateway."""

import asyncio
from typing import Any, AsyncIterator, Sequence

import anthropic
import httpx

from kg_chatbot.cancellation import wait_or_abort
from kg_chatbot.conversation import TextBlock, ToolResultBlock, ToolUseBlock, Turn
from kg_chatbot.exceptions import LLMAPIError
from kg_chatbot.llm import ModelSession, ToolCall
from kg_chatbot.llm.events import DONE, ModelEvent, TurnFinished
from kg_chatbot.llm.normalizer import ApiEventNormalizer
from kg_chatbot.logging import get_logger

log = get_logger(__name__)


def create_client(
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float = 120.0,
) -> anthropic.AsyncAnthropic:
    """Create an Anthropic client on a dedicated httpx connection pool."""
    return anthropic.AsyncAnthropic(
        api_key=api_key,
        base_url=base_url,
        http_client=httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            follow_redirects=True,
        ),
    )


def to_api_messages(turns: Sequence[Turn]) -> list[dict[str, Any]]:
    """Convert conversation turns to Messages API format."""
    result: list[dict[str, Any]] = []
    for turn in turns:
        blocks: list[dict[str, Any]] = []
        for block in turn.content:
            if isinstance(block, TextBlock):
                if block.text:
                    blocks.append({"type": "text", "text": block.text})
            elif isinstance(block, ToolUseBlock):
                blocks.append({
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.input,
                })
            elif isinstance(block, ToolResultBlock):
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": block.content,
                })
        if not blocks:
            continue
        if len(blocks) == 1 and blocks[0]["type"] == "text":
            result.append({"role": turn.role, "content": blocks[0]["text"]})
        else:
            result.append({"role": turn.role, "content": blocks})
    return result


def _api_error(exc: Exception) -> LLMAPIError:
    if isinstance(exc, anthropic.APIStatusError):
        return LLMAPIError(
            f"Anthropic API error {exc.status_code}: {exc.message}",
            status_code=exc.status_code,
        )
    return LLMAPIError(f"Anthropic API error: {exc}")


class AnthropicSession(ModelSession):
    """Direct streaming API session."""

    def __init__(
        self,
        model: str,
        max_tokens: int,
        system_prompt: str,
        gateway,
        client: anthropic.AsyncAnthropic | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self.gateway = gateway
        self._owns_client = client is None
        self.client = client or create_client(api_key=api_key, base_url=base_url, timeout=timeout)

    async def stream_turn(
        self,
        turns: Sequence[Turn],
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ModelEvent]:
        tools = await self.gateway.list_tools(abort_event=abort_event)
        normalizer = ApiEventNormalizer()

        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": to_api_messages(turns),
            "stream": True,
        }
        if self.system_prompt:
            request["system"] = self.system_prompt
        if tools:
            request["tools"] = [tool.to_api() for tool in tools]

        log.debug("Calling Anthropic", model=self.model, msg_count=len(request["messages"]), tools=len(tools))
        try:
            stream = await wait_or_abort(self.client.messages.create(**request), abort_event)
        except (anthropic.APIError, httpx.HTTPError) as e:
            raise _api_error(e) from e

        finished = False
        try:
            events = stream.__aiter__()
            while not finished:
                try:
                    raw = await wait_or_abort(events.__anext__(), abort_event)
                except StopAsyncIteration:
                    break
                for event in normalizer.feed(raw):
                    yield event
                    if isinstance(event, TurnFinished):
                        finished = True
        except (anthropic.APIError, httpx.HTTPError) as e:
            raise _api_error(e) from e
        finally:
            await stream.close()

        if not finished:
            yield TurnFinished(DONE)

    async def call_tool(self, call: ToolCall, abort_event: asyncio.Event | None = None) -> str:
        return await self.gateway.call_tool(call.name, call.input, abort_event=abort_event)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.close()
