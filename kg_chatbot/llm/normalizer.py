"""Map raw backend events onto the internal model event vocabulary.

Both backends speak the Anthropic Messages streaming shapes
(``content_block_start``, ``content_block_delta``, ``content_block_stop``,
``message_delta``).  The API backend hands them over directly; the CLI backend
wraps them in ``stream_event`` NDJSON lines and adds its own ``user``
and ``result`` lines.  Unknown or unparseable input is dropped.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any

from kg_chatbot.conversation import flatten_tool_content
from kg_chatbot.exceptions import LLMAPIError, LLMError
from kg_chatbot.llm.events import (
    DONE,
    TOOL_USE,
    BlockEnded,
    BlockIdMap,
    ModelEvent,
    TextBlockStarted,
    TextDelta,
    ToolBlockStarted,
    ToolResultEchoed,
    TurnFinished,
)
from kg_chatbot.logging import get_logger

log = get_logger(__name__)

_MCP_TOOL_PREFIX_RE = re.compile(r"^mcp__\w+?__")


def strip_mcp_prefix(name: str) -> str:
    """``mcp__neo4j__execute_cypher`` -> ``execute_cypher``."""
    return _MCP_TOOL_PREFIX_RE.sub("", name or "")


class EventNormalizer(ABC):
    """Turn-scoped translator from raw backend events to model events."""

    def __init__(self):
        self.blocks = BlockIdMap()

    @abstractmethod
    def feed(self, raw: Any) -> list[ModelEvent]:
        """Translate one raw event; returns zero or more model events."""

    def finish_reason(self, stop_reason: str | None) -> str | None:
        if not stop_reason:
            return None
        return TOOL_USE if stop_reason == TOOL_USE else DONE

    def tool_name(self, raw_name: str) -> str:
        return raw_name

    def _stream_event(self, event: Any) -> list[ModelEvent]:
        if not isinstance(event, dict):
            return []
        kind = event.get("type")

        if kind == "content_block_start":
            block = event.get("content_block") or {}
            index = event.get("index")
            if block.get("type") == "text":
                entry = self.blocks.open(index, "text")
                events: list[ModelEvent] = [TextBlockStarted(entry.block_id)]
                if block.get("text"):
                    events.append(TextDelta(entry.block_id, block["text"]))
                return events
            if block.get("type") == "tool_use":
                name = self.tool_name(str(block.get("name") or ""))
                entry = self.blocks.open(
                    index,
                    "tool_use",
                    upstream_id=str(block.get("id") or ""),
                    tool_name=name,
                )
                if isinstance(block.get("input"), dict) and block["input"]:
                    entry.full_input = dict(block["input"])
                return [ToolBlockStarted(entry.block_id, name, entry.upstream_id)]
            return []

        if kind == "content_block_delta":
            entry = self.blocks.at(event.get("index"))
            delta = event.get("delta") or {}
            if entry is None:
                return []
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [TextDelta(entry.block_id, delta["text"])]
            if delta.get("type") == "input_json_delta":
                entry.partial_json.append(str(delta.get("partial_json") or ""))
            return []

        if kind == "content_block_stop":
            entry = self.blocks.at(event.get("index"))
            if entry is None:
                return []
            if entry.kind == "text":
                return [BlockEnded(entry.block_id)]
            return [BlockEnded(entry.block_id, self._tool_input(entry))]

        if kind == "message_delta":
            reason = self.finish_reason((event.get("delta") or {}).get("stop_reason"))
            return [TurnFinished(reason)] if reason else []

        if kind == "error":
            error = event.get("error") or {}
            raise LLMAPIError(str(error.get("message") or "Model stream error"))

        return []

    @staticmethod
    def _tool_input(entry) -> dict[str, Any]:
        raw = "".join(entry.partial_json).strip()
        if raw:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                log.warning("Unparseable tool input", tool=entry.tool_name, raw=raw[:200])
            else:
                if isinstance(parsed, dict):
                    return parsed
        return dict(entry.full_input or {})


class ApiEventNormalizer(EventNormalizer):
    """Normalizer for Messages API stream events (SDK models or plain dicts)."""

    def feed(self, raw: Any) -> list[ModelEvent]:
        if hasattr(raw, "model_dump"):
            raw = raw.model_dump()
        return self._stream_event(raw)


class CliEventNormalizer(EventNormalizer):
    """Normalizer for ``claude -p --output-format stream-json`` stdout lines."""

    @staticmethod
    def parse_line(line: str) -> dict[str, Any] | None:
        text = (line or "").strip()
        if not text:
            return None
        try:
            event = json.loads(text)
        except json.JSONDecodeError:
            return None
        return event if isinstance(event, dict) else None

    def finish_reason(self, stop_reason: str | None) -> str | None:
        # Non-tool turns end on the ``result`` line.
        return TOOL_USE if stop_reason == TOOL_USE else None

    def tool_name(self, raw_name: str) -> str:
        return strip_mcp_prefix(raw_name)

    def feed(self, raw: Any) -> list[ModelEvent]:
        event = self.parse_line(raw) if isinstance(raw, str) else raw
        if not isinstance(event, dict):
            return []
        kind = event.get("type")

        if kind == "stream_event":
            return self._stream_event(event.get("event"))

        if kind == "user":
            return self._echoed_results(event)

        if kind == "result":
            if event.get("is_error"):
                detail = event.get("result") or event.get("subtype") or "unknown error"
                raise LLMError(f"claude reported an error: {detail}")
            return [TurnFinished(DONE)]

        return []

    def _content_blocks(self, event: dict[str, Any]) -> list[dict[str, Any]]:
        content = (event.get("message") or {}).get("content")
        if not isinstance(content, list):
            return []
        return [block for block in content if isinstance(block, dict)]

    def _echoed_results(self, event: dict[str, Any]) -> list[ModelEvent]:
        results: list[ModelEvent] = []
        for block in self._content_blocks(event):
            if block.get("type") != "tool_result":
                continue
            entry = self.blocks.by_upstream_id(block.get("tool_use_id"))
            if entry is None:
                continue
            results.append(ToolResultEchoed(
                entry.block_id,
                flatten_tool_content(block.get("content")),
                is_error=bool(block.get("is_error")),
            ))
        return results
