"""Conversation turns, content blocks, and chat request normalization."""

import json
from dataclasses import dataclass, field
from typing import Any, Iterable

from kg_chatbot.exceptions import RequestValidationError


@dataclass
class TextBlock:
    """Plain text content."""

    text: str
    type: str = field(default="text", init=False)


@dataclass
class ToolUseBlock:
    """A tool invocation requested by the model."""

    id: str  # provider-assigned block id
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_use", init=False)


@dataclass
class ToolResultBlock:
    """Flattened tool output answering a tool invocation."""

    tool_use_id: str
    content: str
    type: str = field(default="tool_result", init=False)


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


@dataclass
class Turn:
    """One user submission or one assistant response."""

    role: str  # "user", "assistant"
    content: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def text(cls, role: str, text: str) -> "Turn":
        return cls(role=role, content=[TextBlock(text=text)])

    @property
    def plain_text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))


class Conversation:
    """Append-only ordered list of turns owned by one request."""

    def __init__(self, turns: Iterable[Turn] = ()):
        self._turns: list[Turn] = list(turns)

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)


def flatten_tool_content(content: Any) -> str:
    """Keep only the text parts of a tool result, concatenated.

    Parts may be plain dicts (stream-json) or typed objects (MCP SDK).
    """
    if isinstance(content, str):
        return content
    if isinstance(content, (list, tuple)):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                kind, text = item.get("type"), item.get("text")
            else:
                kind, text = getattr(item, "type", None), getattr(item, "text", None)
            if kind == "text" and text:
                parts.append(str(text))
        return "".join(parts)
    if content is None:
        return ""
    return json.dumps(content, default=str)


def extract_text(message: dict[str, Any]) -> str:
    """Return the plain text of a request message.

    AI SDK v5+ clients send ``parts``; older clients send ``content``.
    """
    parts = message.get("parts")
    if isinstance(parts, list):
        return "".join(
            str(part.get("text") or "")
            for part in parts
            if isinstance(part, dict) and part.get("type") == "text"
        )
    content = message.get("content")
    return content if isinstance(content, str) else ""


def normalize_request_messages(messages: Any) -> list[Turn]:
    """Convert a chat request's ``messages`` array into plain text turns.

    Raises:
        RequestValidationError: If the array is missing, empty, or holds
            something other than message objects.
    """
    if not isinstance(messages, list) or not messages:
        raise RequestValidationError("messages array is required")

    turns: list[Turn] = []
    for message in messages:
        if not isinstance(message, dict):
            raise RequestValidationError("each message must be an object")
        role = "assistant" if message.get("role") == "assistant" else "user"
        turns.append(Turn.text(role, extract_text(message)))
    return turns


def format_prompt(turns: Iterable[Turn]) -> str:
    """Render turns as a single prompt for the CLI backend."""
    turns = list(turns)
    if len(turns) == 1:
        return turns[0].plain_text

    return "\n\n".join(
        f"{'Human' if turn.role == 'user' else 'Assistant'}: {turn.plain_text}"
        for turn in turns
    )
