"""Backend-independent model event vocabulary and per-turn block id table."""

import uuid
from dataclasses import dataclass, field
from typing import Any

TOOL_USE = "tool_use"
DONE = "done"


@dataclass(frozen=True)
class TextBlockStarted:
    block_id: str


@dataclass(frozen=True)
class TextDelta:
    block_id: str
    text: str


@dataclass(frozen=True)
class ToolBlockStarted:
    block_id: str
    tool_name: str
    upstream_id: str = ""


@dataclass(frozen=True)
class BlockEnded:
    """A content block closed; tool blocks carry their complete input."""

    block_id: str
    tool_input: dict[str, Any] | None = None


@dataclass(frozen=True)
class TurnFinished:
    reason: str  # TOOL_USE or DONE


@dataclass(frozen=True)
class ToolResultEchoed:
    """Tool output reported by a backend that executes tools itself."""

    block_id: str
    output: str
    is_error: bool = False


ModelEvent = (
    TextBlockStarted
    | TextDelta
    | ToolBlockStarted
    | BlockEnded
    | TurnFinished
    | ToolResultEchoed
)


@dataclass
class BlockEntry:
    """Bookkeeping for one upstream content block."""

    block_id: str
    kind: str  # "text" or "tool_use"
    upstream_id: str = ""
    tool_name: str = ""
    partial_json: list[str] = field(default_factory=list)
    full_input: dict[str, Any] | None = None


class BlockIdMap:
    """Maps upstream block indices and ids to bridge correlation ids.

    One instance covers exactly one model call; a new turn gets a new map so
    correlation ids never repeat across turns.
    """

    def __init__(self):
        self._by_index: dict[int, BlockEntry] = {}
        self._by_upstream_id: dict[str, BlockEntry] = {}

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def open(self, index: int, kind: str, upstream_id: str = "", tool_name: str = "") -> BlockEntry:
        entry = BlockEntry(
            block_id=self.new_id(),
            kind=kind,
            upstream_id=upstream_id,
            tool_name=tool_name,
        )
        self._by_index[index] = entry
        if upstream_id:
            self._by_upstream_id[upstream_id] = entry
        return entry

    def at(self, index: Any) -> BlockEntry | None:
        if not isinstance(index, int):
            return None
        return self._by_index.get(index)

    def by_upstream_id(self, upstream_id: Any) -> BlockEntry | None:
        if not isinstance(upstream_id, str):
            return None
        return self._by_upstream_id.get(upstream_id)
