"""Tool execution gateway - shared MCP client connection and tool catalog."""

import asyncio
import json
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from kg_chatbot.cancellation import cancel_task, wait_or_abort
from kg_chatbot.conversation import flatten_tool_content
from kg_chatbot.exceptions import (
    ConfigurationError,
    GatewayConnectionError,
    ToolExecutionError,
    ToolNotFoundError,
)
from kg_chatbot.logging import get_logger

log = get_logger(__name__)

SessionOpener = Callable[[AsyncExitStack], Awaitable[Any]]


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)  # JSON Schema

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema or {"type": "object", "properties": {}},
        }


def load_server_params(config_path: Path | str, server: str) -> StdioServerParameters:
    """Read one server entry from an ``mcpServers`` JSON config file."""
    path = Path(config_path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read MCP config {path}: {e}") from e

    entry = (data.get("mcpServers") or {}).get(server)
    if not isinstance(entry, dict) or not entry.get("command"):
        raise ConfigurationError(f"MCP server '{server}' is not defined in {path}")

    return StdioServerParameters(
        command=entry["command"],
        args=list(entry.get("args") or []),
        env={**os.environ, **(entry.get("env") or {})},
    )


def stdio_session_opener(config_path: Path | str, server: str) -> SessionOpener:
    """Opener that spawns the configured MCP server over stdio."""

    async def _open(stack: AsyncExitStack) -> ClientSession:
        params = load_server_params(config_path, server)
        read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
        return await stack.enter_async_context(ClientSession(read_stream, write_stream))

    return _open


class ToolGateway:
    """Lazily connected, process-wide MCP client filtered to an allow-list.

    The connection lives in a dedicated owner task so its context managers are
    entered and exited by the same task.  Concurrent first callers all wait on
    the same readiness future instead of opening duplicate connections.
    """

    def __init__(
        self,
        allowed_tools: Iterable[str],
        open_session: SessionOpener,
        init_timeout: float = 30.0,
    ):
        self.allowed_tools = frozenset(allowed_tools)
        self._open_session = open_session
        self.init_timeout = init_timeout

        self._session: Any = None
        self._tools: list[ToolDefinition] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._shutdown: asyncio.Event | None = None
        self._owner_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config) -> "ToolGateway":
        return cls(
            allowed_tools=config.mcp.allowed_tools,
            open_session=stdio_session_opener(config.resolved_mcp_config_path(), config.mcp.server),
            init_timeout=config.mcp.init_timeout,
        )

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def _own_connection(self, ready: asyncio.Future[None], shutdown: asyncio.Event) -> None:
        try:
            async with AsyncExitStack() as stack:
                session = await self._open_session(stack)
                await asyncio.wait_for(session.initialize(), timeout=self.init_timeout)

                listed = await session.list_tools()
                tools = [
                    ToolDefinition(
                        name=tool.name,
                        description=tool.description or "",
                        input_schema=dict(tool.inputSchema or {}),
                    )
                    for tool in listed.tools
                    if tool.name in self.allowed_tools
                ]

                self._session = session
                self._tools = tools
                log.info("Connected to MCP server", tools=[tool.name for tool in tools])
                ready.set_result(None)

                await shutdown.wait()
        except Exception as e:
            log.error("MCP connection failed", error=str(e))
            if not ready.done():
                ready.set_exception(GatewayConnectionError(f"MCP connection failed: {e}"))
        finally:
            if not ready.done():
                ready.set_exception(GatewayConnectionError("MCP connection was cancelled"))
            self._session = None
            self._tools = None
            if self._ready is ready:
                self._ready = None

    async def _ensure_connected(self, abort_event: asyncio.Event | None = None) -> None:
        if self._session is not None:
            return
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
            self._shutdown = asyncio.Event()
            self._owner_task = asyncio.create_task(
                self._own_connection(self._ready, self._shutdown)
            )
        await wait_or_abort(asyncio.shield(self._ready), abort_event)

    async def list_tools(self, abort_event: asyncio.Event | None = None) -> list[ToolDefinition]:
        """Return the allow-listed tool catalog, connecting on first use."""
        await self._ensure_connected(abort_event)
        return list(self._tools or [])

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> str:
        """Execute an allow-listed tool and return its flattened text output."""
        if name not in self.allowed_tools:
            raise ToolNotFoundError(name)
        await self._ensure_connected(abort_event)
        if self._tools is not None and all(tool.name != name for tool in self._tools):
            raise ToolNotFoundError(name)

        log.info("Calling tool", tool=name)
        result = await wait_or_abort(
            self._session.call_tool(name, arguments=arguments or {}),
            abort_event,
        )
        text = flatten_tool_content(getattr(result, "content", result))
        if getattr(result, "isError", False):
            raise ToolExecutionError(name, text or "tool reported an error")
        return text

    async def aclose(self) -> None:
        """Close the MCP connection (and stop the server process)."""
        if self._shutdown is not None:
            self._shutdown.set()
        task = self._owner_task
        self._owner_task = None
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=10.0)
            except asyncio.TimeoutError:
                await cancel_task(task)
            log.info("Disconnected from MCP server")
