"""Model sessions: one request's view of the upstream model."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Sequence

from kg_chatbot.conversation import Turn
from kg_chatbot.llm.events import ModelEvent


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    call_id: str  # correlation id shown to the client
    block_id: str  # provider-assigned tool_use id
    name: str
    input: dict[str, Any] = field(default_factory=dict)


class ModelSession(ABC):
    """Abstract per-request model session.

    ``stream_turn`` performs one model call and yields normalized events up to
    and including the ``TurnFinished`` event.  ``call_tool`` produces the
    flattened output for a tool call of the turn that just finished.
    """

    @abstractmethod
    def stream_turn(
        self,
        turns: Sequence[Turn],
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ModelEvent]:
        pass

    @abstractmethod
    async def call_tool(self, call: ToolCall, abort_event: asyncio.Event | None = None) -> str:
        pass

    async def aclose(self) -> None:
        """Release upstream resources held for the request."""
        return None


def create_session(config, gateway=None, client=None) -> ModelSession:
    """Create a model session for the configured backend.

    Args:
        config: Loaded ``Config``
        gateway: Shared ``ToolGateway`` (required by the ``api`` backend)
        client: Optional shared ``AsyncAnthropic`` client for the ``api`` backend

    Returns:
        A fresh ModelSession for one request
    """
    backend = config.model.backend
    if backend == "api":
        from kg_chatbot.llm.anthropic_api import AnthropicSession

        if gateway is None:
            raise ValueError("The api backend needs a tool gateway")
        return AnthropicSession(
            model=config.model.model,
            max_tokens=config.model.max_tokens,
            system_prompt=config.model.system_prompt,
            gateway=gateway,
            client=client,
            api_key=config.model.api_key or None,
            base_url=config.model.base_url or None,
            timeout=config.model.timeout,
        )
    if backend == "cli":
        from kg_chatbot.llm.claude_cli import ClaudeCliSession

        return ClaudeCliSession(
            command=config.cli.command,
            system_prompt=config.model.system_prompt,
            mcp_config_path=str(config.resolved_mcp_config_path()),
            allowed_tools=[
                f"mcp__{config.mcp.server}__{name}" for name in config.mcp.allowed_tools
            ],
            extra_args=list(config.cli.extra_args),
            terminate_grace_seconds=config.cli.terminate_grace_seconds,
        )
    raise ValueError(f"Backend '{backend}' not supported. Use 'api' or 'cli'.")


__all__ = ["ModelSession", "ToolCall", "create_session"]
