"""Tool execution gateway."""

from kg_chatbot.conversation import flatten_tool_content
from kg_chatbot.tools.gateway import ToolDefinition, ToolGateway

__all__ = [
    "ToolDefinition",
    "ToolGateway",
    "flatten_tool_content",
]
