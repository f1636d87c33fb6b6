"""Custom exceptions for the knowledge graph chatbot."""


class KgChatbotError(Exception):
    """Base exception for the knowledge graph chatbot."""

    pass


class ConfigurationError(KgChatbotError):
    """Configuration-related errors."""

    pass


class RequestValidationError(KgChatbotError):
    """Chat request body is missing or malformed."""

    pass


class RequestCancelledError(KgChatbotError):
    """The client went away and the request was aborted."""

    pass


class LLMError(KgChatbotError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CLIProcessError(LLMError):
    """The model CLI subprocess failed."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class ToolError(KgChatbotError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool is not in the allowed catalog."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class GatewayConnectionError(ToolError):
    """Could not connect to the MCP tool server."""

    pass
