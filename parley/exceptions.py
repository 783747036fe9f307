"""Custom exceptions for Parley."""


class ParleyError(Exception):
    """Base exception for Parley."""

    pass


class ConfigurationError(ParleyError):
    """Configuration-related errors."""

    pass


class LLMError(ParleyError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    code = "api_error"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(LLMAPIError):
    """Credential missing or rejected by the provider."""

    code = "unauthorized"


class RateLimitedError(LLMAPIError):
    """Provider refused the request because of rate limiting."""

    code = "rate_limited"


class StreamTransportError(LLMAPIError):
    """Streaming transport dropped or returned an unreadable payload."""

    code = "stream_transport"


def classify_status(status_code: int, message: str) -> LLMAPIError:
    """Map an HTTP status from a provider to the matching API error."""
    if status_code in (401, 403):
        return UnauthorizedError(message, status_code=status_code)
    if status_code == 429:
        return RateLimitedError(message, status_code=status_code)
    return LLMAPIError(message, status_code=status_code)


class ToolError(ParleyError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class TurnAborted(ParleyError):
    """A turn (or one model session of it) was cancelled."""

    def __init__(self, reason: str | None = None):
        super().__init__(reason or "Turn aborted")
        self.reason = reason
