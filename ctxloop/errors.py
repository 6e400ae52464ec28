"""Structured error types for the agent runtime."""

from typing import Optional


class AgentError(Exception):
    """Base error for all agent operations."""
    pass


class ToolError(AgentError):
    """Error raised during tool execution."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name} error: {message}")


class ProviderError(AgentError):
    """A model backend call failed. The message keeps the provider's raw text."""

    def __init__(self, message: str, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(message)


class ContextLengthExceededError(AgentError):
    """The request no longer fits the model's context window."""
    pass


class RetryExhaustedError(AgentError):
    """A recoverable failure persisted through every retry attempt."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Giving up after {attempts} attempts: {last_error}")


class ProcessPanicError(AgentError):
    """The backend reported an unrecoverable process failure."""
    pass


class RehydrateError(AgentError):
    """A dehydrated fragment could not be restored."""
    pass


class EmptyResponseError(AgentError):
    """The model returned neither text nor tool calls."""

    def __init__(self):
        super().__init__("Model returned an empty response")
