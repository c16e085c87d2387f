"""Structured error types for the turn runtime."""


class AgentError(Exception):
    """Base error for all runtime operations."""
    pass


class TransportError(AgentError):
    """Raised when the model transport fails (network, auth, rate limit)."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class ToolError(AgentError):
    """Error raised during tool execution."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name} error: {message}")


class ConfigError(AgentError):
    """Raised when a configuration value or override is out of range."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"Invalid value for '{key}': {message}")


class AgentBusyError(AgentError):
    """Raised when a second turn is started while one is still running."""

    def __init__(self):
        super().__init__("A turn is already running for this conversation.")
