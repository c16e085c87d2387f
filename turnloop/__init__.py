"""turnloop: turn-execution runtime for an agentic coding assistant."""

__version__ = "1.0.0"

from .agent import Agent, LoopEvent, TurnResult
from .cancellation import CancelToken
from .config import Config
from .errors import AgentBusyError, AgentError, ConfigError, ToolError, TransportError
from .llm import LiteLLMTransport, ModelResponse, ModelTransport
from .messages import Message, TextBlock, ThinkingBlock, MediaBlock, ToolUseBlock, ToolResultBlock
from .permissions import ApprovalChoice, ApprovalRequest, PermissionEngine, PermissionMode
from .session import Session
from .tools import ToolOutcome, ToolRegistry

__all__ = [
    "__version__", "Agent", "LoopEvent", "TurnResult", "CancelToken", "Config",
    "AgentError", "AgentBusyError", "ConfigError", "ToolError", "TransportError",
    "LiteLLMTransport", "ModelResponse", "ModelTransport",
    "Message", "TextBlock", "ThinkingBlock", "MediaBlock", "ToolUseBlock", "ToolResultBlock",
    "ApprovalChoice", "ApprovalRequest", "PermissionEngine", "PermissionMode",
    "Session", "ToolOutcome", "ToolRegistry",
]
