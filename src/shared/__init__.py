"""Shared utilities and models for the chat gateway."""

from shared.config import Settings, get_settings
from shared.errors import (
    ConversationConflict,
    ConversationNotFound,
    DuplicateTool,
    GatewayError,
    InvalidArguments,
    MissingInput,
    ProviderError,
    StoreError,
    ToolExecutionError,
    UnknownTool,
)
from shared.logging import get_logger, setup_logging
from shared.models import (
    Conversation,
    Message,
    MessageRole,
    ToolCall,
    ToolDefinition,
    ToolPolicy,
    ToolResult,
    ToolResultStatus,
    Usage,
)

__all__ = [
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
    "GatewayError",
    "DuplicateTool",
    "UnknownTool",
    "InvalidArguments",
    "ToolExecutionError",
    "ProviderError",
    "ConversationNotFound",
    "ConversationConflict",
    "MissingInput",
    "StoreError",
    "Conversation",
    "Message",
    "MessageRole",
    "ToolCall",
    "ToolDefinition",
    "ToolPolicy",
    "ToolResult",
    "ToolResultStatus",
    "Usage",
]
