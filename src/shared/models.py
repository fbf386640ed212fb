"""Core data models for the chat gateway.

This module defines the shared data structures used across the gateway:
conversations and their messages, tool definitions and results, and the
normalized model responses produced by provider adapters.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Current UTC time at millisecond precision (the precision we persist)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_epoch_ms(value: datetime) -> int:
    return int(round(value.timestamp() * 1000))


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def derive_title(content: str, max_length: int = 80) -> Optional[str]:
    """Conversation title taken from the first user message."""
    title = " ".join(content.split())
    if not title:
        return None
    return title if len(title) <= max_length else title[:max_length - 3] + "..."


class MessageRole(str, Enum):
    """Author of a conversation message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Usage(BaseModel):
    """Token accounting reported by a provider."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @property
    def is_empty(self) -> bool:
        return not (self.prompt_tokens or self.completion_tokens or self.total_tokens)


class ToolCall(BaseModel):
    """A model's request to run a tool."""
    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """
    A single message in a conversation.

    Tool messages reference the ``tool_calls`` entry of the assistant
    message that requested them through ``tool_call_id``.
    """
    role: MessageRole
    content: str = ""
    timestamp: datetime = Field(default_factory=utc_now)

    model: Optional[str] = None
    provider: Optional[str] = None
    usage: Optional[Usage] = None

    tool_calls: Optional[list[ToolCall]] = None
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None

    def to_transcript(self) -> dict[str, Any]:
        """Wire format used in conversation transcripts."""
        entry: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "at": to_epoch_ms(self.timestamp),
        }
        if self.model:
            entry["model"] = self.model
        if self.provider:
            entry["provider"] = self.provider
        if self.usage and not self.usage.is_empty:
            entry["usage"] = self.usage.model_dump()
        if self.tool_calls:
            entry["tool_calls"] = [call.model_dump() for call in self.tool_calls]
        if self.tool_name:
            entry["tool_name"] = self.tool_name
        if self.tool_call_id:
            entry["tool_call_id"] = self.tool_call_id
        return entry


class Conversation(BaseModel):
    """Conversation state owned by the conversation store."""
    id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    title: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    messages: list[Message] = Field(default_factory=list)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def to_transcript(self) -> dict[str, Any]:
        return {
            "chatId": self.id,
            "createdAt": to_epoch_ms(self.created_at),
            "updatedAt": to_epoch_ms(self.updated_at),
            "chatHistory": [m.to_transcript() for m in self.messages],
        }


class ConversationSummary(BaseModel):
    """Row of the conversation listing."""
    id: str
    created_at: datetime
    updated_at: datetime
    title: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": to_epoch_ms(self.created_at),
            "updatedAt": to_epoch_ms(self.updated_at),
            "title": self.title,
            "model": self.model,
            "provider": self.provider,
            "messageCount": self.message_count,
        }


class ToolPolicy(BaseModel):
    """Execution policy declared by a tool."""
    category: str = "general"
    cache_ttl_seconds: Optional[float] = Field(default=None, gt=0)
    required_credentials: list[str] = Field(default_factory=list)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    concurrency_safe: bool = Field(
        default=False,
        description="May run concurrently with other calls in the same round"
    )
    rate_limit: Optional[str] = Field(default=None, description="Advisory only, e.g. '10/minute'")


class ToolContext(BaseModel):
    """Per-invocation context handed to tool handlers."""
    conversation_id: Optional[str] = None
    request_id: Optional[str] = None
    credentials: dict[str, str] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)


ToolHandler = Callable[[dict[str, Any], ToolContext], Union[Awaitable[Any], Any]]


class ToolDefinition(BaseModel):
    """
    Complete definition of a tool.

    Tools are registered once at startup and are read-only afterwards.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., description="Unique tool name")
    description: str = Field(..., description="Clear description for model usage")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema for argument validation"
    )
    handler: ToolHandler = Field(..., exclude=True)
    policy: ToolPolicy = Field(default_factory=ToolPolicy)


class ToolResultStatus(str, Enum):
    """Status of tool execution."""
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    TIMEOUT = "timeout"


class ToolResult(BaseModel):
    """
    Outcome of one tool call.

    Exactly one of ``result`` (on success) or ``error`` is meaningful.
    """
    id: str = ""
    name: str
    status: ToolResultStatus
    result: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: float = 0
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.status == ToolResultStatus.SUCCESS

    def payload(self) -> Any:
        """Value handed back to the model."""
        if self.ok:
            return self.result
        return {"error": self.error or "Unknown error"}


class ToolExecutionRecord(BaseModel):
    """Audit record written for every tool execution."""
    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)
    status: ToolResultStatus
    result: Optional[Any] = None
    error: Optional[str] = None
    duration_ms: float = 0
    cached: bool = False
    conversation_id: Optional[str] = None
    request_id: Optional[str] = None


class ModelResponse(BaseModel):
    """
    A completed model response, normalized across providers.

    ``native_message`` is the provider-shaped assistant message to append to
    the working messages when the response requests tools.
    """
    text: str = ""
    native_message: dict[str, Any] = Field(default_factory=dict)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: Optional[str] = None


class ModelChunk(BaseModel):
    """One streamed increment. The final chunk carries the assembled response."""
    text: str = ""
    response: Optional[ModelResponse] = None
