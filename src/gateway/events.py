"""Turn events and their Server-Sent Events encoding.

Events are produced by the conversation engine and the chat service and
serialized one per SSE frame: ``data: <JSON>\\n\\n``.
"""

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

PING = ": ping\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class InitEvent(BaseModel):
    type: Literal["init"] = "init"
    conversationId: str
    model: str


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(BaseModel):
    """Outcome of one tool call. Carries ``result`` on success, ``error`` otherwise."""
    type: Literal["tool_result"] = "tool_result"
    id: str
    tool: str
    result: Optional[Any] = None
    error: Optional[str] = None


class TokenEvent(BaseModel):
    type: Literal["token"] = "token"
    token: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    conversationId: str
    model: str
    usage: dict[str, int]
    text: str
    conversation: dict[str, Any]


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str
    provider: Optional[str] = None
    details: Optional[str] = None


TurnEvent = Union[InitEvent, ToolCallEvent, ToolResultEvent, TokenEvent, DoneEvent, ErrorEvent]


def encode_event(event: TurnEvent) -> str:
    """Serialize an event as one SSE frame."""
    payload = event.model_dump(exclude_none=True)
    # A successful tool result keeps its result key even when the value is None
    if isinstance(event, ToolResultEvent) and event.error is None:
        payload["result"] = event.result
    return f"data: {json.dumps(payload, default=str)}\n\n"
