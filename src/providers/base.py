"""Provider adapter contract.

Every upstream model provider is reached through an adapter that converts
the gateway's internal messages and tool definitions into the provider's
wire shapes and back. The engine only ever talks to this interface.

Adapter rules:
- Transport, auth and status failures surface as ProviderError
- Adapters never retry
- Streaming yields text as it arrives; tool-call fragments are buffered
  inside the adapter and delivered with the final chunk
"""

import json
import uuid
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional, Union

from pydantic import BaseModel, Field

from shared.logging import get_logger
from shared.models import Message, ModelChunk, ModelResponse, ToolCall, ToolDefinition, ToolResult

logger = get_logger(__name__)


class PreparedPrompt(BaseModel):
    """Provider-native messages plus an optional side-channel system instruction."""
    messages: list[dict[str, Any]] = Field(default_factory=list)
    system_instruction: Optional[Any] = None


def safe_json_loads(raw: Any) -> dict[str, Any]:
    """Parse tool-call arguments; malformed or non-object JSON yields {}."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def new_tool_call_id() -> str:
    return f"tc_{uuid.uuid4().hex[:16]}"


def tool_result_content(result: Optional[ToolResult]) -> str:
    """JSON text handed back to the model for one tool call."""
    if result is None:
        return json.dumps({"error": "no result"})
    return json.dumps(result.payload(), default=str)


def match_results(calls: list[ToolCall], results: list[ToolResult]) -> list[Optional[ToolResult]]:
    """Pair each call with its result by id, falling back to position."""
    by_id = {r.id: r for r in results if r.id}
    matched: list[Optional[ToolResult]] = []
    for index, call in enumerate(calls):
        result = by_id.get(call.id)
        if result is None and index < len(results):
            result = results[index]
        matched.append(result)
    return matched


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Subclasses implement the wire translation for one provider family.
    """

    name: str = "base"
    default_model: Optional[str] = None

    @abstractmethod
    def format_tools(self, tools: list[ToolDefinition]) -> Any:
        """
        Convert tool definitions into the provider's tool specification.

        Must be pure and deterministic for a given input.

        Args:
            tools: Tool definitions offered for this call

        Returns:
            Provider tool specification
        """
        pass

    @abstractmethod
    def format_messages(
        self,
        history: list[Message],
        system_prompt: Optional[str] = None
    ) -> PreparedPrompt:
        """
        Convert conversation history into provider-native messages.

        Args:
            history: Conversation messages, oldest first
            system_prompt: Optional system prompt

        Returns:
            Prepared prompt for ``call``
        """
        pass

    @abstractmethod
    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[Any] = None,
        system_instruction: Optional[Any] = None
    ) -> ModelResponse:
        """Run a non-streaming completion."""
        pass

    @abstractmethod
    def stream(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[Any] = None,
        system_instruction: Optional[Any] = None
    ) -> AsyncIterator[ModelChunk]:
        """Run a streaming completion. The last chunk carries the full response."""
        pass

    async def call(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[Any] = None,
        *,
        stream: bool = False,
        system_instruction: Optional[Any] = None
    ) -> Union[ModelResponse, AsyncIterator[ModelChunk]]:
        """
        Call the provider.

        Args:
            model: Model id
            messages: Provider-native messages
            tools: Provider tool specification, or None for a tool-free call
            stream: Return an async iterator of chunks instead of a response
            system_instruction: Side-channel system instruction, if any

        Returns:
            A ModelResponse, or an async iterator of ModelChunk when streaming

        Raises:
            ProviderError: On transport, auth or status failures
        """
        if stream:
            return self.stream(model, messages, tools, system_instruction)
        return await self.complete(model, messages, tools, system_instruction)

    @abstractmethod
    def parse_tool_calls(self, response: ModelResponse) -> list[ToolCall]:
        """Extract the tool calls requested in a completed response."""
        pass

    @abstractmethod
    def format_tool_results(
        self,
        calls: list[ToolCall],
        results: list[ToolResult]
    ) -> list[dict[str, Any]]:
        """
        Convert tool results into provider-native messages.

        Args:
            calls: Tool calls of the round, in request order
            results: Their results

        Returns:
            Messages to append before the next model call
        """
        pass

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        return None
