"""Scripted provider for tests and offline development.

Speaks the OpenAI message dialect, so everything except the network call is
exercised exactly as with a real provider.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Optional, Union

from pydantic import BaseModel, Field

from shared.errors import ProviderError
from shared.models import ModelChunk, ModelResponse, ToolCall, Usage
from providers.openai_adapter import OpenAIAdapter


class ScriptedReply(BaseModel):
    """
    One scripted model turn.

    ``text`` may be a list to control how the reply is chunked when streamed.
    ``error`` makes the call fail with a ProviderError after any chunks.
    """
    text: Union[str, list[str]] = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=lambda: Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15))
    error: Optional[str] = None

    @property
    def chunks(self) -> list[str]:
        if isinstance(self.text, list):
            return [c for c in self.text if c]
        return [self.text] if self.text else []


DEFAULT_REPLY = ScriptedReply(text="This is a mock response.")


class ScriptedAdapter(OpenAIAdapter):
    """
    Provider that replays scripted replies in order.

    When the script runs out the fallback reply is returned for every
    further call.
    """

    name = "mock"
    default_model = "mock"

    def __init__(
        self,
        replies: Optional[list[ScriptedReply]] = None,
        fallback: Optional[ScriptedReply] = None,
        gate: Optional[asyncio.Event] = None
    ) -> None:
        """
        Initialize the scripted adapter.

        Args:
            replies: Replies returned by successive calls
            fallback: Reply used once the script is exhausted
            gate: When set, streaming pauses after the first chunk until the event is set
        """
        super().__init__(api_key="mock")
        self._replies = list(replies or [])
        self.fallback = fallback or DEFAULT_REPLY
        self.gate = gate
        self.call_history: list[dict[str, Any]] = []

    def _get_client(self) -> Any:
        raise ProviderError(self.name, "The mock provider has no network client")

    def add_reply(self, reply: ScriptedReply) -> None:
        self._replies.append(reply)

    def _next_reply(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[Any],
        stream: bool
    ) -> ScriptedReply:
        self.call_history.append({
            "model": model,
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "stream": stream,
        })
        if self._replies:
            return self._replies.pop(0)
        return self.fallback

    def _response(self, reply: ScriptedReply) -> ModelResponse:
        raw_calls = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.args)},
            }
            for call in reply.tool_calls
        ]
        text = "".join(reply.chunks)
        return ModelResponse(
            text=text,
            native_message=self._assistant_message(text, raw_calls),
            usage=reply.usage,
            finish_reason="tool_calls" if raw_calls else "stop",
        )

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        system_instruction: Optional[Any] = None
    ) -> ModelResponse:
        reply = self._next_reply(model, messages, tools, stream=False)
        if reply.error:
            raise ProviderError(self.name, reply.error, 500)
        return self._response(reply)

    async def stream(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        system_instruction: Optional[Any] = None
    ) -> AsyncIterator[ModelChunk]:
        reply = self._next_reply(model, messages, tools, stream=True)

        for index, chunk in enumerate(reply.chunks):
            yield ModelChunk(text=chunk)
            if index == 0 and self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)

        if reply.error:
            raise ProviderError(self.name, reply.error, 500)

        yield ModelChunk(response=self._response(reply))

    async def close(self) -> None:
        return None
