"""OpenAI chat-completions adapter.

Also serves OpenAI-compatible endpoints (see GrokAdapter).
"""

import json
from typing import Any, AsyncIterator, Optional

from openai import APIError, APIStatusError, APITimeoutError, AsyncOpenAI

from shared.errors import ProviderError
from shared.logging import get_logger
from shared.models import (
    Message,
    MessageRole,
    ModelChunk,
    ModelResponse,
    ToolCall,
    ToolDefinition,
    ToolResult,
    Usage,
)
from providers.base import (
    PreparedPrompt,
    ProviderAdapter,
    match_results,
    safe_json_loads,
    tool_result_content,
)

logger = get_logger(__name__)


def _usage_from(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    return Usage(
        prompt_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(raw, "completion_tokens", 0) or 0,
        total_tokens=getattr(raw, "total_tokens", 0) or 0,
    )


class OpenAIAdapter(ProviderAdapter):
    """Adapter for the OpenAI chat completions API."""

    name = "openai"
    default_model = "gpt-4o-mini"
    api_key_env = "OPENAI_API_KEY"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[Any] = None
    ) -> None:
        """
        Initialize the adapter.

        Args:
            api_key: API key; required before the first call unless a client is given
            base_url: Override for OpenAI-compatible endpoints
            timeout: Request timeout in seconds
            client: Preconfigured AsyncOpenAI-compatible client
        """
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> Any:
        """Lazy initialization of the SDK client."""
        if self._client is None:
            if not self.api_key:
                raise ProviderError(self.name, f"{self.api_key_env} is not configured")
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def _error(self, exc: APIError) -> ProviderError:
        if isinstance(exc, APIStatusError):
            return ProviderError(self.name, exc.message, exc.status_code)
        if isinstance(exc, APITimeoutError):
            return ProviderError(self.name, "Request timed out")
        return ProviderError(self.name, str(exc) or exc.__class__.__name__)

    def format_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
        ]

    def format_messages(
        self,
        history: list[Message],
        system_prompt: Optional[str] = None
    ) -> PreparedPrompt:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        for message in history:
            if message.role == MessageRole.TOOL:
                messages.append({
                    "role": "tool",
                    "tool_call_id": message.tool_call_id,
                    "content": message.content,
                })
            elif message.role == MessageRole.ASSISTANT and message.tool_calls:
                messages.append({
                    "role": "assistant",
                    "content": message.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.args)},
                        }
                        for call in message.tool_calls
                    ],
                })
            else:
                messages.append({"role": message.role.value, "content": message.content})

        return PreparedPrompt(messages=messages)

    def _payload(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        system_instruction: Optional[Any] = None
    ) -> ModelResponse:
        client = self._get_client()
        try:
            completion = await client.chat.completions.create(**self._payload(model, messages, tools))
        except APIError as e:
            raise self._error(e) from e

        if not completion.choices:
            raise ProviderError(self.name, "Response contained no choices")

        choice = completion.choices[0]
        message = choice.message
        raw_calls = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.function.name, "arguments": tc.function.arguments or "{}"},
            }
            for tc in (message.tool_calls or [])
        ]

        return ModelResponse(
            text=message.content or "",
            native_message=self._assistant_message(message.content, raw_calls),
            usage=_usage_from(completion.usage),
            finish_reason=choice.finish_reason,
        )

    async def stream(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        system_instruction: Optional[Any] = None
    ) -> AsyncIterator[ModelChunk]:
        client = self._get_client()
        payload = self._payload(model, messages, tools)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

        text_parts: list[str] = []
        # Tool-call fragments keyed by their index in the response
        fragments: dict[int, dict[str, str]] = {}
        usage = Usage()
        finish_reason: Optional[str] = None

        try:
            response_stream = await client.chat.completions.create(**payload)
            async for chunk in response_stream:
                if getattr(chunk, "usage", None):
                    usage = _usage_from(chunk.usage)
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None and delta.content:
                    text_parts.append(delta.content)
                    yield ModelChunk(text=delta.content)

                for fragment in (getattr(delta, "tool_calls", None) or []):
                    slot = fragments.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                    if fragment.id:
                        slot["id"] = fragment.id
                    if fragment.function is not None:
                        if fragment.function.name:
                            slot["name"] = fragment.function.name
                        if fragment.function.arguments:
                            slot["arguments"] += fragment.function.arguments

                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except APIError as e:
            raise self._error(e) from e

        raw_calls = [
            {
                "id": slot["id"],
                "type": "function",
                "function": {"name": slot["name"], "arguments": slot["arguments"] or "{}"},
            }
            for _, slot in sorted(fragments.items())
        ]
        text = "".join(text_parts)

        yield ModelChunk(response=ModelResponse(
            text=text,
            native_message=self._assistant_message(text, raw_calls),
            usage=usage,
            finish_reason=finish_reason,
        ))

    def _assistant_message(
        self,
        content: Optional[str],
        raw_calls: list[dict[str, Any]]
    ) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": content or None}
        if raw_calls:
            message["tool_calls"] = raw_calls
        else:
            message["content"] = content or ""
        return message

    def parse_tool_calls(self, response: ModelResponse) -> list[ToolCall]:
        return [
            ToolCall(
                id=raw.get("id") or "",
                name=(raw.get("function") or {}).get("name") or "",
                args=safe_json_loads((raw.get("function") or {}).get("arguments")),
            )
            for raw in response.native_message.get("tool_calls") or []
        ]

    def format_tool_results(
        self,
        calls: list[ToolCall],
        results: list[ToolResult]
    ) -> list[dict[str, Any]]:
        return [
            {
                "role": "tool",
                "tool_call_id": call.id,
                "name": call.name,
                "content": tool_result_content(result),
            }
            for call, result in zip(calls, match_results(calls, results))
        ]

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
        self._client = None
