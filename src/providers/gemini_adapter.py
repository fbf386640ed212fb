"""Google Gemini adapter over the Generative Language REST API.

Gemini differs from the OpenAI dialect in three ways that matter here:
- the system prompt travels as a separate ``systemInstruction``
- tools are grouped under ``functionDeclarations`` with a restricted schema
- tool results go back as ``functionResponse`` parts of a user turn
"""

import json
from typing import Any, AsyncIterator, Optional

import httpx

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
    new_tool_call_id,
)

logger = get_logger(__name__)


GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# JSON Schema keywords accepted in function declarations
_SCHEMA_KEYS = {
    "type", "format", "description", "nullable", "enum", "items", "properties",
    "required", "minItems", "maxItems", "minimum", "maximum", "anyOf",
    "minLength", "maxLength", "pattern", "title", "propertyOrdering",
}
_STRING_FORMATS = {"enum", "date-time"}


def to_gemini_schema(schema: Any) -> Any:
    """Strip JSON Schema keywords Gemini rejects (default, additionalProperties, uri format...)."""
    if isinstance(schema, list):
        return [to_gemini_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _SCHEMA_KEYS:
            continue
        if key == "format" and value not in _STRING_FORMATS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: to_gemini_schema(prop) for name, prop in value.items()}
        elif key in ("items", "anyOf"):
            cleaned[key] = to_gemini_schema(value)
        else:
            cleaned[key] = value
    return cleaned


def _response_object(content: str) -> dict[str, Any]:
    """functionResponse.response must be a JSON object."""
    try:
        value = json.loads(content)
    except (TypeError, ValueError):
        return {"result": content}
    return value if isinstance(value, dict) else {"result": value}


def _usage_from(metadata: Optional[dict[str, Any]]) -> Usage:
    if not metadata:
        return Usage()
    return Usage(
        prompt_tokens=metadata.get("promptTokenCount", 0) or 0,
        completion_tokens=metadata.get("candidatesTokenCount", 0) or 0,
        total_tokens=metadata.get("totalTokenCount", 0) or 0,
    )


def _visible_text(parts: list[dict[str, Any]]) -> str:
    return "".join(p.get("text", "") for p in parts if "text" in p and not p.get("thought"))


class GeminiAdapter(ProviderAdapter):
    """Adapter for Google's Gemini models."""

    name = "gemini"
    default_model = "gemini-2.5-flash"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            if not self.api_key:
                raise ProviderError(self.name, "GEMINI_API_KEY is not configured")
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"x-goog-api-key": self.api_key},
            )
        return self._client

    def _status_error(self, status_code: int, body: bytes) -> ProviderError:
        message = f"HTTP {status_code}"
        try:
            detail = json.loads(body).get("error", {}).get("message")
        except (ValueError, AttributeError):
            detail = None
        if detail:
            message = f"{message}: {detail}"
        return ProviderError(self.name, message, status_code)

    def format_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        if not tools:
            return []
        return [{
            "functionDeclarations": [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": to_gemini_schema(tool.input_schema),
                }
                for tool in tools
            ]
        }]

    def format_messages(
        self,
        history: list[Message],
        system_prompt: Optional[str] = None
    ) -> PreparedPrompt:
        system_texts = [system_prompt] if system_prompt else []
        contents: list[dict[str, Any]] = []

        for message in history:
            if message.role == MessageRole.SYSTEM:
                system_texts.append(message.content)
                continue

            if message.role == MessageRole.TOOL:
                part = {
                    "functionResponse": {
                        "name": message.tool_name or "",
                        "response": _response_object(message.content),
                    }
                }
                # Results of one round share a single user turn
                previous = contents[-1] if contents else None
                if previous and previous["role"] == "user" and all(
                    "functionResponse" in p for p in previous["parts"]
                ):
                    previous["parts"].append(part)
                else:
                    contents.append({"role": "user", "parts": [part]})
                continue

            if message.role == MessageRole.ASSISTANT:
                parts: list[dict[str, Any]] = []
                if message.content:
                    parts.append({"text": message.content})
                for call in message.tool_calls or []:
                    parts.append({"functionCall": {"name": call.name, "args": call.args}})
                contents.append({"role": "model", "parts": parts or [{"text": ""}]})
                continue

            contents.append({"role": "user", "parts": [{"text": message.content}]})

        instruction = None
        if system_texts:
            instruction = {"parts": [{"text": "\n\n".join(system_texts)}]}

        return PreparedPrompt(messages=contents, system_instruction=instruction)

    def _payload(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]],
        system_instruction: Optional[Any]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"contents": messages}
        if tools:
            payload["tools"] = tools
        if system_instruction:
            payload["systemInstruction"] = system_instruction
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
            response = await client.post(
                f"/models/{model}:generateContent",
                json=self._payload(messages, tools, system_instruction),
            )
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, "Request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, str(e) or e.__class__.__name__) from e

        if response.status_code >= 400:
            raise self._status_error(response.status_code, response.content)

        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise ProviderError(self.name, f"No candidates returned{f' ({reason})' if reason else ''}")

        candidate = candidates[0]
        content = candidate.get("content") or {}
        parts = content.get("parts") or []

        return ModelResponse(
            text=_visible_text(parts),
            native_message={"role": "model", "parts": parts},
            usage=_usage_from(data.get("usageMetadata")),
            finish_reason=candidate.get("finishReason"),
        )

    async def stream(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        system_instruction: Optional[Any] = None
    ) -> AsyncIterator[ModelChunk]:
        client = self._get_client()
        text_parts: list[str] = []
        call_parts: list[dict[str, Any]] = []
        usage = Usage()
        finish_reason: Optional[str] = None

        try:
            async with client.stream(
                "POST",
                f"/models/{model}:streamGenerateContent",
                params={"alt": "sse"},
                json=self._payload(messages, tools, system_instruction),
            ) as response:
                if response.status_code >= 400:
                    raise self._status_error(response.status_code, await response.aread())

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[5:].strip())
                    except ValueError:
                        logger.warning("Skipping malformed stream event", provider=self.name)
                        continue

                    if event.get("usageMetadata"):
                        usage = _usage_from(event["usageMetadata"])

                    for candidate in (event.get("candidates") or [])[:1]:
                        for part in (candidate.get("content") or {}).get("parts") or []:
                            if "functionCall" in part:
                                call_parts.append(part)
                            elif "text" in part and not part.get("thought"):
                                text_parts.append(part["text"])
                                yield ModelChunk(text=part["text"])
                        if candidate.get("finishReason"):
                            finish_reason = candidate["finishReason"]
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, "Request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, str(e) or e.__class__.__name__) from e

        text = "".join(text_parts)
        parts: list[dict[str, Any]] = [{"text": text}] if text else []
        parts.extend(call_parts)

        yield ModelChunk(response=ModelResponse(
            text=text,
            native_message={"role": "model", "parts": parts or [{"text": ""}]},
            usage=usage,
            finish_reason=finish_reason,
        ))

    def parse_tool_calls(self, response: ModelResponse) -> list[ToolCall]:
        calls = []
        for part in response.native_message.get("parts") or []:
            function_call = part.get("functionCall")
            if not function_call or not function_call.get("name"):
                continue
            calls.append(ToolCall(
                id=function_call.get("id") or new_tool_call_id(),
                name=function_call["name"],
                args=function_call.get("args") or {},
            ))
        return calls

    def format_tool_results(
        self,
        calls: list[ToolCall],
        results: list[ToolResult]
    ) -> list[dict[str, Any]]:
        parts = []
        for call, result in zip(calls, match_results(calls, results)):
            payload = result.payload() if result is not None else {"error": "no result"}
            parts.append({
                "functionResponse": {
                    "name": call.name,
                    "response": payload if isinstance(payload, dict) else {"result": payload},
                }
            })
        return [{"role": "user", "parts": parts}] if parts else []

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
