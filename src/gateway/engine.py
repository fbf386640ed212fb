"""Conversation Engine.

Drives one turn of a conversation:

    SEEDING -> AWAITING_MODEL -> (EXECUTING_TOOLS -> AWAITING_MODEL)* -> FINALIZED

or FAILED when the provider errors. The engine is provider agnostic; every
wire detail lives behind the ProviderAdapter interface.
"""

import asyncio
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from shared.errors import ProviderError
from shared.logging import get_logger
from shared.models import (
    Message,
    MessageRole,
    ModelResponse,
    ToolCall,
    ToolContext,
    ToolResult,
    Usage,
)
from providers.base import ProviderAdapter, match_results, tool_result_content
from tool_runtime.catalog import ToolCatalog
from tool_runtime.executor import ToolExecutor
from gateway.events import TokenEvent, ToolCallEvent, ToolResultEvent, TurnEvent

logger = get_logger(__name__)

EventSink = Callable[[TurnEvent], Awaitable[None]]

PREVIEW_LENGTH = 120


class TurnState(str, Enum):
    SEEDING = "seeding"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    FINALIZED = "finalized"
    FAILED = "failed"


class TurnOutcome(BaseModel):
    """
    Result of a finalized turn.

    ``messages`` holds the assistant tool-call and tool messages produced by
    tool rounds, in order; the final assistant message is left to the caller.
    """
    text: str = ""
    usage: Usage = Field(default_factory=Usage)
    final_usage: Usage = Field(default_factory=Usage)
    messages: list[Message] = Field(default_factory=list)
    model_calls: int = 0
    rounds: int = 0


def truncate_history(history: list[Message], max_messages: Optional[int]) -> list[Message]:
    """
    Keep the newest ``max_messages`` messages.

    The window never starts on a tool message whose tool call was cut off.
    """
    if not max_messages or len(history) <= max_messages:
        return list(history)
    window = history[-max_messages:]
    while window and window[0].role == MessageRole.TOOL:
        window = window[1:]
    return window


async def _discard(event: TurnEvent) -> None:
    return None


class Turn:
    """One run of the state machine over a conversation history."""

    def __init__(
        self,
        engine: "ConversationEngine",
        history: list[Message],
        adapter: ProviderAdapter,
        model: str,
        provider: Optional[str] = None,
        stream: bool = False,
        emit: Optional[EventSink] = None,
        context: Optional[ToolContext] = None
    ) -> None:
        self.engine = engine
        self.history = history
        self.adapter = adapter
        self.model = model
        self.provider = provider or adapter.name
        self.stream = stream
        self.emit = emit or _discard
        self.context = context or ToolContext(request_id=str(uuid.uuid4()))
        self.state = TurnState.SEEDING

    def _transition(self, state: TurnState) -> None:
        logger.debug("Turn state", previous=self.state.value, state=state.value)
        self.state = state

    async def run(self) -> TurnOutcome:
        """
        Run the turn to completion.

        Returns:
            The finalized outcome

        Raises:
            ProviderError: If any model call fails or times out
        """
        try:
            return await self._run()
        except ProviderError:
            self._transition(TurnState.FAILED)
            raise

    async def _run(self) -> TurnOutcome:
        engine = self.engine
        history = truncate_history(self.history, engine.max_history_messages)
        prompt = self.adapter.format_messages(history, engine.system_prompt)
        working = list(prompt.messages)

        tools = engine.catalog.select() if engine.tools_enabled else []
        tool_spec = self.adapter.format_tools(tools) if tools else None

        outcome = TurnOutcome()
        while True:
            allow_tools = tool_spec is not None and outcome.rounds < engine.max_tool_rounds
            self._transition(TurnState.AWAITING_MODEL)
            response = await self._call_model(
                working,
                tool_spec if allow_tools else None,
                prompt.system_instruction
            )
            outcome.model_calls += 1
            outcome.usage = outcome.usage + response.usage

            calls = self.adapter.parse_tool_calls(response) if allow_tools else []
            if not calls:
                outcome.text = response.text
                outcome.final_usage = response.usage
                self._transition(TurnState.FINALIZED)
                logger.info(
                    "Turn finalized",
                    model=self.model,
                    provider=self.provider,
                    model_calls=outcome.model_calls,
                    rounds=outcome.rounds,
                    total_tokens=outcome.usage.total_tokens
                )
                return outcome

            outcome.rounds += 1
            self._transition(TurnState.EXECUTING_TOOLS)
            results = await self._execute_tools(calls)

            working.append(response.native_message)
            working.extend(self.adapter.format_tool_results(calls, results))

            outcome.messages.append(Message(
                role=MessageRole.ASSISTANT,
                content=response.text,
                model=self.model,
                provider=self.provider,
                usage=response.usage,
                tool_calls=calls
            ))
            for call, result in zip(calls, match_results(calls, results)):
                outcome.messages.append(Message(
                    role=MessageRole.TOOL,
                    content=tool_result_content(result),
                    tool_name=call.name,
                    tool_call_id=call.id
                ))

    async def _execute_tools(self, calls: list[ToolCall]) -> list[ToolResult]:
        for call in calls:
            await self.emit(ToolCallEvent(id=call.id, tool=call.name, args=call.args))

        results = await self.engine.executor.execute_round(calls, self.context)

        for call, result in zip(calls, match_results(calls, results)):
            if result is not None and result.ok:
                event = ToolResultEvent(id=call.id, tool=call.name, result=result.result)
            else:
                error = result.error if result is not None else "no result"
                event = ToolResultEvent(id=call.id, tool=call.name, error=error or "Unknown error")
            await self.emit(event)
        return results

    async def _call_model(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[Any],
        system_instruction: Optional[Any]
    ) -> ModelResponse:
        timeout = self.engine.provider_timeout
        started = time.perf_counter()

        logger.info(
            "Provider request",
            model=self.model,
            provider=self.provider,
            messages=len(messages),
            tools=bool(tools),
            stream=self.stream
        )

        if self.stream:
            response = await self._stream_model(messages, tools, system_instruction, timeout)
        else:
            try:
                response = await asyncio.wait_for(
                    self.adapter.call(self.model, messages, tools, system_instruction=system_instruction),
                    timeout
                )
            except asyncio.TimeoutError:
                raise ProviderError(self.provider, f"Timed out after {timeout}s")

        logger.info(
            "Provider response",
            model=self.model,
            provider=self.provider,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            usage=response.usage.model_dump(),
            finish_reason=response.finish_reason,
            preview=response.text[:PREVIEW_LENGTH]
        )
        return response

    async def _stream_model(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[Any],
        system_instruction: Optional[Any],
        timeout: float
    ) -> ModelResponse:
        chunks = await self.adapter.call(
            self.model, messages, tools, stream=True, system_instruction=system_instruction
        )
        iterator = chunks.__aiter__()
        response: Optional[ModelResponse] = None
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise ProviderError(self.provider, f"Stream stalled for {timeout}s")

                if chunk.text:
                    await self.emit(TokenEvent(token=chunk.text))
                if chunk.response is not None:
                    response = chunk.response
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        if response is None:
            raise ProviderError(self.provider, "Stream ended without a final response")
        return response


class ConversationEngine:
    """
    Runs conversation turns against provider adapters.

    Responsibilities:
    - Seed provider messages from history and the system prompt
    - Call the model with bounded timeouts
    - Execute requested tools and feed results back
    - Cap tool rounds and finish with a tool-free call
    """

    def __init__(
        self,
        executor: ToolExecutor,
        catalog: Optional[ToolCatalog] = None,
        max_tool_rounds: int = 3,
        provider_timeout: float = 60.0,
        system_prompt: Optional[str] = None,
        max_history_messages: Optional[int] = None,
        tools_enabled: bool = True
    ) -> None:
        """
        Initialize the engine.

        Args:
            executor: Tool executor
            catalog: Tool catalog (the executor's when omitted)
            max_tool_rounds: Tool rounds allowed before the final tool-free call
            provider_timeout: Seconds allowed per model call, and per chunk when streaming
            system_prompt: System prompt prepended to every turn
            max_history_messages: History window sent to the model
            tools_enabled: Offer catalog tools to the model
        """
        self.executor = executor
        self.catalog = catalog or executor.catalog
        self.max_tool_rounds = max_tool_rounds
        self.provider_timeout = provider_timeout
        self.system_prompt = system_prompt
        self.max_history_messages = max_history_messages
        self.tools_enabled = tools_enabled

    def turn(
        self,
        history: list[Message],
        adapter: ProviderAdapter,
        model: str,
        provider: Optional[str] = None,
        *,
        stream: bool = False,
        emit: Optional[EventSink] = None,
        context: Optional[ToolContext] = None
    ) -> Turn:
        return Turn(self, history, adapter, model, provider, stream, emit, context)

    async def run(
        self,
        history: list[Message],
        adapter: ProviderAdapter,
        model: str,
        provider: Optional[str] = None,
        *,
        stream: bool = False,
        emit: Optional[EventSink] = None,
        context: Optional[ToolContext] = None
    ) -> TurnOutcome:
        """Run one turn and return its outcome."""
        return await self.turn(
            history, adapter, model, provider, stream=stream, emit=emit, context=context
        ).run()
