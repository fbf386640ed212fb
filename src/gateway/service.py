"""Chat Service.

Glue between the HTTP surface, the conversation store and the engine:
- Validates requests before any stream opens
- Runs turns (blocking, or in a background task feeding an event queue)
- Persists finalized turns and reports failures
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from shared.errors import ConversationNotFound, GatewayError, MissingInput, ProviderError
from shared.logging import get_logger, log_context
from shared.models import Message, MessageRole, ToolContext
from providers.base import ProviderAdapter
from providers.registry import ProviderRegistry
from gateway.engine import ConversationEngine, TurnOutcome
from gateway.events import DoneEvent, ErrorEvent, InitEvent, TurnEvent
from gateway.store import ConversationStore, reply_start

logger = get_logger(__name__)


@dataclass
class Regeneration:
    """Where a regenerated reply goes: after the first ``keep`` messages of ``expected_count``."""
    keep: int
    expected_count: int


class TurnHandle:
    """A turn running in the background, observed through its event queue."""

    def __init__(self, conversation_id: str, model: str, provider: str) -> None:
        self.conversation_id = conversation_id
        self.model = model
        self.provider = provider
        self.queue: asyncio.Queue[Optional[TurnEvent]] = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None

    async def put(self, event: TurnEvent) -> None:
        self.queue.put_nowait(event)

    def close(self) -> None:
        self.queue.put_nowait(None)

    async def events(self) -> AsyncIterator[TurnEvent]:
        """Events in emission order, ending after ``done`` or ``error``."""
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event


class ChatService:
    """
    Conversation operations exposed by the gateway.

    Responsibilities:
    - Conversation CRUD and transcripts
    - Blocking and streamed chat turns
    - Regeneration of the last assistant reply
    - Tracking in-flight turns until shutdown
    """

    def __init__(
        self,
        store: ConversationStore,
        providers: ProviderRegistry,
        engine: ConversationEngine
    ) -> None:
        self.store = store
        self.providers = providers
        self.engine = engine
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def create_conversation(self) -> str:
        return await self.store.create()

    async def get_transcript(self, conversation_id: str) -> dict[str, Any]:
        """
        Transcript of a conversation.

        Raises:
            ConversationNotFound: If the conversation does not exist
        """
        conversation = await self.store.require(conversation_id)
        return conversation.to_transcript()

    async def list_conversations(self, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        summaries = await self.store.list(limit, offset)
        stats = await self.store.stats()
        total = stats["conversations"]
        return {
            "conversations": [s.to_dict() for s in summaries],
            "stats": stats,
            "pagination": {
                "limit": limit,
                "offset": offset,
                "total": total,
                "hasMore": offset + len(summaries) < total,
            },
        }

    async def delete_conversation(self, conversation_id: str) -> None:
        """
        Delete a conversation.

        Raises:
            ConversationNotFound: If the conversation does not exist
        """
        if not await self.store.delete(conversation_id):
            raise ConversationNotFound(conversation_id)

    async def chat(
        self,
        message: Optional[str],
        conversation_id: Optional[str] = None,
        model: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Run a blocking chat turn.

        Args:
            message: User message
            conversation_id: Existing conversation; a new one when omitted
            model: Model id; the default model when omitted

        Returns:
            Response body with the reply, usage and updated transcript

        Raises:
            MissingInput: If the message is empty
            ConversationNotFound: If the conversation does not exist
            ProviderError: If the provider fails; the user message stays persisted
        """
        text = self._require_message(message)
        model, provider, adapter = self.providers.resolve(model)
        conversation_id = await self._ensure_conversation(conversation_id)
        await self.store.append(conversation_id, Message(role=MessageRole.USER, content=text))

        history = (await self.store.require(conversation_id)).messages
        request_id = str(uuid.uuid4())
        with log_context(conversation_id=conversation_id, request_id=request_id):
            try:
                outcome = await self.engine.run(
                    history,
                    adapter,
                    model,
                    provider,
                    context=ToolContext(conversation_id=conversation_id, request_id=request_id)
                )
            except ProviderError as e:
                logger.warning("Chat turn failed", provider=e.provider, error=e.message)
                raise
            await self._persist(conversation_id, model, provider, outcome)

        conversation = await self.store.require(conversation_id)
        return {
            "conversationId": conversation_id,
            "model": model,
            "response": outcome.text,
            "usage": outcome.usage.model_dump(),
            "conversation": conversation.to_transcript(),
        }

    async def open_stream(
        self,
        message: Optional[str] = None,
        conversation_id: Optional[str] = None,
        model: Optional[str] = None,
        regenerate: bool = False
    ) -> TurnHandle:
        """
        Validate a streamed turn and start it.

        Everything that can be rejected is rejected here, before any bytes
        of the stream are sent. A new message is appended now; a regenerated
        reply only replaces the old one once the turn finalizes, so a failed
        regeneration leaves the conversation as it was.

        Returns:
            Handle whose events feed the SSE response

        Raises:
            MissingInput: Missing message, or nothing to regenerate
            ConversationNotFound: If the conversation does not exist
            ProviderError: If the model's provider is not configured
        """
        model, provider, adapter = self.providers.resolve(model)

        regeneration: Optional[Regeneration] = None
        if regenerate:
            if not conversation_id:
                raise MissingInput("conversationId is required to regenerate")
            history, regeneration = await self._plan_regeneration(conversation_id)
        else:
            text = self._require_message(message)
            conversation_id = await self._ensure_conversation(conversation_id)
            await self.store.append(conversation_id, Message(role=MessageRole.USER, content=text))
            history = (await self.store.require(conversation_id)).messages

        handle = TurnHandle(conversation_id, model, provider)
        await handle.put(InitEvent(conversationId=conversation_id, model=model))

        task = asyncio.create_task(self._run_turn(handle, history, adapter, regeneration))
        handle.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    async def open_refresh(self, conversation_id: Optional[str], model: Optional[str] = None) -> TurnHandle:
        """Regenerate the last assistant reply of a conversation as a stream."""
        return await self.open_stream(conversation_id=conversation_id, model=model, regenerate=True)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight turns to finish."""
        if not self._tasks:
            return
        logger.info("Draining in-flight turns", count=len(self._tasks))
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled unfinished turns", count=len(pending))

    def _require_message(self, message: Optional[str]) -> str:
        if message is None or not message.strip():
            raise MissingInput("message is required")
        return message

    async def _ensure_conversation(self, conversation_id: Optional[str]) -> str:
        if conversation_id:
            await self.store.require(conversation_id)
            return conversation_id
        return await self.store.create()

    async def _plan_regeneration(self, conversation_id: str) -> tuple[list[Message], Regeneration]:
        """History without the last reply, and where the new reply will go."""
        conversation = await self.store.require(conversation_id)
        start = reply_start(conversation.messages)
        if start is None:
            raise MissingInput("Nothing to regenerate: the last message is not an assistant reply")
        return conversation.messages[:start], Regeneration(start, len(conversation.messages))

    async def _persist(
        self,
        conversation_id: str,
        model: str,
        provider: str,
        outcome: TurnOutcome,
        regeneration: Optional[Regeneration] = None
    ) -> None:
        final = Message(
            role=MessageRole.ASSISTANT,
            content=outcome.text,
            model=model,
            provider=provider,
            usage=outcome.final_usage
        )
        messages = [*outcome.messages, final]
        if regeneration is None:
            await self.store.append_many(conversation_id, messages)
        else:
            await self.store.replace_reply(
                conversation_id, regeneration.keep, regeneration.expected_count, messages
            )

    async def _run_turn(
        self,
        handle: TurnHandle,
        history: list[Message],
        adapter: ProviderAdapter,
        regeneration: Optional[Regeneration] = None
    ) -> None:
        conversation_id = handle.conversation_id
        request_id = str(uuid.uuid4())
        with log_context(conversation_id=conversation_id, request_id=request_id):
            try:
                outcome = await self.engine.run(
                    history,
                    adapter,
                    handle.model,
                    handle.provider,
                    stream=True,
                    emit=handle.put,
                    context=ToolContext(conversation_id=conversation_id, request_id=request_id)
                )
                await self._persist(conversation_id, handle.model, handle.provider, outcome, regeneration)
                conversation = await self.store.require(conversation_id)
                await handle.put(DoneEvent(
                    conversationId=conversation_id,
                    model=handle.model,
                    usage=outcome.usage.model_dump(),
                    text=outcome.text,
                    conversation=conversation.to_transcript()
                ))
            except ProviderError as e:
                logger.warning("Streamed turn failed", provider=e.provider, error=e.message)
                await handle.put(ErrorEvent(error=e.public_message, provider=e.provider, details=e.message))
            except GatewayError as e:
                logger.error("Streamed turn failed", error=e.message)
                await handle.put(ErrorEvent(error=e.public_message))
            except Exception as e:
                logger.error("Streamed turn crashed", error=str(e), exc_info=True)
                await handle.put(ErrorEvent(error="Internal error"))
            finally:
                handle.close()
