"""Conversation Store.

Two layers behind one interface: SQLite is the source of truth and an
in-memory hot cache serves recent conversations. Writes reach SQLite before
the cache is touched, so the cache never holds state that was not
persisted. Cache misses are rehydrated from SQLite.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import aiosqlite
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.errors import ConversationConflict, ConversationNotFound, StoreError
from shared.logging import get_logger
from shared.models import (
    Conversation,
    ConversationSummary,
    Message,
    MessageRole,
    derive_title,
    utc_now,
)
from gateway.database import ConversationDatabase

logger = get_logger(__name__)


def reply_start(messages: list[Message]) -> Optional[int]:
    """
    Index where the trailing assistant reply begins.

    The reply is the run of assistant and tool messages after the last user
    message. Returns None unless the conversation ends on an assistant message.
    """
    if not messages or messages[-1].role != MessageRole.ASSISTANT:
        return None
    start = len(messages)
    while start > 0 and messages[start - 1].role in (MessageRole.ASSISTANT, MessageRole.TOOL):
        start -= 1
    return start


@dataclass
class _CacheEntry:
    conversation: Conversation
    last_access: float


class ConversationStore:
    """
    Read-through, write-through conversation store.

    Responsibilities:
    - Create, read, append to and delete conversations
    - Keep hot conversations in memory, evicting idle ones
    - Serialize writes per conversation id
    - Purge conversations past the retention window
    """

    def __init__(
        self,
        database: ConversationDatabase,
        cache_ttl_seconds: float = 7200,
        retention_seconds: Optional[float] = None,
        retention_interval_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        """
        Initialize the store.

        Args:
            database: Persistent layer
            cache_ttl_seconds: Idle time after which a cache entry is evicted
            retention_seconds: Age after which conversations are deleted; None keeps them forever
            retention_interval_seconds: Minimum time between retention purges
            clock: Monotonic clock used for cache idleness
        """
        self.db = database
        self.cache_ttl = cache_ttl_seconds
        self.retention_seconds = retention_seconds
        self.retention_interval = retention_interval_seconds
        self._clock = clock

        self._entries: dict[str, _CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_retention: Optional[float] = None

    async def initialize(self) -> None:
        await self.db.initialize()

    async def close(self) -> None:
        self._entries.clear()
        await self.db.close()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def _cache(self, conversation: Conversation) -> None:
        self._entries[conversation.id] = _CacheEntry(conversation, self._clock())

    def is_cached(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    @property
    def cache_size(self) -> int:
        return len(self._entries)

    @retry(
        retry=retry_if_exception_type(aiosqlite.OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        reraise=True
    )
    async def _write_with_retry(self, operation: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        return await operation(*args)

    async def _write(self, operation: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run a database write, retrying transient failures."""
        try:
            return await self._write_with_retry(operation, *args)
        except aiosqlite.Error as e:
            logger.error("Conversation write failed", operation=operation.__name__, error=str(e))
            raise StoreError(f"Write failed: {e}") from e

    async def _read(self, operation: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await operation(*args)
        except aiosqlite.Error as e:
            logger.error("Conversation read failed", operation=operation.__name__, error=str(e))
            raise StoreError(f"Read failed: {e}") from e

    async def create(self) -> str:
        """
        Create an empty conversation.

        Returns:
            The new conversation id
        """
        conversation = Conversation(id=f"c_{uuid.uuid4().hex}")
        await self._write(self.db.create_conversation, conversation)
        self._cache(conversation)

        logger.info("Conversation created", conversation_id=conversation.id)
        return conversation.id

    async def append(self, conversation_id: str, message: Message) -> Message:
        """
        Append one message.

        Args:
            conversation_id: Target conversation
            message: Message to append

        Returns:
            The appended message

        Raises:
            ConversationNotFound: If the conversation does not exist
            StoreError: If the write fails after retries
        """
        await self.append_many(conversation_id, [message])
        return message

    async def append_many(self, conversation_id: str, messages: list[Message]) -> None:
        """Append several messages atomically, in order."""
        if not messages:
            return

        async with self._lock_for(conversation_id):
            await self._write(self.db.insert_messages, conversation_id, messages)

            entry = self._entries.get(conversation_id)
            if entry is None:
                await self._rehydrate(conversation_id)
                return

            conversation = entry.conversation
            conversation.messages.extend(m.model_copy(deep=True) for m in messages)
            conversation.updated_at = max(conversation.updated_at, *(m.timestamp for m in messages))
            if conversation.title is None:
                first_user = next((m for m in messages if m.role == MessageRole.USER), None)
                if first_user is not None:
                    conversation.title = derive_title(first_user.content)
            answered = [m for m in messages if m.role == MessageRole.ASSISTANT and m.model]
            if answered:
                conversation.model = answered[-1].model
                conversation.provider = answered[-1].provider
            entry.last_access = self._clock()

    async def _rehydrate(self, conversation_id: str) -> Optional[Conversation]:
        conversation = await self._read(self.db.get_conversation, conversation_id)
        if conversation is not None:
            self._cache(conversation)
            logger.debug("Conversation rehydrated", conversation_id=conversation_id)
        return conversation

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        """
        Get a conversation.

        Args:
            conversation_id: Conversation identifier

        Returns:
            A copy of the conversation, or None if it does not exist
        """
        entry = self._entries.get(conversation_id)
        if entry is not None:
            entry.last_access = self._clock()
            return entry.conversation.model_copy(deep=True)

        conversation = await self._rehydrate(conversation_id)
        return conversation.model_copy(deep=True) if conversation is not None else None

    async def require(self, conversation_id: str) -> Conversation:
        """Like ``get`` but raises ConversationNotFound."""
        conversation = await self.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    async def remove_last(self, conversation_id: str) -> Optional[Message]:
        """
        Remove the newest message from both layers.

        Returns:
            The removed message, or None if there was nothing to remove
        """
        async with self._lock_for(conversation_id):
            removed = await self._write(self.db.delete_last_message, conversation_id)
            if removed is None:
                return None

            entry = self._entries.get(conversation_id)
            if entry is not None and entry.conversation.messages:
                entry.conversation.messages.pop()
                entry.last_access = self._clock()

        logger.info("Last message removed", conversation_id=conversation_id, role=removed.role.value)
        return removed

    async def replace_reply(
        self,
        conversation_id: str,
        keep: int,
        expected_count: int,
        messages: list[Message]
    ) -> int:
        """
        Swap the trailing reply of a conversation for a regenerated one.

        The state check and the write happen under the conversation's lock
        and in one SQLite transaction, so the kept prefix is never touched and
        concurrent regenerations of the same reply apply one after the other.

        Args:
            conversation_id: Target conversation
            keep: Number of leading messages that stay
            expected_count: Message count seen when the regeneration started
            messages: Replacement messages, in order

        Returns:
            Number of messages removed

        Raises:
            ConversationNotFound: If the conversation does not exist
            ConversationConflict: If the conversation changed since the regeneration started
            StoreError: If the write fails after retries
        """
        if not messages:
            raise ValueError("replace_reply needs at least one message")

        async with self._lock_for(conversation_id):
            entry = self._entries.get(conversation_id)
            conversation = entry.conversation if entry is not None else await self._rehydrate(conversation_id)
            if conversation is None:
                raise ConversationNotFound(conversation_id)

            current = conversation.messages
            if len(current) != expected_count or reply_start(current) != keep:
                raise ConversationConflict(
                    f"Conversation {conversation_id} has {len(current)} messages, expected {expected_count}"
                )

            removed = await self._write(self.db.replace_messages_after, conversation_id, keep, messages)
            self._entries.pop(conversation_id, None)
            await self._rehydrate(conversation_id)

        logger.info("Reply replaced", conversation_id=conversation_id, removed=removed, added=len(messages))
        return removed

    async def delete(self, conversation_id: str) -> bool:
        """
        Delete a conversation from both layers.

        Returns:
            True if deleted, False if it did not exist
        """
        async with self._lock_for(conversation_id):
            deleted = await self._write(self.db.delete_conversation, conversation_id)
            self._entries.pop(conversation_id, None)

        self._locks.pop(conversation_id, None)
        if deleted:
            logger.info("Conversation deleted", conversation_id=conversation_id)
        return deleted

    async def list(self, limit: int = 50, offset: int = 0) -> list[ConversationSummary]:
        """Conversations from persistent storage, most recently active first."""
        return await self._read(self.db.list_conversations, limit, offset)

    async def stats(self) -> dict[str, Any]:
        stats = await self._read(self.db.stats)
        stats["cached"] = len(self._entries)
        return stats

    async def sweep(self) -> dict[str, int]:
        """
        Evict idle cache entries and, when due, purge expired conversations.

        Returns:
            Counts of evicted cache entries and purged conversations
        """
        now = self._clock()
        idle = [
            cid for cid, entry in self._entries.items()
            if now - entry.last_access > self.cache_ttl and not self._lock_for(cid).locked()
        ]
        for cid in idle:
            self._entries.pop(cid, None)
            self._locks.pop(cid, None)

        purged: list[str] = []
        retention_due = (
            self.retention_seconds is not None
            and (self._last_retention is None or now - self._last_retention >= self.retention_interval)
        )
        if retention_due:
            self._last_retention = now
            cutoff = utc_now() - timedelta(seconds=self.retention_seconds)
            purged = await self._write(self.db.delete_older_than, cutoff)
            for cid in purged:
                self._entries.pop(cid, None)
                self._locks.pop(cid, None)

        if idle or purged:
            logger.info("Conversation sweep", evicted=len(idle), purged=len(purged))

        return {"evicted": len(idle), "purged": len(purged)}
