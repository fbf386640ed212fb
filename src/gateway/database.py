"""SQLite persistence for conversations.

The durable layer behind the conversation store. Every write runs in its
own transaction on a single aiosqlite connection; writes are serialized so
one conversation's rollback can never undo another's insert.
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from shared.errors import ConversationNotFound
from shared.logging import get_logger
from shared.models import (
    Conversation,
    ConversationSummary,
    Message,
    MessageRole,
    ToolCall,
    Usage,
    derive_title,
    from_epoch_ms,
    to_epoch_ms,
)

logger = get_logger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    title TEXT,
    model TEXT,
    provider TEXT,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system', 'tool')),
    content TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    model TEXT,
    provider TEXT,
    usage_prompt_tokens INTEGER,
    usage_completion_tokens INTEGER,
    usage_total_tokens INTEGER,
    tool_calls TEXT,
    tool_name TEXT,
    tool_call_id TEXT,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at);
CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at);
"""


class ConversationDatabase:
    """
    aiosqlite-backed conversation persistence.

    Responsibilities:
    - Schema creation (WAL journal, foreign keys on)
    - Conversation and message CRUD
    - Listing, statistics and age-based cleanup
    """

    def __init__(self, path: str = "data/conversations.db") -> None:
        self.path = path
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @property
    def is_memory(self) -> bool:
        return self.path == ":memory:"

    async def initialize(self) -> None:
        """
        Open the connection and create the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened
        """
        if self._conn is not None:
            return

        if not self.is_memory:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(self.path)
        conn.row_factory = aiosqlite.Row
        if not self.is_memory:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.executescript(SCHEMA)
        await conn.commit()
        self._conn = conn

        logger.info("Conversation database ready", path=self.path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("ConversationDatabase.initialize() has not been called")
        return self._conn

    async def create_conversation(self, conversation: Conversation) -> None:
        """Insert a new, empty conversation."""
        conn = self._db()
        async with self._write_lock:
            try:
                await conn.execute(
                    "INSERT INTO conversations (id, created_at, updated_at, title, model, provider, metadata) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        conversation.id,
                        to_epoch_ms(conversation.created_at),
                        to_epoch_ms(conversation.updated_at),
                        conversation.title,
                        conversation.model,
                        conversation.provider,
                        None,
                    ),
                )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def insert_messages(self, conversation_id: str, messages: list[Message]) -> None:
        """
        Append messages to a conversation in one transaction.

        Also advances ``updated_at``, sets the title from the first user
        message, and records the model/provider of the latest assistant reply.

        Args:
            conversation_id: Target conversation
            messages: Messages in append order

        Raises:
            ConversationNotFound: If the conversation does not exist
        """
        if not messages:
            return

        conn = self._db()
        async with self._write_lock:
            try:
                await self._insert(conn, conversation_id, messages)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def replace_messages_after(self, conversation_id: str, keep: int, messages: list[Message]) -> int:
        """
        Replace everything after the first ``keep`` messages in one transaction.

        Args:
            conversation_id: Target conversation
            keep: Number of oldest messages to keep
            messages: Messages appended after the kept ones

        Returns:
            Number of messages removed

        Raises:
            ConversationNotFound: If the conversation does not exist
        """
        conn = self._db()
        async with self._write_lock:
            try:
                cursor = await conn.execute(
                    "DELETE FROM messages WHERE conversation_id = ? AND id NOT IN "
                    "(SELECT id FROM messages WHERE conversation_id = ? ORDER BY id ASC LIMIT ?)",
                    (conversation_id, conversation_id, keep),
                )
                removed = cursor.rowcount
                await cursor.close()
                await self._insert(conn, conversation_id, messages)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

        return removed

    async def _insert(self, conn: aiosqlite.Connection, conversation_id: str, messages: list[Message]) -> None:
        """Insert messages and update conversation bookkeeping; the caller commits."""
        async with conn.execute(
            "SELECT title, updated_at FROM conversations WHERE id = ?", (conversation_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise ConversationNotFound(conversation_id)

        await conn.executemany(
            "INSERT INTO messages (conversation_id, role, content, created_at, model, provider, "
            "usage_prompt_tokens, usage_completion_tokens, usage_total_tokens, "
            "tool_calls, tool_name, tool_call_id) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [self._message_params(conversation_id, m) for m in messages],
        )

        updated_at = max(row["updated_at"], *(to_epoch_ms(m.timestamp) for m in messages))
        title = row["title"]
        if title is None:
            first_user = next((m for m in messages if m.role == MessageRole.USER), None)
            if first_user is not None:
                title = derive_title(first_user.content)

        answered = [m for m in messages if m.role == MessageRole.ASSISTANT and m.model]
        if answered:
            await conn.execute(
                "UPDATE conversations SET updated_at = ?, title = ?, model = ?, provider = ? WHERE id = ?",
                (updated_at, title, answered[-1].model, answered[-1].provider, conversation_id),
            )
        else:
            await conn.execute(
                "UPDATE conversations SET updated_at = ?, title = ? WHERE id = ?",
                (updated_at, title, conversation_id),
            )

    def _message_params(self, conversation_id: str, message: Message) -> tuple[Any, ...]:
        usage = message.usage
        return (
            conversation_id,
            message.role.value,
            message.content,
            to_epoch_ms(message.timestamp),
            message.model,
            message.provider,
            usage.prompt_tokens if usage else None,
            usage.completion_tokens if usage else None,
            usage.total_tokens if usage else None,
            json.dumps([c.model_dump() for c in message.tool_calls]) if message.tool_calls else None,
            message.tool_name,
            message.tool_call_id,
        )

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Load a conversation with all of its messages, oldest first."""
        conn = self._db()
        async with conn.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None

        async with conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id ASC", (conversation_id,)
        ) as cursor:
            message_rows = await cursor.fetchall()

        return Conversation(
            id=row["id"],
            created_at=from_epoch_ms(row["created_at"]),
            updated_at=from_epoch_ms(row["updated_at"]),
            title=row["title"],
            model=row["model"],
            provider=row["provider"],
            messages=[self._row_to_message(r) for r in message_rows],
        )

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        usage = None
        if row["usage_total_tokens"] is not None:
            usage = Usage(
                prompt_tokens=row["usage_prompt_tokens"] or 0,
                completion_tokens=row["usage_completion_tokens"] or 0,
                total_tokens=row["usage_total_tokens"] or 0,
            )
        tool_calls = None
        if row["tool_calls"]:
            tool_calls = [ToolCall(**c) for c in json.loads(row["tool_calls"])]

        return Message(
            role=MessageRole(row["role"]),
            content=row["content"],
            timestamp=from_epoch_ms(row["created_at"]),
            model=row["model"],
            provider=row["provider"],
            usage=usage,
            tool_calls=tool_calls,
            tool_name=row["tool_name"],
            tool_call_id=row["tool_call_id"],
        )

    async def delete_last_message(self, conversation_id: str) -> Optional[Message]:
        """Remove and return the newest message of a conversation."""
        conn = self._db()
        async with self._write_lock:
            try:
                async with conn.execute(
                    "SELECT * FROM messages WHERE id = "
                    "(SELECT MAX(id) FROM messages WHERE conversation_id = ?)",
                    (conversation_id,),
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    return None

                await conn.execute("DELETE FROM messages WHERE id = ?", (row["id"],))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

        return self._row_to_message(row)

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and, by cascade, its messages."""
        conn = self._db()
        async with self._write_lock:
            try:
                cursor = await conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
                deleted = cursor.rowcount > 0
                await cursor.close()
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return deleted

    async def list_conversations(self, limit: int = 50, offset: int = 0) -> list[ConversationSummary]:
        """Conversations ordered by most recent activity."""
        conn = self._db()
        async with conn.execute(
            "SELECT c.*, (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id) AS message_count "
            "FROM conversations c ORDER BY c.updated_at DESC, c.id ASC LIMIT ? OFFSET ?",
            (limit, offset),
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            ConversationSummary(
                id=row["id"],
                created_at=from_epoch_ms(row["created_at"]),
                updated_at=from_epoch_ms(row["updated_at"]),
                title=row["title"],
                model=row["model"],
                provider=row["provider"],
                message_count=row["message_count"],
            )
            for row in rows
        ]

    async def stats(self) -> dict[str, int]:
        """Row counts and on-disk size in bytes."""
        conn = self._db()
        async with conn.execute("SELECT COUNT(*) FROM conversations") as cursor:
            conversations = (await cursor.fetchone())[0]
        async with conn.execute("SELECT COUNT(*) FROM messages") as cursor:
            messages = (await cursor.fetchone())[0]
        async with conn.execute("PRAGMA page_count") as cursor:
            page_count = (await cursor.fetchone())[0]
        async with conn.execute("PRAGMA page_size") as cursor:
            page_size = (await cursor.fetchone())[0]

        return {
            "conversations": conversations,
            "messages": messages,
            "databaseSize": page_count * page_size,
        }

    async def delete_older_than(self, cutoff: datetime) -> list[str]:
        """
        Delete conversations whose last activity is before ``cutoff``.

        Returns:
            Ids of the deleted conversations
        """
        conn = self._db()
        cutoff_ms = to_epoch_ms(cutoff)
        async with self._write_lock:
            try:
                async with conn.execute(
                    "SELECT id FROM conversations WHERE updated_at < ?", (cutoff_ms,)
                ) as cursor:
                    ids = [row["id"] for row in await cursor.fetchall()]
                if ids:
                    await conn.execute("DELETE FROM conversations WHERE updated_at < ?", (cutoff_ms,))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return ids
