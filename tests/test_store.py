"""Tests for the conversation store and its SQLite layer."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import aiosqlite
import pytest

from shared.models import Message, MessageRole, ToolCall, Usage, utc_now


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def user(text: str) -> Message:
    return Message(role=MessageRole.USER, content=text)


def assistant(text: str, model: str = "mock", provider: str = "mock") -> Message:
    return Message(
        role=MessageRole.ASSISTANT,
        content=text,
        model=model,
        provider=provider,
        usage=Usage(prompt_tokens=3, completion_tokens=2, total_tokens=5),
    )


class TestConversationDatabase:
    """Tests for ConversationDatabase."""

    @pytest.mark.asyncio
    async def test_round_trip_preserves_message_fields(self, tmp_path):
        """Test that tool metadata and usage survive persistence."""
        from gateway.database import ConversationDatabase
        from shared.models import Conversation

        db = ConversationDatabase(str(tmp_path / "chat.db"))
        await db.initialize()
        try:
            await db.create_conversation(Conversation(id="c_1"))
            await db.insert_messages("c_1", [
                user("What is new?"),
                Message(
                    role=MessageRole.ASSISTANT,
                    content="",
                    model="gpt-4o-mini",
                    provider="openai",
                    tool_calls=[ToolCall(id="call_1", name="web_search", args={"query": "news"})],
                ),
                Message(role=MessageRole.TOOL, content='{"results": []}', tool_name="web_search", tool_call_id="call_1"),
                assistant("Nothing much.", model="gpt-4o-mini", provider="openai"),
            ])

            conversation = await db.get_conversation("c_1")
        finally:
            await db.close()

        assert [m.role for m in conversation.messages] == [
            MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL, MessageRole.ASSISTANT
        ]
        assert conversation.messages[1].tool_calls[0].args == {"query": "news"}
        assert conversation.messages[2].tool_call_id == "call_1"
        assert conversation.messages[3].usage.total_tokens == 5
        assert conversation.title == "What is new?"
        assert (conversation.model, conversation.provider) == ("gpt-4o-mini", "openai")
        assert (tmp_path / "chat.db").exists()

    @pytest.mark.asyncio
    async def test_insert_into_unknown_conversation(self):
        """Test that appending to a missing conversation fails cleanly."""
        from gateway.database import ConversationDatabase
        from shared.errors import ConversationNotFound

        db = ConversationDatabase(":memory:")
        await db.initialize()
        try:
            with pytest.raises(ConversationNotFound):
                await db.insert_messages("c_missing", [user("hi")])
            assert (await db.stats())["messages"] == 0
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_requires_initialize(self):
        """Test that using the database before initialize fails loudly."""
        from gateway.database import ConversationDatabase

        with pytest.raises(RuntimeError):
            await ConversationDatabase(":memory:").stats()


class TestConversationStore:
    """Tests for ConversationStore."""

    @pytest.mark.asyncio
    async def test_create(self, store):
        """Test creating a conversation."""
        conversation_id = await store.create()

        assert conversation_id.startswith("c_")
        assert len(conversation_id) == 34
        assert store.is_cached(conversation_id)
        conversation = await store.get(conversation_id)
        assert conversation.messages == []

    @pytest.mark.asyncio
    async def test_append_then_get(self, store):
        """Test that an appended message is last and updated_at advances."""
        conversation_id = await store.create()
        message = user("hello")

        await store.append(conversation_id, message)
        conversation = await store.get(conversation_id)

        assert conversation.messages[-1] == message
        assert conversation.updated_at >= message.timestamp
        assert conversation.title == "hello"

    @pytest.mark.asyncio
    async def test_append_unknown_conversation(self, store):
        """Test that appending to an unknown id raises."""
        from shared.errors import ConversationNotFound

        with pytest.raises(ConversationNotFound):
            await store.append("c_missing", user("hi"))

        assert not store.is_cached("c_missing")

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, store):
        """Test that mutating a returned conversation does not touch the cache."""
        conversation_id = await store.create()
        await store.append(conversation_id, user("hello"))

        conversation = await store.get(conversation_id)
        conversation.messages.clear()

        assert len((await store.get(conversation_id)).messages) == 1

    @pytest.mark.asyncio
    async def test_rehydrates_after_eviction(self):
        """Test that evicted conversations are read back from SQLite."""
        from gateway.database import ConversationDatabase
        from gateway.store import ConversationStore

        clock = FakeClock()
        store = ConversationStore(ConversationDatabase(":memory:"), cache_ttl_seconds=60, clock=clock)
        await store.initialize()
        try:
            conversation_id = await store.create()
            await store.append(conversation_id, user("hello"))

            clock.now += 61
            assert (await store.sweep())["evicted"] == 1
            assert not store.is_cached(conversation_id)

            await store.append(conversation_id, assistant("hi there"))
            assert store.is_cached(conversation_id)

            conversation = await store.get(conversation_id)
            assert [m.content for m in conversation.messages] == ["hello", "hi there"]
            assert conversation.model == "mock"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_recent_access_keeps_entry_cached(self):
        """Test that idleness is measured from the last access."""
        from gateway.database import ConversationDatabase
        from gateway.store import ConversationStore

        clock = FakeClock()
        store = ConversationStore(ConversationDatabase(":memory:"), cache_ttl_seconds=60, clock=clock)
        await store.initialize()
        try:
            conversation_id = await store.create()
            clock.now += 50
            await store.get(conversation_id)
            clock.now += 50

            assert (await store.sweep())["evicted"] == 0
            assert store.is_cached(conversation_id)
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_remove_last(self, store):
        """Test popping the newest message from both layers."""
        conversation_id = await store.create()
        await store.append_many(conversation_id, [user("hello"), assistant("hi")])

        removed = await store.remove_last(conversation_id)

        assert removed.content == "hi"
        assert [m.content for m in (await store.get(conversation_id)).messages] == ["hello"]
        assert (await store.db.get_conversation(conversation_id)).messages[-1].content == "hello"

        await store.remove_last(conversation_id)
        assert await store.remove_last(conversation_id) is None

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Test deleting removes the conversation everywhere."""
        conversation_id = await store.create()
        await store.append(conversation_id, user("hello"))

        assert await store.delete(conversation_id) is True
        assert await store.get(conversation_id) is None
        assert (await store.stats())["messages"] == 0
        assert await store.delete(conversation_id) is False

    @pytest.mark.asyncio
    async def test_list_matches_database(self, store):
        """Test listing order, pagination and counts."""
        first = await store.create()
        second = await store.create()
        third = await store.create()
        for conversation_id, text, offset in [
            (first, "oldest activity", 1),
            (third, "middle activity", 3),
            (second, "newest activity", 5),
        ]:
            message = user(text)
            message.timestamp = utc_now() + timedelta(seconds=offset)
            await store.append(conversation_id, message)

        page = await store.list(limit=2, offset=0)
        rest = await store.list(limit=2, offset=2)

        assert [s.id for s in page] == [second, third]
        assert [s.id for s in rest] == [first]
        assert page[0].message_count == 1
        assert page[0].title == "newest activity"
        assert page[0].to_dict()["messageCount"] == 1

        stats = await store.stats()
        assert stats["conversations"] == 3
        assert stats["messages"] == 3
        assert stats["databaseSize"] > 0

    @pytest.mark.asyncio
    async def test_retention_purge(self):
        """Test that conversations past retention are purged on the sweep."""
        from gateway.database import ConversationDatabase
        from gateway.store import ConversationStore

        clock = FakeClock()
        store = ConversationStore(
            ConversationDatabase(":memory:"),
            cache_ttl_seconds=60,
            retention_seconds=3600,
            retention_interval_seconds=600,
            clock=clock
        )
        await store.initialize()
        try:
            stale = await store.create()
            old = user("ancient")
            old.timestamp = utc_now() - timedelta(hours=2)
            await store.append(stale, old)
            # Appending moved updated_at to now; age the row directly
            await store.db._db().execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (int((utc_now() - timedelta(hours=2)).timestamp() * 1000), stale),
            )
            await store.db._db().commit()
            fresh = await store.create()

            result = await store.sweep()

            assert result["purged"] == 1
            assert await store.get(stale) is None
            assert await store.get(fresh) is not None

            # Not due again until the retention interval has passed
            clock.now += 10
            assert (await store.sweep())["purged"] == 0
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_write_retries_then_succeeds(self, store):
        """Test that transient SQLite failures are retried."""
        conversation_id = await store.create()
        original = store.db.insert_messages
        store.db.insert_messages = AsyncMock(
            side_effect=[aiosqlite.OperationalError("database is locked"), None]
        )
        store.db.insert_messages.__name__ = "insert_messages"

        await store.append(conversation_id, user("hello"))

        assert store.db.insert_messages.await_count == 2
        assert (await store.get(conversation_id)).messages[-1].content == "hello"
        store.db.insert_messages = original

    @pytest.mark.asyncio
    async def test_write_failure_leaves_cache_untouched(self, store):
        """Test that exhausted retries raise StoreError without caching the message."""
        from shared.errors import StoreError

        conversation_id = await store.create()
        store.db.insert_messages = AsyncMock(side_effect=aiosqlite.OperationalError("disk I/O error"))
        store.db.insert_messages.__name__ = "insert_messages"

        with pytest.raises(StoreError):
            await store.append(conversation_id, user("hello"))

        assert store.db.insert_messages.await_count == 3
        assert (await store.get(conversation_id)).messages == []

    @pytest.mark.asyncio
    async def test_concurrent_appends_stay_contiguous(self, store):
        """Test that batches appended concurrently to one conversation never interleave."""
        conversation_id = await store.create()
        batches = [[user(f"{b}-{i}") for i in range(3)] for b in range(10)]

        await asyncio.gather(*(store.append_many(conversation_id, batch) for batch in batches))

        cached = [m.content for m in (await store.get(conversation_id)).messages]
        stored = [m.content for m in (await store.db.get_conversation(conversation_id)).messages]
        assert cached == stored
        assert len(cached) == 30
        for start in range(0, 30, 3):
            prefix = cached[start].split("-")[0]
            assert cached[start:start + 3] == [f"{prefix}-{i}" for i in range(3)]


class TestReplaceReply:
    """Tests for swapping the trailing reply of a conversation."""

    def test_reply_start(self):
        """Test locating the trailing reply."""
        from gateway.store import reply_start

        tool_round = [
            user("q"),
            Message(role=MessageRole.ASSISTANT, tool_calls=[ToolCall(id="1", name="t", args={})]),
            Message(role=MessageRole.TOOL, content="{}", tool_call_id="1"),
            assistant("a"),
        ]

        assert reply_start(tool_round) == 1
        assert reply_start([user("q")]) is None
        assert reply_start([]) is None

    @pytest.mark.asyncio
    async def test_replaces_tool_round_and_reply(self, store):
        """Test that the whole trailing reply is swapped in both layers."""
        conversation_id = await store.create()
        await store.append_many(conversation_id, [
            user("q"),
            Message(role=MessageRole.ASSISTANT, tool_calls=[ToolCall(id="1", name="t", args={})]),
            Message(role=MessageRole.TOOL, content="{}", tool_call_id="1"),
            assistant("old"),
        ])

        removed = await store.replace_reply(conversation_id, keep=1, expected_count=4, messages=[
            assistant("new", model="gemini-2.5-flash", provider="gemini")
        ])

        assert removed == 3
        conversation = await store.get(conversation_id)
        assert [m.content for m in conversation.messages] == ["q", "new"]
        assert conversation.provider == "gemini"
        stored = await store.db.get_conversation(conversation_id)
        assert [m.content for m in stored.messages] == ["q", "new"]

    @pytest.mark.asyncio
    async def test_conflict_leaves_conversation_untouched(self, store):
        """Test that a reply is not replaced once the conversation has moved on."""
        from shared.errors import ConversationConflict

        conversation_id = await store.create()
        await store.append_many(conversation_id, [user("q"), assistant("a")])
        await store.append(conversation_id, user("next"))

        with pytest.raises(ConversationConflict):
            await store.replace_reply(conversation_id, keep=1, expected_count=2, messages=[assistant("new")])

        assert [m.content for m in (await store.get(conversation_id)).messages] == ["q", "a", "next"]
        assert [m.content for m in (await store.db.get_conversation(conversation_id)).messages] == ["q", "a", "next"]

    @pytest.mark.asyncio
    async def test_concurrent_replacements_serialize(self, store):
        """Test that racing replacements of one reply never remove the kept prefix."""
        conversation_id = await store.create()
        await store.append_many(conversation_id, [user("q"), assistant("a")])

        await asyncio.gather(
            store.replace_reply(conversation_id, keep=1, expected_count=2, messages=[assistant("one")]),
            store.replace_reply(conversation_id, keep=1, expected_count=2, messages=[assistant("two")]),
        )

        contents = [m.content for m in (await store.get(conversation_id)).messages]
        assert contents[0] == "q"
        assert len(contents) == 2
        assert contents[1] in ("one", "two")

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, store):
        """Test replacing in a conversation that does not exist."""
        from shared.errors import ConversationNotFound

        with pytest.raises(ConversationNotFound):
            await store.replace_reply("c_missing", keep=0, expected_count=0, messages=[assistant("x")])
