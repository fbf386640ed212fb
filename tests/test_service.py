"""Tests for the chat service."""

import asyncio

import pytest

from shared.models import MessageRole, ToolCall


async def read_all(handle):
    return [event async for event in handle.events()]


class TestChatServiceBlocking:
    """Tests for blocking chat turns."""

    @pytest.mark.asyncio
    async def test_chat_creates_conversation(self, services, scripted):
        """Test that a chat without an id creates the conversation."""
        from providers.mock import ScriptedReply

        scripted.add_reply(ScriptedReply(text="Hello there!"))

        body = await services.service.chat("hi")

        history = body["conversation"]["chatHistory"]
        assert body["conversationId"].startswith("c_")
        assert body["response"] == "Hello there!"
        assert body["model"] == "mock"
        assert body["usage"] == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
        assert [(m["role"], m["content"]) for m in history] == [("user", "hi"), ("assistant", "Hello there!")]
        assert history[1]["model"] == "mock"
        assert history[1]["provider"] == "mock"

    @pytest.mark.asyncio
    async def test_chat_persists_tool_round(self, services, scripted):
        """Test that tool rounds are persisted before the final reply."""
        from providers.mock import ScriptedReply

        scripted.add_reply(ScriptedReply(tool_calls=[ToolCall(id="call_1", name="web_search", args={"query": "x"})]))
        scripted.add_reply(ScriptedReply(text="Found it."))

        body = await services.service.chat("search x")

        conversation = await services.store.get(body["conversationId"])
        roles = [m.role for m in conversation.messages]
        assert roles == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL, MessageRole.ASSISTANT]
        assert conversation.messages[1].tool_calls == [ToolCall(id="call_1", name="web_search", args={"query": "x"})]
        assert conversation.messages[2].tool_name == "web_search"
        assert conversation.messages[2].tool_call_id == "call_1"
        assert conversation.messages[3].content == "Found it."
        assert body["usage"]["total_tokens"] == 30

    @pytest.mark.asyncio
    async def test_chat_continues_conversation(self, services, scripted):
        """Test that an existing conversation keeps its history."""
        from providers.mock import ScriptedReply

        scripted.add_reply(ScriptedReply(text="One."))
        scripted.add_reply(ScriptedReply(text="Two."))

        first = await services.service.chat("first")
        second = await services.service.chat("second", conversation_id=first["conversationId"])

        assert second["conversationId"] == first["conversationId"]
        assert len(second["conversation"]["chatHistory"]) == 4
        sent = [m["content"] for m in scripted.call_history[-1]["messages"] if m["role"] != "system"]
        assert sent == ["first", "One.", "second"]

    @pytest.mark.asyncio
    async def test_chat_requires_message(self, services):
        """Test that an empty message is rejected before anything is stored."""
        from shared.errors import MissingInput

        with pytest.raises(MissingInput):
            await services.service.chat("   ")

        assert (await services.store.stats())["conversations"] == 0

    @pytest.mark.asyncio
    async def test_chat_unknown_conversation(self, services):
        """Test chatting into a conversation that does not exist."""
        from shared.errors import ConversationNotFound

        with pytest.raises(ConversationNotFound):
            await services.service.chat("hi", conversation_id="c_missing")

    @pytest.mark.asyncio
    async def test_chat_provider_failure_keeps_user_message(self, services, scripted):
        """Test that a failed turn persists only the user message."""
        from providers.mock import ScriptedReply
        from shared.errors import ProviderError

        conversation_id = await services.service.create_conversation()
        scripted.add_reply(ScriptedReply(error="upstream down"))

        with pytest.raises(ProviderError):
            await services.service.chat("hi", conversation_id=conversation_id)

        conversation = await services.store.get(conversation_id)
        assert [(m.role, m.content) for m in conversation.messages] == [(MessageRole.USER, "hi")]

    @pytest.mark.asyncio
    async def test_list_and_delete(self, services):
        """Test listing with pagination and deleting."""
        from shared.errors import ConversationNotFound

        ids = [await services.service.create_conversation() for _ in range(3)]

        listing = await services.service.list_conversations(limit=2, offset=0)
        assert len(listing["conversations"]) == 2
        assert listing["pagination"] == {"limit": 2, "offset": 0, "total": 3, "hasMore": True}

        await services.service.delete_conversation(ids[0])
        with pytest.raises(ConversationNotFound):
            await services.service.delete_conversation(ids[0])
        with pytest.raises(ConversationNotFound):
            await services.service.get_transcript(ids[0])


class TestChatServiceStreaming:
    """Tests for streamed turns."""

    @pytest.mark.asyncio
    async def test_stream_events(self, services, scripted):
        """Test the event sequence of a streamed turn."""
        from providers.mock import ScriptedReply

        scripted.add_reply(ScriptedReply(text=["Hel", "lo"]))

        handle = await services.service.open_stream("hi")
        events = await read_all(handle)

        assert [e.type for e in events] == ["init", "token", "token", "done"]
        assert events[0].conversationId == handle.conversation_id
        assert [e.token for e in events[1:3]] == ["Hel", "lo"]
        done = events[-1]
        assert done.text == "Hello"
        assert done.conversation["chatHistory"][-1]["content"] == "Hello"

    @pytest.mark.asyncio
    async def test_stream_tool_events(self, services, scripted):
        """Test tool_call and tool_result events in a streamed turn."""
        from providers.mock import ScriptedReply

        scripted.add_reply(ScriptedReply(tool_calls=[ToolCall(id="call_1", name="web_search", args={"query": "x"})]))
        scripted.add_reply(ScriptedReply(text="Done."))

        events = await read_all(await services.service.open_stream("search"))

        assert [e.type for e in events] == ["init", "tool_call", "tool_result", "token", "done"]
        assert events[2].result == {"results": [{"url": "https://example.com", "title": "x"}]}

    @pytest.mark.asyncio
    async def test_stream_provider_failure(self, services, scripted):
        """Test that a failing provider yields an error event and discards partial text."""
        from providers.mock import ScriptedReply

        scripted.add_reply(ScriptedReply(text=["partial ", "answer"], error="connection reset"))

        handle = await services.service.open_stream("hi")
        events = await read_all(handle)

        assert events[-1].type == "error"
        assert events[-1].error == "Provider error"
        assert events[-1].details == "connection reset"
        conversation = await services.store.get(handle.conversation_id)
        assert [(m.role, m.content) for m in conversation.messages] == [(MessageRole.USER, "hi")]

    @pytest.mark.asyncio
    async def test_stream_requires_message(self, services):
        """Test validation happens before the stream opens."""
        from shared.errors import MissingInput

        with pytest.raises(MissingInput):
            await services.service.open_stream(None)

    @pytest.mark.asyncio
    async def test_disconnect_still_persists_reply(self, services, scripted):
        """Test that abandoning the stream does not abandon the turn."""
        from providers.mock import ScriptedReply

        scripted.gate = asyncio.Event()
        scripted.add_reply(ScriptedReply(text=["The answer ", "is ", "42."]))

        handle = await services.service.open_stream("question")
        events = handle.events()
        assert (await events.__anext__()).type == "init"
        assert (await events.__anext__()).token == "The answer "
        await events.aclose()

        scripted.gate.set()
        await services.service.drain(timeout=5)

        conversation = await services.store.get(handle.conversation_id)
        final = conversation.messages[-1]
        assert final.role == MessageRole.ASSISTANT
        assert final.content == "The answer is 42."
        assert services.service.in_flight == 0


class TestRegenerate:
    """Tests for refresh / regenerate."""

    @pytest.mark.asyncio
    async def test_refresh_requires_assistant_reply(self, services):
        """Test that refresh is rejected when the last message is from the user."""
        from shared.errors import MissingInput
        from shared.models import Message

        conversation_id = await services.service.create_conversation()
        await services.store.append(conversation_id, Message(role=MessageRole.USER, content="hi"))

        with pytest.raises(MissingInput):
            await services.service.open_refresh(conversation_id)

        conversation = await services.store.get(conversation_id)
        assert [m.content for m in conversation.messages] == ["hi"]

    @pytest.mark.asyncio
    async def test_refresh_unknown_conversation(self, services):
        """Test refreshing a conversation that does not exist."""
        from shared.errors import ConversationNotFound

        with pytest.raises(ConversationNotFound):
            await services.service.open_refresh("c_missing")

    @pytest.mark.asyncio
    async def test_refresh_replaces_last_turn_output(self, services, scripted):
        """Test that the tool round and reply of the last turn are regenerated."""
        from providers.mock import ScriptedReply

        scripted.add_reply(ScriptedReply(tool_calls=[ToolCall(id="call_1", name="web_search", args={"query": "x"})]))
        scripted.add_reply(ScriptedReply(text="First answer."))
        body = await services.service.chat("question")
        conversation_id = body["conversationId"]

        scripted.add_reply(ScriptedReply(text=["Second ", "answer."]))
        handle = await services.service.open_refresh(conversation_id)
        events = await read_all(handle)

        assert events[-1].type == "done"
        conversation = await services.store.get(conversation_id)
        assert [(m.role, m.content) for m in conversation.messages] == [
            (MessageRole.USER, "question"),
            (MessageRole.ASSISTANT, "Second answer."),
        ]
        sent = scripted.call_history[-1]["messages"]
        assert sent[-1] == {"role": "user", "content": "question"}

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_reply(self, services, scripted):
        """Test that a provider failure during refresh leaves the transcript unchanged."""
        from providers.mock import ScriptedReply

        scripted.add_reply(ScriptedReply(text="First answer."))
        conversation_id = (await services.service.chat("question"))["conversationId"]
        scripted.add_reply(ScriptedReply(text=["Sec"], error="upstream down"))

        events = await read_all(await services.service.open_refresh(conversation_id))

        assert events[-1].type == "error"
        assert events[-1].details == "upstream down"
        conversation = await services.store.get(conversation_id)
        assert [(m.role, m.content) for m in conversation.messages] == [
            (MessageRole.USER, "question"),
            (MessageRole.ASSISTANT, "First answer."),
        ]

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_keep_user_message(self, services, scripted):
        """Test that two overlapping refreshes replace the reply once each, in turn."""
        from providers.mock import ScriptedReply

        scripted.add_reply(ScriptedReply(text="First answer."))
        conversation_id = (await services.service.chat("question"))["conversationId"]
        scripted.add_reply(ScriptedReply(text="Answer A."))
        scripted.add_reply(ScriptedReply(text="Answer B."))

        handles = await asyncio.gather(
            services.service.open_refresh(conversation_id),
            services.service.open_refresh(conversation_id),
        )
        results = await asyncio.gather(*(read_all(h) for h in handles))

        assert [events[-1].type for events in results] == ["done", "done"]
        conversation = await services.store.get(conversation_id)
        assert [m.role for m in conversation.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert conversation.messages[0].content == "question"
        assert conversation.messages[1].content in ("Answer A.", "Answer B.")
        stored = await services.store.db.get_conversation(conversation_id)
        assert [m.content for m in stored.messages] == [m.content for m in conversation.messages]

    @pytest.mark.asyncio
    async def test_refresh_conflicts_with_newer_message(self, services, scripted):
        """Test that a refresh does not overwrite a conversation that moved on meanwhile."""
        from providers.mock import ScriptedReply
        from shared.models import Message

        scripted.add_reply(ScriptedReply(text="First answer."))
        conversation_id = (await services.service.chat("question"))["conversationId"]

        scripted.gate = asyncio.Event()
        scripted.add_reply(ScriptedReply(text=["Late ", "answer."]))
        handle = await services.service.open_refresh(conversation_id)
        events = handle.events()
        assert (await events.__anext__()).type == "init"
        assert (await events.__anext__()).token == "Late "

        await services.store.append(conversation_id, Message(role=MessageRole.USER, content="follow-up"))
        scripted.gate.set()
        rest = [event async for event in events]

        assert rest[-1].type == "error"
        assert rest[-1].error == "Conversation changed"
        conversation = await services.store.get(conversation_id)
        assert [m.content for m in conversation.messages] == ["question", "First answer.", "follow-up"]


class TestConcurrentTurns:
    """Tests for turns racing on one conversation."""

    @pytest.mark.asyncio
    async def test_concurrent_chats_persist_every_message(self, services, scripted):
        """Test that overlapping turns on one conversation lose no writes."""
        from providers.mock import ScriptedReply

        conversation_id = await services.service.create_conversation()
        for i in range(5):
            scripted.add_reply(ScriptedReply(text=f"reply {i}"))

        await asyncio.gather(*(
            services.service.chat(f"message {i}", conversation_id=conversation_id) for i in range(5)
        ))

        conversation = await services.store.get(conversation_id)
        stored = await services.store.db.get_conversation(conversation_id)
        assert len(conversation.messages) == 10
        assert [m.content for m in stored.messages] == [m.content for m in conversation.messages]
        assert sorted(m.content for m in conversation.messages if m.role == MessageRole.USER) == [
            f"message {i}" for i in range(5)
        ]
