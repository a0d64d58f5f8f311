"""Tests for the per-chat stream id log."""

import pytest
from sqlalchemy.exc import IntegrityError

from deepsearch.schemas.chat import ChatMessageIn
from deepsearch.services.chat_store import ChatStore
from deepsearch.services.stream_registry import StreamRegistry


@pytest.fixture
async def chats(session_maker, clock):
    store = ChatStore(session_maker, clock=clock)
    for chat_id in ("c1", "c2"):
        await store.upsert(
            user_id="u1",
            chat_id=chat_id,
            title=chat_id,
            messages=[ChatMessageIn(role="user", content="hi")],
        )
    return store


class TestStreamRegistry:
    async def test_newest_stream_first(self, session_maker, clock, chats):
        registry = StreamRegistry(session_maker, clock=clock)

        await registry.append_stream("c1", "s1")
        await registry.append_stream("c1", "s2")

        streams = await registry.get_stream_ids("c1")
        assert streams.stream_ids == ["s2", "s1"]
        assert streams.most_recent_stream_id == "s2"

    async def test_no_streams(self, session_maker):
        streams = await StreamRegistry(session_maker).get_stream_ids("c1")

        assert streams.stream_ids == []
        assert streams.most_recent_stream_id is None

    async def test_streams_are_scoped_to_chat(self, session_maker, clock, chats):
        registry = StreamRegistry(session_maker, clock=clock)

        await registry.append_stream("c1", "s1")
        await registry.append_stream("c2", "s2")

        assert (await registry.get_stream_ids("c1")).stream_ids == ["s1"]
        assert (await registry.get_stream_ids("c2")).stream_ids == ["s2"]

    async def test_stream_requires_existing_chat(self, session_maker, clock):
        registry = StreamRegistry(session_maker, clock=clock)

        with pytest.raises(IntegrityError):
            await registry.append_stream("missing", "s1")
