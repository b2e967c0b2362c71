"""
Unit Tests for the scripted fake upstream and the client factory.
"""

import pytest

from src.core.exceptions import UpstreamHTTPError
from src.upstream import create_upstream_client
from src.upstream.base_client import (
    ChatStreamOptions,
    ConversationOptions,
    UpstreamEventKind,
    VariableOptions,
)
from src.upstream.fake_client import FakeUpstreamClient, completed, delta, terminal


@pytest.mark.unit
class TestFakeUpstreamClient:
    @pytest.mark.asyncio
    async def test_scripted_stream_replays_events(self):
        client = FakeUpstreamClient(script=[delta("Hi"), completed("Hi"), terminal()])

        events = await client.open_chat_stream(ChatStreamOptions(conversation_id="c-1", client_id="u-1", query="q"))
        collected = [event async for event in events]

        assert [e.kind for e in collected] == [
            UpstreamEventKind.DELTA,
            UpstreamEventKind.COMPLETED,
            UpstreamEventKind.TERMINAL,
        ]
        assert all(e.conversation_id == "c-1" for e in collected)

    @pytest.mark.asyncio
    async def test_open_failures_are_raised_in_order(self):
        client = FakeUpstreamClient(
            script=[terminal()], open_failures=[UpstreamHTTPError("busy", status_code=503)]
        )
        opts = ChatStreamOptions(conversation_id="c-1", client_id="u-1", query="q")

        with pytest.raises(UpstreamHTTPError):
            await client.open_chat_stream(opts)
        events = await client.open_chat_stream(opts)

        assert [e.kind async for e in events] == [UpstreamEventKind.TERMINAL]
        assert client.calls == ["open_chat_stream", "open_chat_stream"]

    @pytest.mark.asyncio
    async def test_created_conversation_is_listed_first(self):
        client = FakeUpstreamClient(existing_conversations={"u-1": ["conv-old"]})

        created = await client.create_conversation(ConversationOptions(client_id="u-1"))
        recent = await client.list_recent_conversations(ConversationOptions(client_id="u-1", page_size=1))

        assert recent == [created]

    @pytest.mark.asyncio
    async def test_variables_are_scoped_per_client(self):
        client = FakeUpstreamClient()
        await client.set_variables({"follow_up_q1": "Next?"}, VariableOptions(client_id="u-1"))

        assert await client.get_variables(["follow_up_q1"], VariableOptions(client_id="u-1")) == {
            "follow_up_q1": "Next?"
        }
        assert await client.get_variables(["follow_up_q1"], VariableOptions(client_id="u-2")) == {}


@pytest.mark.unit
class TestClientFactory:
    def test_fake_provider(self):
        assert isinstance(create_upstream_client("fake"), FakeUpstreamClient)
