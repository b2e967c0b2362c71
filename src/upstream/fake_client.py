"""
Fake upstream client for local development and tests.

Without a script it simulates a streamed answer with realistic latency, the
way a Coze bot would answer. With a script it replays exactly what it was
given, which lets tests drive every branch of the relay deterministically:

    client = FakeUpstreamClient(
        script=[delta("Hel"), delta("lo wor"), delta("ld"), completed("Hello world!"), terminal()],
        open_failures=[UpstreamHTTPError("busy", status_code=503)],
    )
"""

import asyncio
import random
from collections.abc import AsyncIterator, Callable
from typing import Any

from src.core.config.constants import MESSAGE_TYPE_ANSWER, MESSAGE_TYPE_FOLLOW_UP
from src.core.logging import get_logger
from src.upstream.base_client import (
    ChatStreamOptions,
    ConversationOptions,
    UpstreamClient,
    UpstreamEvent,
    UpstreamEventKind,
    VariableOptions,
)

logger = get_logger(__name__)


# Script helpers
def delta(content: str, message_type: str = MESSAGE_TYPE_ANSWER, message_id: str = "msg-1") -> UpstreamEvent:
    return UpstreamEvent(kind=UpstreamEventKind.DELTA, content=content, message_type=message_type, message_id=message_id)


def completed(content: str, message_type: str = MESSAGE_TYPE_ANSWER, message_id: str = "msg-1") -> UpstreamEvent:
    return UpstreamEvent(
        kind=UpstreamEventKind.COMPLETED, content=content, message_type=message_type, message_id=message_id
    )


def follow_up(*questions: str) -> UpstreamEvent:
    return UpstreamEvent(
        kind=UpstreamEventKind.COMPLETED,
        content="\n".join(questions),
        message_type=MESSAGE_TYPE_FOLLOW_UP,
        message_id="msg-follow-up",
        follow_ups=list(questions),
    )


def session_completed(conversation_id: str = "conv-1", chat_id: str = "chat-1") -> UpstreamEvent:
    return UpstreamEvent(kind=UpstreamEventKind.SESSION_COMPLETED, conversation_id=conversation_id, chat_id=chat_id)


def terminal() -> UpstreamEvent:
    return UpstreamEvent(kind=UpstreamEventKind.TERMINAL)


def error(message: str = "upstream error", code: int | None = None) -> UpstreamEvent:
    return UpstreamEvent(kind=UpstreamEventKind.ERROR, error={"code": code, "message": message})


class FakeUpstreamClient(UpstreamClient):
    """
    In-memory upstream.

    Attributes:
        calls: names of every operation invoked, in order
        variables: per-client variable store used by get/set_variables
    """

    name = "fake"

    def __init__(
        self,
        script: list[UpstreamEvent] | Callable[[ChatStreamOptions], list[UpstreamEvent]] | None = None,
        open_failures: list[BaseException] | None = None,
        existing_conversations: dict[str, list[str]] | None = None,
        event_delay: float = 0.0,
        create_delay: float = 0.0,
    ):
        self.script = script
        self.open_failures = list(open_failures or [])
        self.conversations: dict[str, list[str]] = {
            k: list(v) for k, v in (existing_conversations or {}).items()
        }
        self.variables: dict[str, dict[str, str]] = {}
        self.event_delay = event_delay
        self.create_delay = create_delay
        self.calls: list[str] = []
        self.closed = False
        self._counter = 0

        # Simulation settings (unscripted mode)
        self.min_latency = 0.05
        self.max_latency = 0.15

    async def create_conversation(self, opts: ConversationOptions) -> str:
        self.calls.append("create_conversation")
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        self._counter += 1
        conversation_id = f"conv-{opts.client_id}-{self._counter}"
        self.conversations.setdefault(opts.client_id, []).insert(0, conversation_id)
        return conversation_id

    async def list_recent_conversations(self, opts: ConversationOptions) -> list[str]:
        self.calls.append("list_recent_conversations")
        return self.conversations.get(opts.client_id, [])[: opts.page_size]

    async def open_chat_stream(self, opts: ChatStreamOptions) -> AsyncIterator[UpstreamEvent]:
        self.calls.append("open_chat_stream")
        if self.open_failures:
            raise self.open_failures.pop(0)

        if self.script is None:
            events = self._simulate(opts)
        elif callable(self.script):
            events = self.script(opts)
        else:
            events = list(self.script)
        return self._replay(events, opts)

    async def _replay(self, events: list[UpstreamEvent], opts: ChatStreamOptions) -> AsyncIterator[UpstreamEvent]:
        for event in events:
            if self.event_delay:
                await asyncio.sleep(self.event_delay)
            elif self.script is None:
                await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))
            if event.conversation_id is None:
                event.conversation_id = opts.conversation_id
            yield event

    def _simulate(self, opts: ChatStreamOptions) -> list[UpstreamEvent]:
        """Echo-style answer split into small token-like chunks."""
        text = f"You asked: {opts.query}. This is a simulated answer from the development upstream."
        events: list[UpstreamEvent] = []
        i = 0
        while i < len(text):
            size = random.randint(2, 6)
            events.append(delta(text[i : i + size]))
            i += size
        events.append(completed(text))
        events.append(session_completed(opts.conversation_id, f"chat-{self._counter}"))
        events.append(terminal())
        return events

    async def get_variables(self, names: list[str], opts: VariableOptions) -> dict[str, str]:
        self.calls.append("get_variables")
        store = self.variables.get(opts.client_id, {})
        return {name: store[name] for name in names if name in store}

    async def set_variables(self, values: dict[str, str], opts: VariableOptions) -> bool:
        self.calls.append("set_variables")
        self.variables.setdefault(opts.client_id, {}).update(values)
        return True

    async def aclose(self) -> None:
        self.closed = True

    def get_stats(self) -> dict[str, Any]:
        return {"provider": self.name, "calls": len(self.calls)}
