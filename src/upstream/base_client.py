#!/usr/bin/env python3
"""
Upstream Client Abstract Class

This module defines the contract the chat core relies on when talking to the
upstream conversational-AI provider. Concrete implementations (Coze over
HTTP, a scripted fake for development and tests) inherit from this class.

Architectural Decision: Abstract base class for a narrow provider seam
- The core pattern-matches only on `UpstreamEvent.kind` and `message_type`
- Provider-specific event names never leak past the client
- Option dataclasses keep call sites explicit about identity and token

Author: Senior Solution Architect
Date: 2025-12-05
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class UpstreamEventKind(str, Enum):
    """
    Normalized upstream event kinds.

    DELTA: incremental fragment of a message
    COMPLETED: a message finished (restates its full content)
    SESSION_COMPLETED: the chat turn finished (carries conversation/chat ids)
    TERMINAL: end of the event stream
    ERROR: upstream reported a failure mid-stream
    """

    DELTA = "delta"
    COMPLETED = "completed"
    SESSION_COMPLETED = "session-completed"
    TERMINAL = "terminal"
    ERROR = "error"


@dataclass
class UpstreamEvent:
    """
    One normalized event of an upstream chat stream.

    Attributes:
        kind: Normalized event kind
        content: Text fragment (delta) or full restatement (completed)
        message_type: "answer", "follow_up", "verbose", ...
        message_id: Upstream message identifier
        conversation_id: Conversation the event belongs to
        chat_id: Upstream chat (turn) identifier
        follow_ups: Follow-up questions carried by a follow_up message
        error: Error details for ERROR events
    """

    kind: UpstreamEventKind
    content: str | None = None
    message_type: str | None = None
    message_id: str | None = None
    conversation_id: str | None = None
    chat_id: str | None = None
    follow_ups: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None


@dataclass
class ConversationOptions:
    """Identity and naming for conversation lookup/creation."""

    client_id: str
    access_token: str | None = None
    name: str | None = None
    page_size: int = 1


@dataclass
class ChatStreamOptions:
    """Parameters of one streamed chat turn."""

    conversation_id: str
    client_id: str
    query: str
    access_token: str | None = None
    auto_save_history: bool = True


@dataclass
class VariableOptions:
    """Scope of a side-channel variable read/write."""

    client_id: str
    access_token: str | None = None


class UpstreamClient(ABC):
    """
    Abstract base class for upstream providers.

    STAGE-3: Upstream provider contract

    Subclasses must implement every operation below. Failures are reported
    with the `UpstreamError` hierarchy so the retry layer can classify them.

    Usage:
        client = CozeUpstreamClient()
        conversation_id = await client.create_conversation(ConversationOptions(client_id="u-1"))
        async for event in await client.open_chat_stream(opts):
            ...
    """

    name: str = "upstream"

    @abstractmethod
    async def create_conversation(self, opts: ConversationOptions) -> str:
        """Create a conversation and return its handle id."""

    @abstractmethod
    async def list_recent_conversations(self, opts: ConversationOptions) -> list[str]:
        """Return handle ids of the client's most recent conversations, newest first."""

    @abstractmethod
    async def open_chat_stream(self, opts: ChatStreamOptions) -> AsyncIterator[UpstreamEvent]:
        """
        Start a streamed chat turn.

        Awaiting this call performs the request and validates the response
        status, so opening failures surface here (and can be retried); the
        returned async iterator then yields normalized events.
        """

    @abstractmethod
    async def get_variables(self, names: list[str], opts: VariableOptions) -> dict[str, str]:
        """Read client-scoped variables by name."""

    @abstractmethod
    async def set_variables(self, values: dict[str, str], opts: VariableOptions) -> bool:
        """Write client-scoped variables; True on success."""

    async def aclose(self) -> None:
        """Release pooled connections."""
        return None
