#!/usr/bin/env python3
"""
Conversation Affinity Cache

Maps each client identity to one upstream conversation handle so multi-turn
context survives across requests without paying for a new upstream session
every time.

Resolution order for a client with no cached handle:

    1. discover: list the client's most recent upstream conversation
       (page size 1, newest first) and adopt it
    2. create:   otherwise create one named "<client_id>_<YYYY-MM-DD>"

Both upstream calls go through ResilientCall (retry + circuit breaker).

Concurrency:
    - resolution for one client runs under that client's asyncio.Lock and
      re-checks the cache after acquiring it, so concurrent first requests
      produce exactly one upstream creation
    - the upstream work runs as its own task awaited through asyncio.shield:
      a caller that is cancelled (client disconnect) does not cancel an
      in-flight creation, the handle is still cached, and the next caller
      joins the pending task instead of starting another one

Entries are never force-expired; `invalidate()` removes one explicitly.

Author: System Architect
Date: 2025-12-08
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from src.core.config.constants import OPERATION_CREATE_CONVERSATION, OPERATION_LIST_CONVERSATIONS
from src.core.config.settings import get_settings
from src.core.exceptions import CircuitBreakerOpenError
from src.core.logging.logger import get_logger, log_stage
from src.core.resilience.circuit_breaker import (
    CircuitBreakerManager,
    ResilientCall,
    get_circuit_breaker_manager,
)
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector
from src.upstream.base_client import ConversationOptions, UpstreamClient

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConversationEntry:
    """
    Cached conversation handle for one client.

    Attributes:
        conversation_id: Upstream conversation handle
        source: How the handle was obtained (discovered, created, adopted)
        created_at: When the entry was cached
        last_access: Last time the entry was returned
        access_count: Number of times the entry was returned
    """

    conversation_id: str
    source: str
    created_at: datetime = field(default_factory=_utc_now)
    last_access: datetime = field(default_factory=_utc_now)
    access_count: int = 0

    def touch(self) -> None:
        self.last_access = _utc_now()
        self.access_count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "source": self.source,
            "created_at": self.created_at.isoformat(),
            "last_access": self.last_access.isoformat(),
            "access_count": self.access_count,
        }


class ConversationAffinityCache:
    """
    Per-client conversation handle cache.

    STAGE-2: Conversation resolution

    Usage:
        cache = ConversationAffinityCache(upstream_client)
        conversation_id = await cache.resolve("u-1", access_token)
    """

    def __init__(
        self,
        client: UpstreamClient,
        discover_existing: bool | None = None,
        name_template: str | None = None,
        breaker_manager: CircuitBreakerManager | None = None,
        metrics: MetricsCollector | None = None,
        list_call: ResilientCall | None = None,
        create_call: ResilientCall | None = None,
    ):
        settings = get_settings().conversation
        self._client = client
        self.discover_existing = (
            settings.CONVERSATION_DISCOVER_EXISTING if discover_existing is None else discover_existing
        )
        self.name_template = name_template or settings.CONVERSATION_NAME_TEMPLATE
        self._metrics = metrics or get_metrics_collector()

        manager = breaker_manager or get_circuit_breaker_manager()
        self._list_call = list_call or ResilientCall(
            OPERATION_LIST_CONVERSATIONS,
            breaker=manager.get_breaker(OPERATION_LIST_CONVERSATIONS),
            metrics=self._metrics,
        )
        self._create_call = create_call or ResilientCall(
            OPERATION_CREATE_CONVERSATION,
            breaker=manager.get_breaker(OPERATION_CREATE_CONVERSATION),
            metrics=self._metrics,
        )

        self._entries: dict[str, ConversationEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: dict[str, asyncio.Task] = {}

        self._stats = {
            "hits": 0,
            "misses": 0,
            "discovered": 0,
            "created": 0,
            "adopted": 0,
            "errors": 0,
        }

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve(
        self, client_id: str, access_token: str | None = None, thread_id: str | None = None
    ) -> str:
        """
        Return the client's conversation handle, discovering or creating it on a miss.

        Raises:
            UpstreamError / CircuitBreakerOpenError: when both discovery and
                creation could not produce a handle
        """
        entry = self._entries.get(client_id)
        if entry is not None:
            return self._hit(client_id, entry)

        lock = self._locks.setdefault(client_id, asyncio.Lock())
        async with lock:
            # Double-check: another request may have resolved it while we waited
            entry = self._entries.get(client_id)
            if entry is not None:
                return self._hit(client_id, entry)

            task = self._pending.get(client_id)
            if task is None:
                self._stats["misses"] += 1
                task = asyncio.create_task(self._establish(client_id, access_token, thread_id))
                self._pending[client_id] = task
                task.add_done_callback(lambda t, cid=client_id: self._on_established(cid, t))

            return await asyncio.shield(task)

    def _hit(self, client_id: str, entry: ConversationEntry) -> str:
        entry.touch()
        self._stats["hits"] += 1
        self._metrics.record_conversation_lookup("hit")
        logger.debug("Conversation cache hit", client_id=client_id, conversation_id=entry.conversation_id)
        return entry.conversation_id

    def _on_established(self, client_id: str, task: asyncio.Task) -> None:
        self._pending.pop(client_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._stats["errors"] += 1
            self._metrics.record_conversation_lookup("error")
            logger.error(
                "Conversation resolution failed",
                client_id=client_id,
                error=str(error),
                error_type=type(error).__name__,
            )

    async def _establish(self, client_id: str, access_token: str | None, thread_id: str | None) -> str:
        """Discover the newest upstream conversation or create one, then cache it."""
        if self.discover_existing:
            conversation_ids = await self._discover(client_id, access_token, thread_id)
            if conversation_ids:
                return self._store(client_id, conversation_ids[0], "discovered")

        name = self.name_template.format(client_id=client_id, date=date.today().isoformat())
        opts = ConversationOptions(client_id=client_id, access_token=access_token, name=name)
        conversation_id = await self._create_call.execute(
            lambda: self._client.create_conversation(opts),
            context={"client_id": client_id},
            thread_id=thread_id,
        )
        return self._store(client_id, conversation_id, "created")

    async def _discover(self, client_id: str, access_token: str | None, thread_id: str | None) -> list[str]:
        opts = ConversationOptions(client_id=client_id, access_token=access_token, page_size=1)

        async def no_conversations(error: BaseException, context: dict[str, Any]) -> list[str]:
            log_stage(
                logger, "2.1", "Conversation discovery failed, creating a new one",
                level="warning", error=str(error), **context,
            )
            return []

        try:
            return await self._list_call.execute(
                lambda: self._client.list_recent_conversations(opts),
                fallback=no_conversations,
                context={"client_id": client_id},
                thread_id=thread_id,
            )
        except CircuitBreakerOpenError:
            log_stage(logger, "2.1", "Discovery circuit open, creating a new conversation", level="warning", client_id=client_id)
            return []

    def _store(self, client_id: str, conversation_id: str, source: str) -> str:
        self._entries[client_id] = ConversationEntry(conversation_id=conversation_id, source=source)
        self._stats[source] += 1
        self._metrics.record_conversation_lookup(source)
        log_stage(
            logger, "2.2", "Conversation handle cached",
            client_id=client_id, conversation_id=conversation_id, source=source,
        )
        return conversation_id

    # =========================================================================
    # Management
    # =========================================================================

    def adopt(self, client_id: str, conversation_id: str) -> str:
        """
        Use a client-supplied handle for this request.

        It is cached only when the client has no cached handle yet; an existing
        entry is left untouched.
        """
        entry = self._entries.get(client_id)
        if entry is None:
            self._store(client_id, conversation_id, "adopted")
        elif entry.conversation_id == conversation_id:
            entry.touch()
        else:
            logger.debug(
                "Client supplied a different conversation than cached",
                client_id=client_id,
                supplied=conversation_id,
                cached=entry.conversation_id,
            )
        return conversation_id

    def invalidate(self, client_id: str) -> bool:
        removed = self._entries.pop(client_id, None)
        if removed is not None:
            logger.info("Conversation handle invalidated", client_id=client_id, conversation_id=removed.conversation_id)
        return removed is not None

    def get_entry(self, client_id: str) -> ConversationEntry | None:
        return self._entries.get(client_id)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def get_stats(self) -> dict[str, Any]:
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "size": len(self._entries),
            "pending": len(self._pending),
            "hit_rate": round(self._stats["hits"] / lookups, 3) if lookups else 0.0,
        }
