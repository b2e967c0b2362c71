#!/usr/bin/env python3
"""
Coze Upstream Client Implementation

This module implements the upstream contract against the Coze open API:

    POST /v1/conversation/create     create a conversation
    GET  /v1/conversations           list a client's conversations (newest first)
    POST /v3/chat                    streamed chat turn (Server-Sent Events)
    GET  /v1/variables               read client-scoped bot variables
    PUT  /v1/variables               write client-scoped bot variables

Every JSON response is an envelope ``{"code": int, "msg": str, "data": ...}``;
a non-zero code is an error even on HTTP 200.

Architectural Decision: httpx.AsyncClient with a pooled connection limit
- One client per process, closed in the application lifespan
- `send(..., stream=True)` so the opening status is validated before any
  event is consumed (opening failures are retryable, mid-stream ones are not)
- orjson for envelope and event payload decoding

Author: Senior Solution Architect
Date: 2025-12-05
"""

from collections.abc import AsyncIterator
from typing import Any

import httpx
import orjson

from src.core.config.constants import (
    COZE_EVENT_CHAT_COMPLETED,
    COZE_EVENT_CHAT_FAILED,
    COZE_EVENT_DONE,
    COZE_EVENT_ERROR,
    COZE_EVENT_MESSAGE_COMPLETED,
    COZE_EVENT_MESSAGE_DELTA,
    MESSAGE_TYPE_FOLLOW_UP,
)
from src.core.config.settings import get_settings
from src.core.exceptions import (
    ConfigurationError,
    UpstreamHTTPError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from src.core.logging.logger import get_logger
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector
from src.upstream.base_client import (
    ChatStreamOptions,
    ConversationOptions,
    UpstreamClient,
    UpstreamEvent,
    UpstreamEventKind,
    VariableOptions,
)

logger = get_logger(__name__)


def parse_follow_up_content(content: str | None) -> list[str]:
    """
    Extract follow-up questions from a follow_up message body.

    The body is either JSON carrying ``follow_up_questions`` (list or string)
    or plain text with one question per line.
    """
    if not content or not content.strip():
        return []

    try:
        parsed = orjson.loads(content)
    except orjson.JSONDecodeError:
        parsed = None

    if isinstance(parsed, dict) and "follow_up_questions" in parsed:
        questions = parsed["follow_up_questions"]
        if isinstance(questions, str):
            questions = [questions]
        return [str(q).strip() for q in questions if str(q).strip()]

    return [line.strip() for line in content.split("\n") if line.strip()]


class CozeUpstreamClient(UpstreamClient):
    """
    Concrete implementation of the Coze upstream.

    STAGE-COZE: Coze API operations
    """

    name = "coze"

    def __init__(
        self,
        base_url: str | None = None,
        bot_id: str | None = None,
        connector_id: str | None = None,
        default_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: MetricsCollector | None = None,
    ):
        settings = get_settings().upstream
        self.base_url = (base_url or settings.COZE_BASE_URL).rstrip("/")
        self.bot_id = bot_id or settings.COZE_BOT_ID
        self.connector_id = connector_id or settings.COZE_CONNECTOR_ID
        self.default_token = default_token or settings.COZE_ACCESS_TOKEN
        self._metrics = metrics or get_metrics_collector()

        if not self.bot_id:
            raise ConfigurationError(
                "COZE_BOT_ID is required for the Coze upstream",
                details={"setting": "COZE_BOT_ID"},
            )

        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(settings.COZE_TIMEOUT, connect=settings.COZE_CONNECT_TIMEOUT),
            limits=httpx.Limits(max_connections=settings.COZE_MAX_CONNECTIONS),
        )

        logger.info(
            "Coze client initialized",
            stage="COZE.0",
            base_url=self.base_url,
            connector_id=self.connector_id,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _headers(self, token: str | None) -> dict[str, str]:
        token = token or self.default_token
        if not token:
            raise ConfigurationError(
                "No upstream access token supplied",
                details={"setting": "COZE_ACCESS_TOKEN"},
            )
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _decode(raw: bytes, operation: str) -> Any:
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise UpstreamResponseError.from_exception(
                e, message=f"Upstream returned non-JSON body for {operation}", operation=operation
            ) from e

    def _unwrap(self, response: httpx.Response, operation: str) -> Any:
        """Validate status and envelope, return ``data``."""
        if response.status_code >= 400:
            code = None
            message = response.reason_phrase
            try:
                body = orjson.loads(response.content)
                if isinstance(body, dict):
                    code = body.get("code")
                    message = body.get("msg") or message
            except orjson.JSONDecodeError:
                pass
            raise UpstreamHTTPError(
                f"{operation} failed: {message}",
                status_code=response.status_code,
                code=code,
                details={"operation": operation},
            )

        payload = self._decode(response.content, operation)
        if not isinstance(payload, dict):
            raise UpstreamResponseError(
                f"Unexpected {operation} response shape", details={"operation": operation}
            )
        if payload.get("code", 0) != 0:
            raise UpstreamHTTPError(
                f"{operation} failed: {payload.get('msg') or 'unknown error'}",
                status_code=response.status_code,
                code=payload.get("code"),
                details={"operation": operation},
            )
        return payload.get("data")

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        token: str | None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=self._headers(token)
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError.from_exception(e, operation=operation) from e
        return self._unwrap(response, operation)

    # =========================================================================
    # Conversations
    # =========================================================================

    async def create_conversation(self, opts: ConversationOptions) -> str:
        body: dict[str, Any] = {"bot_id": self.bot_id, "connector_id": self.connector_id}
        if opts.name:
            body["name"] = opts.name

        data = await self._request(
            "POST", "/v1/conversation/create", "create_conversation", opts.access_token, json=body
        )
        conversation_id = (data or {}).get("id")
        if not conversation_id:
            raise UpstreamResponseError(
                "Conversation created without an id", details={"operation": "create_conversation"}
            )

        logger.info("Conversation created", stage="COZE.1", client_id=opts.client_id, conversation_id=conversation_id)
        return str(conversation_id)

    async def list_recent_conversations(self, opts: ConversationOptions) -> list[str]:
        params = {
            "bot_id": self.bot_id,
            "page_num": 1,
            "page_size": opts.page_size,
            "sort_order": "desc",
            "connector_id": self.connector_id,
        }
        data = await self._request(
            "GET", "/v1/conversations", "list_conversations", opts.access_token, params=params
        )
        conversations = (data or {}).get("conversations") or []
        return [str(c["id"]) for c in conversations if isinstance(c, dict) and c.get("id")]

    # =========================================================================
    # Chat stream
    # =========================================================================

    async def open_chat_stream(self, opts: ChatStreamOptions) -> AsyncIterator[UpstreamEvent]:
        body = {
            "bot_id": self.bot_id,
            "user_id": opts.client_id,
            "stream": True,
            "auto_save_history": opts.auto_save_history,
            "additional_messages": [
                {"role": "user", "content": opts.query, "content_type": "text"}
            ],
        }
        request = self._client.build_request(
            "POST",
            "/v3/chat",
            params={"conversation_id": opts.conversation_id},
            json=body,
            headers=self._headers(opts.access_token),
        )

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError.from_exception(e, operation="chat_stream") from e

        content_type = response.headers.get("content-type", "")
        if response.status_code >= 400 or content_type.startswith("application/json"):
            # Errors come back as a JSON envelope instead of an event stream
            try:
                await response.aread()
            finally:
                await response.aclose()
            self._unwrap(response, "chat_stream")
            raise UpstreamResponseError(
                "Chat stream answered with JSON instead of events",
                details={"operation": "chat_stream"},
            )

        logger.info(
            "Chat stream opened",
            stage="COZE.2",
            client_id=opts.client_id,
            conversation_id=opts.conversation_id,
        )
        return self._iter_events(response)

    async def _iter_events(self, response: httpx.Response) -> AsyncIterator[UpstreamEvent]:
        event_name = ""
        data_lines: list[str] = []
        try:
            async for raw_line in response.aiter_lines():
                line = raw_line.rstrip("\r")
                if line.startswith("event:"):
                    event_name = line.split(":", 1)[1].strip()
                elif line.startswith("data:"):
                    data_lines.append(line.split(":", 1)[1].strip())
                elif line == "":
                    if not event_name and not data_lines:
                        continue
                    event = self._parse_event(event_name, "\n".join(data_lines))
                    event_name, data_lines = "", []
                    if event is None:
                        continue
                    yield event
                    if event.kind == UpstreamEventKind.TERMINAL:
                        return

            # Stream ended without a blank line after the last event
            if event_name or data_lines:
                event = self._parse_event(event_name, "\n".join(data_lines))
                if event is not None:
                    yield event
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError.from_exception(e, operation="chat_stream") from e
        finally:
            await response.aclose()

    def _parse_event(self, event_name: str, data: str) -> UpstreamEvent | None:
        """Map one Coze event onto an UpstreamEvent; None for skipped events."""
        if event_name == COZE_EVENT_DONE:
            return UpstreamEvent(kind=UpstreamEventKind.TERMINAL)

        if event_name not in (
            COZE_EVENT_MESSAGE_DELTA,
            COZE_EVENT_MESSAGE_COMPLETED,
            COZE_EVENT_CHAT_COMPLETED,
            COZE_EVENT_CHAT_FAILED,
            COZE_EVENT_ERROR,
        ):
            return None

        try:
            payload = orjson.loads(data)
        except orjson.JSONDecodeError:
            logger.warning("Skipping malformed upstream event", upstream_event=event_name, data_preview=data[:200])
            self._metrics.record_malformed_event()
            return None
        if not isinstance(payload, dict):
            logger.warning("Skipping upstream event with non-object payload", upstream_event=event_name)
            self._metrics.record_malformed_event()
            return None

        if event_name == COZE_EVENT_MESSAGE_DELTA:
            return UpstreamEvent(
                kind=UpstreamEventKind.DELTA,
                content=payload.get("content") or "",
                message_type=payload.get("type"),
                message_id=payload.get("id"),
                conversation_id=payload.get("conversation_id"),
                chat_id=payload.get("chat_id"),
            )

        if event_name == COZE_EVENT_MESSAGE_COMPLETED:
            message_type = payload.get("type")
            content = payload.get("content") or ""
            return UpstreamEvent(
                kind=UpstreamEventKind.COMPLETED,
                content=content,
                message_type=message_type,
                message_id=payload.get("id"),
                conversation_id=payload.get("conversation_id"),
                chat_id=payload.get("chat_id"),
                follow_ups=parse_follow_up_content(content) if message_type == MESSAGE_TYPE_FOLLOW_UP else [],
            )

        if event_name == COZE_EVENT_CHAT_COMPLETED:
            return UpstreamEvent(
                kind=UpstreamEventKind.SESSION_COMPLETED,
                conversation_id=payload.get("conversation_id"),
                chat_id=payload.get("id"),
            )

        # chat.failed carries last_error, error carries code/msg at the top level
        error = payload.get("last_error") if event_name == COZE_EVENT_CHAT_FAILED else payload
        error = error if isinstance(error, dict) else {}
        return UpstreamEvent(
            kind=UpstreamEventKind.ERROR,
            conversation_id=payload.get("conversation_id"),
            chat_id=payload.get("id") if event_name == COZE_EVENT_CHAT_FAILED else None,
            error={"code": error.get("code"), "message": error.get("msg") or "upstream error"},
        )

    # =========================================================================
    # Variables
    # =========================================================================

    async def get_variables(self, names: list[str], opts: VariableOptions) -> dict[str, str]:
        params = {
            "bot_id": self.bot_id,
            "connector_id": self.connector_id,
            "connector_uid": opts.client_id,
            "keywords": ",".join(names),
        }
        data = await self._request("GET", "/v1/variables", "get_variables", opts.access_token, params=params)
        items = (data or {}).get("items") or []
        return {
            str(item["keyword"]): str(item.get("value") or "")
            for item in items
            if isinstance(item, dict) and item.get("keyword")
        }

    async def set_variables(self, values: dict[str, str], opts: VariableOptions) -> bool:
        body = {
            "bot_id": self.bot_id,
            "connector_id": self.connector_id,
            "connector_uid": opts.client_id,
            "data": [{"keyword": k, "value": v} for k, v in values.items()],
        }
        await self._request("PUT", "/v1/variables", "set_variables", opts.access_token, json=body)
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
        logger.info("Coze client closed", stage="COZE.9")
