"""
Chat API Models
===============

Pydantic models for the chat endpoints. They validate the HTTP body only;
identity comes from headers (see dependencies.py) and the orchestrator works
on `ChatRequest`.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.core.config.constants import RequestPriority


class ChatStreamRequestModel(BaseModel):
    """
    Body of POST /chat/stream.

    Example:
        {"query": "What is our leave policy?", "conversation_id": null, "priority": "normal"}
    """

    query: str = Field(..., min_length=1, max_length=100000, description="User message")
    conversation_id: str | None = Field(
        default=None, max_length=128, description="Conversation to continue; resolved per user when omitted"
    )
    priority: RequestPriority = Field(default=RequestPriority.NORMAL, description="Admission priority")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Query cannot be empty or whitespace only")
        return v

    @field_validator("conversation_id")
    @classmethod
    def blank_conversation_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class ChatErrorResponse(BaseModel):
    """JSON error returned when a chat fails before streaming started."""

    error: str
    code: str
    message: str
    thread_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class ConversationInvalidateResponse(BaseModel):
    user_id: str
    invalidated: bool
