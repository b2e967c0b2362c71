"""
Outbound frame models.

Every message the relay writes to a client is an OutboundFrame. Its wire
shape is a Server-Sent Event:

    id: <optional id>
    event: <kind>
    data: <JSON>

Every delta-answer carries the CUMULATIVE answer text, never a fragment, so a
client can always render the latest frame as-is.
"""

import uuid
from copy import deepcopy
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, Field, field_validator


class FrameKind(str, Enum):
    CONNECTED = "connected"
    DELTA_ANSWER = "delta-answer"
    FINAL_ANSWER = "final-answer"
    HEARTBEAT = "heartbeat"
    PROCESSING = "processing"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (FrameKind.FINAL_ANSWER, FrameKind.ERROR)


class OutboundFrame(BaseModel):
    """One SSE frame sent to the client transport."""

    model_config = {"frozen": True}

    kind: FrameKind
    data: Any
    id: str | None = None

    @field_validator("data", mode="before")
    @classmethod
    def copy_data(cls, v):
        """Ensure data is copied to prevent mutation of original reference."""
        if isinstance(v, dict | list):
            return deepcopy(v)
        return v

    @property
    def is_terminal(self) -> bool:
        return self.kind.is_terminal

    def format(self) -> str:
        """Format as SSE protocol string."""
        lines = []
        if self.id:
            lines.append(f"id: {self.id}")
        lines.append(f"event: {self.kind.value}")
        lines.append(f"data: {orjson.dumps(self.data).decode()}")
        return "\n".join(lines) + "\n\n"

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def connected(cls, session_id: str) -> "OutboundFrame":
        return cls(kind=FrameKind.CONNECTED, data={"session_id": session_id, "timestamp": utc_timestamp()})

    @classmethod
    def delta_answer(cls, answer: str, message_id: str | None = None) -> "OutboundFrame":
        return cls(kind=FrameKind.DELTA_ANSWER, data={"answer": answer, "message_id": message_id})

    @classmethod
    def heartbeat(cls, session_id: str) -> "OutboundFrame":
        return cls(
            kind=FrameKind.HEARTBEAT,
            data={"timestamp": utc_timestamp(), "status": "alive", "session_id": session_id},
        )

    @classmethod
    def processing(cls, session_id: str, elapsed_seconds: float) -> "OutboundFrame":
        return cls(
            kind=FrameKind.PROCESSING,
            data={"session_id": session_id, "status": "processing", "elapsed_seconds": round(elapsed_seconds, 1)},
        )

    @classmethod
    def final_answer(
        cls,
        answer: str,
        conversation_id: str | None,
        user_id: str,
        message_id: str | None,
        follow_up_questions: list[str],
        follow_up_source: str,
    ) -> "OutboundFrame":
        return cls(
            kind=FrameKind.FINAL_ANSWER,
            data={
                "answer": answer,
                "conversation_id": conversation_id,
                "user_id": user_id,
                "message_id": message_id,
                "follow_up_questions": follow_up_questions,
                "follow_up_source": follow_up_source,
            },
        )

    @classmethod
    def error(cls, code: str, message: str, details: dict[str, Any] | None = None) -> "OutboundFrame":
        return cls(
            kind=FrameKind.ERROR,
            data={"code": code, "message": message, "details": details or {}, "timestamp": utc_timestamp()},
        )


class FollowUpProvenance(str, Enum):
    FROM_STREAM = "from-stream"
    FROM_SIDE_CHANNEL = "from-side-channel"
    NONE = "none"


class FollowUpResult(BaseModel):
    """Suggested follow-up questions and where they came from."""

    model_config = {"frozen": True}

    questions: list[str] = Field(default_factory=list)
    provenance: FollowUpProvenance = FollowUpProvenance.NONE

    @classmethod
    def none(cls) -> "FollowUpResult":
        return cls()


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_session_id() -> str:
    return f"sess-{uuid.uuid4().hex[:16]}"
