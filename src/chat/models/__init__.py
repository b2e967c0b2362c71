from src.chat.models.chat_request import ChatRequest
from src.chat.models.frames import (
    FollowUpProvenance,
    FollowUpResult,
    FrameKind,
    OutboundFrame,
)

__all__ = [
    "ChatRequest",
    "FollowUpProvenance",
    "FollowUpResult",
    "FrameKind",
    "OutboundFrame",
]
