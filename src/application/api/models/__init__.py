from src.application.api.models.chat import (
    ChatErrorResponse,
    ChatStreamRequestModel,
    ConversationInvalidateResponse,
)

__all__ = [
    "ChatErrorResponse",
    "ChatStreamRequestModel",
    "ConversationInvalidateResponse",
]
