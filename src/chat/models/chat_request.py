import uuid

from pydantic import BaseModel, Field, field_validator

from src.core.config.constants import RequestPriority


class ChatRequest(BaseModel):
    """
    One chat turn submitted by a client.

    Built by the HTTP layer from the request body plus the identity headers;
    the orchestrator never sees raw HTTP.
    """

    model_config = {"frozen": True}

    query: str = Field(..., min_length=1, max_length=100000, description="User message")
    user_id: str = Field(..., min_length=1, description="Opaque client identity")
    access_token: str | None = Field(default=None, description="Upstream access token")
    conversation_id: str | None = Field(
        default=None, description="Client-supplied conversation handle to continue"
    )
    priority: RequestPriority = Field(default=RequestPriority.NORMAL)
    queue_timeout: float | None = Field(default=None, gt=0, description="Admission queue timeout (s)")
    thread_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Thread ID for correlation",
    )

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be blank")
        return v
