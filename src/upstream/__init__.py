"""
Upstream provider clients.

- base_client.py: contract and normalized event model
- coze_client.py: Coze open API over httpx
- fake_client.py: scripted in-memory client
"""

from src.upstream.base_client import (
    ChatStreamOptions,
    ConversationOptions,
    UpstreamClient,
    UpstreamEvent,
    UpstreamEventKind,
    VariableOptions,
)

__all__ = [
    "ChatStreamOptions",
    "ConversationOptions",
    "UpstreamClient",
    "UpstreamEvent",
    "UpstreamEventKind",
    "VariableOptions",
    "create_upstream_client",
]


def create_upstream_client(provider: str | None = None) -> UpstreamClient:
    """Build the configured upstream client ("coze" or "fake")."""
    from src.core.config.settings import get_settings

    provider = provider or get_settings().upstream.UPSTREAM_PROVIDER
    if provider == "fake":
        from src.upstream.fake_client import FakeUpstreamClient

        return FakeUpstreamClient()

    from src.upstream.coze_client import CozeUpstreamClient

    return CozeUpstreamClient()
