"""
Unit Tests for API dependency functions.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from src.application.api.dependencies import (
    get_access_token,
    get_conversation_cache,
    get_orchestrator,
    get_user_id,
)


def _request(headers=None, host="10.0.0.7", **state):
    request = MagicMock()
    request.headers = headers or {}
    request.client = SimpleNamespace(host=host) if host else None
    request.app.state = SimpleNamespace(**state)
    return request


@pytest.mark.unit
class TestIdentity:
    def test_user_id_header_wins(self):
        assert get_user_id(_request({"X-User-ID": "u-1"})) == "u-1"

    def test_client_host_fallback(self):
        assert get_user_id(_request()) == "10.0.0.7"

    def test_unknown_without_client(self):
        assert get_user_id(_request(host=None)) == "unknown"

    def test_access_token_header(self):
        assert get_access_token(_request({"X-Upstream-Token": "pat_x"})) == "pat_x"

    def test_access_token_falls_back_to_settings(self, monkeypatch):
        fake = SimpleNamespace(upstream=SimpleNamespace(COZE_ACCESS_TOKEN="pat_default"))
        monkeypatch.setattr("src.application.api.dependencies.get_settings", lambda: fake)

        assert get_access_token(_request()) == "pat_default"


@pytest.mark.unit
class TestStateDependencies:
    def test_returns_lifespan_singletons(self):
        orchestrator, conversations = object(), object()
        request = _request(orchestrator=orchestrator, conversations=conversations)

        assert get_orchestrator(request) is orchestrator
        assert get_conversation_cache(request) is conversations

    def test_missing_state_raises(self):
        with pytest.raises(RuntimeError, match="orchestrator not initialized"):
            get_orchestrator(_request())
