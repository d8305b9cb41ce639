"""
Lookup API tests: phone -> conversations, conversation -> messages, health.

Uses FastAPI TestClient with the Freshchat client dependency overridden.

Run with: pytest tests/test_lookup_router.py -v
"""

from unittest.mock import AsyncMock, MagicMock, Mock

import aiohttp
import pytest
from fastapi.testclient import TestClient

from src.api.deps import get_db, get_freshchat_client
from src.api.main import app

pytestmark = pytest.mark.medium


@pytest.fixture
def freshchat_mock():
    client = MagicMock()
    client.find_user_by_phone = AsyncMock()
    client.list_user_conversations = AsyncMock(return_value=[])
    client.list_conversation_messages = AsyncMock(return_value=[])
    return client


@pytest.fixture
def client(freshchat_mock):
    app.dependency_overrides[get_freshchat_client] = lambda: freshchat_mock
    yield TestClient(app)
    app.dependency_overrides.clear()


def upstream_error(status, message):
    return aiohttp.ClientResponseError(
        request_info=Mock(real_url="https://example.freshchat.test/v2/users"),
        history=(),
        status=status,
        message=message,
    )


class TestConversationLookup:

    def test_returns_user_conversations(self, client, freshchat_mock):
        freshchat_mock.find_user_by_phone.return_value = {"id": 42, "phone": "9876543210"}
        freshchat_mock.list_user_conversations.return_value = [
            {"id": "conv-1", "created_time": "2024-06-01T10:00:00.000Z",
             "status": "resolved", "channel_id": "ch-1", "extra": "dropped"},
        ]

        response = client.get("/api/conversations", params={"phone": "9876543210"})

        assert response.status_code == 200
        assert response.json() == {"conversations": [{
            "id": "conv-1",
            "created_time": "2024-06-01T10:00:00.000Z",
            "status": "resolved",
            "channel_id": "ch-1",
        }]}
        freshchat_mock.find_user_by_phone.assert_awaited_once_with("9876543210")
        freshchat_mock.list_user_conversations.assert_awaited_once_with("42")

    @pytest.mark.parametrize("phone", [None, "", "12345", "98765-43210", "1234567890123456"])
    def test_invalid_phone(self, client, freshchat_mock, phone):
        params = {"phone": phone} if phone is not None else {}
        response = client.get("/api/conversations", params=params)

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid or missing phone number."
        freshchat_mock.find_user_by_phone.assert_not_awaited()

    def test_unknown_user(self, client, freshchat_mock):
        freshchat_mock.find_user_by_phone.return_value = None

        response = client.get("/api/conversations", params={"phone": "9876543210"})

        assert response.status_code == 404
        assert response.json()["detail"] == "User not found."

    def test_upstream_status_relayed(self, client, freshchat_mock):
        freshchat_mock.find_user_by_phone.side_effect = upstream_error(401, "Unauthorized")

        response = client.get("/api/conversations", params={"phone": "9876543210"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Unauthorized"

    def test_unexpected_error_is_500(self, client, freshchat_mock):
        freshchat_mock.find_user_by_phone.side_effect = ValueError("bad json")

        response = client.get("/api/conversations", params={"phone": "9876543210"})

        assert response.status_code == 500
        assert response.json()["detail"] == "Internal server error."


class TestMessageLookup:

    def test_returns_text_parts(self, client, freshchat_mock):
        freshchat_mock.list_conversation_messages.return_value = [
            {
                "id": "m1",
                "actor_type": "user",
                "message_parts": [{"text": {"content": "hello"}}, {"image": {"url": "x"}}],
                "created_time": "2024-06-01T10:00:00.000Z",
            },
            {"id": "m2", "actor_type": "bot", "message_parts": None},
        ]

        response = client.get("/api/messages", params={"conversation_id": "conv-123"})

        assert response.status_code == 200
        messages = response.json()["messages"]
        assert messages[0]["message_parts"] == ["hello"]
        assert messages[0]["actor_type"] == "user"
        assert messages[1]["message_parts"] == []
        freshchat_mock.list_conversation_messages.assert_awaited_once_with("conv-123")

    @pytest.mark.parametrize("conversation_id", [None, "abc", "conv 123", "conv/123"])
    def test_invalid_conversation_id(self, client, freshchat_mock, conversation_id):
        params = {"conversation_id": conversation_id} if conversation_id is not None else {}
        response = client.get("/api/messages", params=params)

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid or missing conversation id."
        freshchat_mock.list_conversation_messages.assert_not_awaited()

    def test_upstream_not_found_relayed(self, client, freshchat_mock):
        freshchat_mock.list_conversation_messages.side_effect = upstream_error(404, "Not Found")

        response = client.get("/api/messages", params={"conversation_id": "conv-123"})

        assert response.status_code == 404


class TestMisconfiguration:

    def test_missing_credentials_is_500(self, monkeypatch):
        monkeypatch.delenv("FRESHCHAT_TOKEN", raising=False)
        app.dependency_overrides.clear()

        response = TestClient(app).get("/api/conversations", params={"phone": "9876543210"})

        assert response.status_code == 500
        assert response.json()["detail"] == "Server misconfiguration."


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_db_health(self, client):
        db = MagicMock()
        app.dependency_overrides[get_db] = lambda: db

        response = client.get("/health/db")

        assert response.status_code == 200
        assert response.json()["connected"] is True
        db.cursor.return_value.__enter__.return_value.execute.assert_called_once_with("SELECT 1")

    def test_db_health_reports_error(self, client):
        db = MagicMock()
        db.cursor.side_effect = RuntimeError("could not connect")
        app.dependency_overrides[get_db] = lambda: db

        response = client.get("/health/db")

        assert response.json() == {"connected": False, "latency_ms": None, "error": "could not connect"}
