"""
Tests for the plugin sync endpoints.
"""

from fastapi.testclient import TestClient

from opensync.db.repositories import SessionRepository
from opensync.models.db import Message


class TestSyncSession:
    """Tests for POST /sync/session."""

    def test_create_and_update(self, api_client: TestClient, auth_headers):
        body = {"externalId": "oc-1", "title": "First", "source": "opencode", "model": "gpt-4o"}

        created = api_client.post("/sync/session", json=body, headers=auth_headers)
        updated = api_client.post(
            "/sync/session", json={**body, "title": "Renamed"}, headers=auth_headers
        )

        assert created.status_code == 200
        assert created.json()["data"]["created"] is True
        assert updated.json()["data"]["created"] is False
        assert updated.json()["data"]["session_id"] == created.json()["data"]["session_id"]

    def test_session_id_alias(self, api_client: TestClient, db_session, account, auth_headers):
        response = api_client.post(
            "/sync/session", json={"sessionId": "cc-1", "source": "claude-code"}, headers=auth_headers
        )

        assert response.status_code == 200
        row = SessionRepository(db_session).get_by_external_id(account.id, "cc-1")
        assert row.source == "claude-code"

    def test_negative_tokens_rejected(self, api_client: TestClient, auth_headers):
        response = api_client.post(
            "/sync/session", json={"externalId": "x", "promptTokens": -1}, headers=auth_headers
        )
        assert response.status_code == 400


class TestSyncMessage:
    """Tests for POST /sync/message."""

    def test_append_auto_creates_session(self, api_client: TestClient, db_session, account, auth_headers):
        response = api_client.post(
            "/sync/message",
            json={
                "sessionExternalId": "oc-2",
                "externalId": "m-1",
                "role": "user",
                "textContent": "hello there",
            },
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["created"] is True
        row = SessionRepository(db_session).get_by_external_id(account.id, "oc-2")
        assert str(row.id) == data["session_id"]
        assert row.message_count == 1

    def test_retry_is_idempotent(self, api_client: TestClient, db_session, auth_headers):
        body = {"sessionId": "oc-3", "externalId": "m-1", "role": "assistant", "textContent": "hi"}

        first = api_client.post("/sync/message", json=body, headers=auth_headers)
        second = api_client.post("/sync/message", json=body, headers=auth_headers)

        assert second.json()["data"]["created"] is False
        assert second.json()["data"]["message_id"] == first.json()["data"]["message_id"]
        assert db_session.query(Message).count() == 1

    def test_parts_and_secrets(self, api_client: TestClient, db_session, auth_headers):
        api_client.post(
            "/sync/message",
            json={
                "sessionId": "oc-4",
                "externalId": "m-1",
                "role": "assistant",
                "parts": [
                    {"type": "text", "content": "export OPENAI_API_KEY=sk-abcdefghijklmnopqrstuvwx"},
                    {"type": "tool-call", "content": {"name": "bash", "text": "ls"}},
                ],
            },
            headers=auth_headers,
        )

        message = db_session.query(Message).one()
        assert "sk-abcdefghijklmnopqrstuvwx" not in (message.text_content or "")
        assert [part.type for part in message.parts] == ["text", "tool-call"]
        assert all("sk-abcdefghijklmnopqrstuvwx" not in (part.content or "") for part in message.parts)

    def test_queue_full_is_retryable_503(self, api_client: TestClient, auth_headers, monkeypatch):
        from opensync.config import settings

        monkeypatch.setattr(settings, "embedding_queue_max_depth", 0)

        response = api_client.post(
            "/sync/message",
            json={"sessionId": "oc-5", "externalId": "m-1", "role": "user", "textContent": "hi"},
            headers=auth_headers,
        )

        assert response.status_code == 503
        assert response.json()["error"]["type"] == "queue_full"
        assert int(response.headers["Retry-After"]) > 0


class TestSyncBatch:
    """Tests for POST /sync/batch."""

    def test_batch_with_invalid_items(self, api_client: TestClient, auth_headers):
        response = api_client.post(
            "/sync/batch",
            json={
                "sessions": [{"externalId": "b-1"}, {"title": "missing id"}],
                "messages": [
                    {"sessionId": "b-1", "externalId": "m-1", "role": "user", "textContent": "a"},
                    {"sessionId": "b-1", "externalId": "m-2", "role": "assistant", "textContent": "b"},
                ],
            },
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["sessions"] == 1
        assert data["messages"] == 2
        assert len(data["errors"]) == 1
        assert data["errors"][0].startswith("sessions[1]:")

    def test_empty_batch(self, api_client: TestClient, auth_headers):
        response = api_client.post("/sync/batch", json={}, headers=auth_headers)

        assert response.json()["data"] == {"sessions": 0, "messages": 0, "errors": []}


class TestSyncList:
    """Tests for GET /sync/sessions/list."""

    def test_lists_own_external_ids(self, api_client: TestClient, ingest, other_account, auth_headers):
        ingest("mine-1", [])
        ingest("mine-2", [])
        ingest("theirs", [], account_id=other_account.id)

        response = api_client.get("/sync/sessions/list", headers=auth_headers)

        assert sorted(response.json()["data"]["session_ids"]) == ["mine-1", "mine-2"]
