"""
Tests for API key management and account data deletion.
"""

from fastapi.testclient import TestClient

from opensync.models.db import ApiLog, EmbeddingJob, IndexTerm, Message, Session as SessionModel


class TestApiKeys:
    """Tests for /api/keys."""

    def test_create_returns_plaintext_once(self, api_client: TestClient, auth_headers):
        created = api_client.post("/api/keys", json={"name": "laptop"}, headers=auth_headers)

        data = created.json()["data"]
        assert created.status_code == 200
        assert data["name"] == "laptop"
        assert data["key"].startswith("osk_")
        assert data["key"].startswith(data["key_prefix"])

        listed = api_client.get("/api/keys", headers=auth_headers).json()["data"]["keys"]
        assert {key["name"] for key in listed} == {"test", "laptop"}
        assert all("key" not in key for key in listed)

    def test_create_without_body(self, api_client: TestClient, auth_headers):
        response = api_client.post("/api/keys", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["data"]["name"] is None

    def test_new_key_authenticates(self, api_client: TestClient, auth_headers):
        key = api_client.post("/api/keys", headers=auth_headers).json()["data"]["key"]

        response = api_client.get("/api/sessions", headers={"Authorization": f"Bearer {key}"})

        assert response.status_code == 200

    def test_revoke(self, api_client: TestClient, auth_headers):
        created = api_client.post("/api/keys", headers=auth_headers).json()["data"]
        new_headers = {"Authorization": f"Bearer {created['key']}"}

        revoked = api_client.delete(f"/api/keys/{created['id']}", headers=auth_headers)

        assert revoked.status_code == 200
        assert revoked.json()["data"]["revoked_at"] is not None
        assert api_client.get("/api/sessions", headers=new_headers).status_code == 401
        assert api_client.get("/api/sessions", headers=auth_headers).status_code == 200

    def test_revoke_other_accounts_key(self, api_client: TestClient, db_session, other_account, auth_headers):
        from opensync.db.repositories import ApiKeyRepository

        theirs, _ = ApiKeyRepository(db_session).issue(other_account.id)
        db_session.commit()

        response = api_client.delete(f"/api/keys/{theirs.id}", headers=auth_headers)

        assert response.status_code == 404
        db_session.refresh(theirs)
        assert theirs.revoked_at is None


class TestDeleteAccountData:
    """Tests for DELETE /api/account/data."""

    def test_deletes_everything_but_keys(
        self, api_client: TestClient, db_session, account, ingest, other_account, auth_headers
    ):
        ingest("a", [("user", "one"), ("assistant", "two")])
        ingest("b", [("user", "three")])
        ingest("theirs", [("user", "kept")], account_id=other_account.id)
        api_client.get("/api/sessions", headers=auth_headers)

        response = api_client.delete("/api/account/data", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["sessions"] == 2
        assert data["messages"] == 3
        assert data["api_logs"] == 1

        mine = db_session.query(SessionModel).filter(SessionModel.account_id == account.id)
        assert mine.count() == 0
        assert db_session.query(Message).count() == 1
        assert db_session.query(EmbeddingJob).filter(EmbeddingJob.account_id == account.id).count() == 0
        assert db_session.query(IndexTerm).filter(IndexTerm.account_id == account.id).count() == 0
        # The key still works and the deletion itself is logged
        assert api_client.get("/api/sessions", headers=auth_headers).status_code == 200
        assert db_session.query(ApiLog).filter(ApiLog.account_id == account.id).count() >= 1

    def test_stats_are_zero_afterwards(self, api_client: TestClient, ingest, auth_headers):
        ingest("a", [("user", "one")], prompt_tokens=10)

        api_client.delete("/api/account/data", headers=auth_headers)
        totals = api_client.get("/api/stats", headers=auth_headers).json()["data"]["totals"]

        assert totals["prompt_tokens"] == 0
        assert totals["message_count"] == 0
