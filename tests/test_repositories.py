"""
Tests for database repositories.
"""

import uuid

from sqlalchemy.orm import Session

from opensync.db.repositories import (
    AccountRepository,
    ApiKeyRepository,
    ApiLogRepository,
    MessageRepository,
    SessionRepository,
)
from opensync.db.repositories.account import generate_api_key, hash_api_key, verify_api_key
from opensync.models.db import Account


class TestBaseRepository:
    """Generic CRUD through AccountRepository."""

    def test_create_and_get(self, db_session: Session):
        repo = AccountRepository(db_session)

        account = repo.create(external_identity="idp|1")

        assert account.id is not None
        assert repo.get(account.id) is account

    def test_update(self, db_session: Session, account: Account):
        repo = AccountRepository(db_session)

        updated = repo.update(account.id, name="Renamed")

        assert updated.name == "Renamed"
        assert repo.update(uuid.uuid4(), name="x") is None

    def test_delete_and_count(self, db_session: Session, account: Account, other_account: Account):
        repo = AccountRepository(db_session)

        assert repo.count() == 2
        assert repo.delete(other_account.id) is True
        assert repo.delete(uuid.uuid4()) is False
        assert repo.count() == 1
        assert [a.id for a in repo.get_all(limit=10)] == [account.id]


class TestAccountRepository:
    def test_get_or_create_by_identity(self, db_session: Session):
        repo = AccountRepository(db_session)

        first = repo.get_or_create_by_identity("idp|9", email="a@example.com")
        second = repo.get_or_create_by_identity("idp|9", email="ignored@example.com")

        assert first.id == second.id
        assert second.email == "a@example.com"


class TestApiKeys:
    """Tests for API key generation and lookup."""

    def test_generate(self):
        full_key, prefix, key_hash = generate_api_key()

        assert full_key.startswith("osk_")
        assert full_key.startswith(prefix)
        assert key_hash == hash_api_key(full_key)
        assert verify_api_key(full_key, key_hash)
        assert not verify_api_key(full_key + "x", key_hash)

    def test_plaintext_is_never_stored(self, db_session: Session, account: Account):
        api_key, plaintext = ApiKeyRepository(db_session).issue(account.id, name="ci")

        assert api_key.key_hash != plaintext
        assert plaintext not in (api_key.key_prefix, api_key.key_hash)

    def test_lookup_and_revoke(self, db_session: Session, account: Account):
        repo = ApiKeyRepository(db_session)
        api_key, plaintext = repo.issue(account.id)

        assert repo.get_active_by_plaintext(plaintext).id == api_key.id
        repo.revoke(api_key.id, account.id)
        assert repo.get_active_by_plaintext(plaintext) is None
        assert repo.get_active_by_plaintext("osk_unknown") is None

    def test_revoke_requires_owner(self, db_session: Session, account: Account, other_account: Account):
        repo = ApiKeyRepository(db_session)
        api_key, _ = repo.issue(account.id)

        assert repo.revoke(api_key.id, other_account.id) is None
        assert api_key.revoked_at is None


class TestSessionRepository:
    """Tests for account-scoped session lookups."""

    def test_scoped_lookups(self, db_session: Session, account, other_account, ingest):
        session_id = ingest("s1", [("user", "hi")])
        repo = SessionRepository(db_session)

        assert repo.get_for_account(session_id, account.id).external_id == "s1"
        assert repo.get_for_account(session_id, other_account.id) is None
        assert repo.get_by_external_id(other_account.id, "s1") is None
        assert repo.get_many([session_id, uuid.uuid4()], account.id).keys() == {session_id}

    def test_list_eval_ready(self, db_session: Session, account, ingest, service):
        flagged = ingest("flagged", [("user", "q"), ("assistant", "a")])
        ingest("plain", [("user", "q")])
        service.set_eval_ready(account.id, flagged, True)

        rows = SessionRepository(db_session).list_eval_ready(account.id)

        assert [row.id for row in rows] == [flagged]
        assert len(rows[0].messages) == 2


class TestMessageRepository:
    def test_ordinals_and_lookup(self, db_session: Session, ingest):
        session_id = ingest("s1", [("user", "a"), ("assistant", "b"), ("user", "c")])
        repo = MessageRepository(db_session)

        messages = repo.get_by_session(session_id)

        assert [m.ordinal for m in messages] == [1, 2, 3]
        assert repo.next_ordinal(session_id) == 4
        assert repo.get_by_external_id(session_id, "s1-m1").text_content == "b"
        assert repo.exists(messages[0].id)
        assert not repo.exists(uuid.uuid4())
        assert set(repo.get_many([m.id for m in messages])) == {m.id for m in messages}

    def test_next_ordinal_of_empty_session(self, db_session: Session):
        assert MessageRepository(db_session).next_ordinal(uuid.uuid4()) == 1


class TestApiLogRepository:
    def test_record_and_delete(self, db_session: Session, account, other_account):
        repo = ApiLogRepository(db_session)
        repo.record(account.id, "/api/search", "GET", 200, 12)
        repo.record(account.id, "/api/stats", "GET", 200, 3)
        repo.record(other_account.id, "/api/stats", "GET", 200, 3)

        recent = repo.recent_for_account(account.id)

        assert [log.endpoint for log in recent] == ["/api/stats", "/api/search"]
        assert repo.delete_for_account(account.id) == 2
        assert len(repo.recent_for_account(other_account.id)) == 1
