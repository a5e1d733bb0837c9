"""
Tests for the AuthContext dependency.

Covers API key and JWT bearer tokens, and per-account isolation of the
resolved context.
"""

import time
import uuid

import jwt
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from opensync.api.app import handle_opensync_error
from opensync.api.auth import AuthContext, decode_identity_token, get_auth_context
from opensync.config import settings
from opensync.db.connection import get_db
from opensync.db.repositories import AccountRepository, ApiKeyRepository
from opensync.exceptions import AuthError, OpenSyncError

SECRET = "test-secret-that-is-long-enough-for-hs256"


def _token(claims: dict, secret: str = SECRET, algorithm: str = "HS256") -> str:
    return jwt.encode({"exp": int(time.time()) + 300, **claims}, secret, algorithm=algorithm)


@pytest.fixture
def jwt_settings(monkeypatch):
    monkeypatch.setattr(settings, "jwt_secret", SECRET)
    monkeypatch.setattr(settings, "jwt_audience", "")
    monkeypatch.setattr(settings, "jwt_issuer", "")


@pytest.fixture
def auth_client(db_session: Session):
    """Minimal app echoing the resolved AuthContext."""
    app = FastAPI()
    app.add_exception_handler(OpenSyncError, handle_opensync_error)

    @app.get("/whoami")
    def whoami(auth: AuthContext = Depends(get_auth_context)) -> dict:
        return {"account_id": str(auth.account_id), "via": auth.via}

    app.dependency_overrides[get_db] = lambda: db_session
    return TestClient(app)


class TestAuthContext:
    """Unit tests for AuthContext dataclass."""

    def test_defaults(self):
        account_id = uuid.uuid4()

        ctx = AuthContext(account_id=account_id)

        assert ctx.account_id == account_id
        assert ctx.api_key_id is None
        assert ctx.via == "jwt"


class TestApiKeyAuth:
    """Tests for API key bearer tokens."""

    def test_resolves_account(self, auth_client, account, api_key):
        response = auth_client.get("/whoami", headers={"Authorization": f"Bearer {api_key}"})

        assert response.status_code == 200
        assert response.json() == {"account_id": str(account.id), "via": "api_key"}

    def test_keys_are_scoped_to_their_account(self, auth_client, db_session, account, other_account):
        _, theirs = ApiKeyRepository(db_session).issue(other_account.id)

        response = auth_client.get("/whoami", headers={"Authorization": f"Bearer {theirs}"})

        assert response.json()["account_id"] == str(other_account.id)

    def test_missing_header(self, auth_client):
        response = auth_client.get("/whoami")

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "auth_error"

    def test_non_bearer_scheme(self, auth_client, api_key):
        response = auth_client.get("/whoami", headers={"Authorization": f"Basic {api_key}"})
        assert response.status_code == 401


class TestJwtAuth:
    """Tests for identity-provider JWTs."""

    def test_creates_account_on_first_sight(self, auth_client, db_session, jwt_settings):
        token = _token({"sub": "idp|42", "email": "new@example.com", "name": "New"})

        first = auth_client.get("/whoami", headers={"Authorization": f"Bearer {token}"})
        second = auth_client.get("/whoami", headers={"Authorization": f"Bearer {token}"})

        assert first.status_code == 200
        assert first.json()["via"] == "jwt"
        assert first.json()["account_id"] == second.json()["account_id"]
        account = AccountRepository(db_session).get_by_identity("idp|42")
        assert account.email == "new@example.com"

    def test_maps_to_existing_account(self, auth_client, account, jwt_settings):
        token = _token({"sub": "user-1"})

        response = auth_client.get("/whoami", headers={"Authorization": f"Bearer {token}"})

        assert response.json()["account_id"] == str(account.id)

    def test_expired_token(self, auth_client, jwt_settings):
        token = _token({"sub": "idp|42", "exp": int(time.time()) - 60})

        response = auth_client.get("/whoami", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert "expired" in response.json()["error"]["message"]

    def test_wrong_secret(self, auth_client, jwt_settings):
        token = _token({"sub": "idp|42"}, secret="some-other-secret-that-is-long-enough")

        response = auth_client.get("/whoami", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401


class TestDecodeIdentityToken:
    """Unit tests for JWT verification."""

    def test_valid(self, jwt_settings):
        claims = decode_identity_token(_token({"sub": "abc"}))
        assert claims["sub"] == "abc"

    def test_missing_sub(self, jwt_settings):
        with pytest.raises(AuthError):
            decode_identity_token(_token({"email": "x@example.com"}))

    def test_algorithm_not_accepted(self, jwt_settings, monkeypatch):
        monkeypatch.setattr(settings, "jwt_algorithms", ["RS256"])

        with pytest.raises(AuthError) as exc_info:
            decode_identity_token(_token({"sub": "abc"}))

        assert "HS256" in exc_info.value.message

    def test_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "jwt_secret", "")

        with pytest.raises(AuthError) as exc_info:
            decode_identity_token(_token({"sub": "abc"}))

        assert "not configured" in exc_info.value.message

    def test_malformed(self, jwt_settings):
        with pytest.raises(AuthError):
            decode_identity_token("not-a-jwt")

    def test_audience_checked_when_configured(self, jwt_settings, monkeypatch):
        monkeypatch.setattr(settings, "jwt_audience", "opensync")

        assert decode_identity_token(_token({"sub": "a", "aud": "opensync"}))["sub"] == "a"
        with pytest.raises(AuthError):
            decode_identity_token(_token({"sub": "a", "aud": "someone-else"}))
