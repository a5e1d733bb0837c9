"""
Pytest configuration and fixtures for OpenSync tests.

Tests run against SQLite in-memory. Each test gets a session bound to an
outer transaction that is rolled back afterwards; commits made by the code
under test only release a SAVEPOINT, so test isolation holds even though
the ingestion service commits on its own.
"""

import math
import re
import uuid
from contextlib import nullcontext
from datetime import datetime
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from opensync.db.connection import enable_sqlite_savepoints
from opensync.db.repositories import ApiKeyRepository
from opensync.embeddings.base import EmbeddingProvider
from opensync.embeddings.resilience import CircuitBreaker
from opensync.exceptions import UpstreamProviderError
from opensync.models.db import Account, Base
from opensync.models.ingest import MessagePayload, SessionPayload
from opensync.services.ingestion_service import IngestionService

# Words that mean the same thing land on the same axis, so paraphrases
# with no shared terms are still close in vector space.
CONCEPTS: dict[str, set[str]] = {
    "auth": {"auth", "authentication", "login", "logins", "signin", "credentials", "password", "session", "oauth"},
    "database": {"database", "postgres", "postgresql", "sql", "query", "queries", "schema", "migration", "table"},
    "deploy": {"deploy", "deployment", "release", "ship", "production", "rollout", "kubernetes"},
    "testing": {"test", "tests", "pytest", "unittest", "coverage", "assert", "fixture"},
    "performance": {"slow", "latency", "performance", "fast", "speed", "optimize", "cache", "caching"},
    "error": {"error", "exception", "bug", "crash", "traceback", "failure", "broken", "fix"},
    "frontend": {"react", "css", "component", "button", "ui", "layout", "frontend"},
}
_WORD = re.compile(r"[a-z]+")


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic concept-lexicon embeddings."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0
        self._axes = list(CONCEPTS)

    @property
    def dimensions(self) -> int:
        return len(self._axes) + 1

    @property
    def model_name(self) -> str:
        return "fake-concepts"

    def embed_text(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail:
            raise UpstreamProviderError("fake provider is down", status=503)
        return [self._vector(text) for text in texts]

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for word in _WORD.findall(text.lower()):
            for axis, name in enumerate(self._axes):
                if word in CONCEPTS[name]:
                    vector[axis] += 1.0
        if not any(vector):
            vector[-1] = 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]


@pytest.fixture(scope="session")
def test_engine():
    """Create a test database engine using SQLite in-memory."""
    from sqlalchemy import JSON, event
    from sqlalchemy.dialects import postgresql

    # Replace JSONB with JSON for SQLite
    @event.listens_for(Base.metadata, "before_create")
    def _set_json_type(target, connection, **kw):
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, postgresql.JSONB):
                    column.type = JSON()

    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},  # TestClient runs routes in a threadpool
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """
    Create a new database session for a test.

    Each test gets a fresh session with a transaction that is rolled back
    after the test completes, ensuring test isolation.
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def failing_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider(fail=True)


@pytest.fixture(autouse=True)
def embeddings_configured(monkeypatch):
    """Run with an embedding key set so ingestion queues embedding work."""
    from opensync.config import settings

    monkeypatch.setattr(settings, "openai_api_key", "sk-test")


@pytest.fixture(autouse=True)
def fresh_query_circuit(monkeypatch):
    """Give every test its own query-time circuit breaker."""
    from opensync.search import engine

    monkeypatch.setattr(engine, "query_circuit", CircuitBreaker(failure_threshold=5, reset_timeout=60.0))


@pytest.fixture
def account(db_session: Session) -> Account:
    """Create a sample account."""
    account = Account(external_identity="user-1", email="dev@example.com", name="Dev")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture
def other_account(db_session: Session) -> Account:
    """A second account, for isolation checks."""
    account = Account(external_identity="user-2")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture
def api_key(db_session: Session, account: Account) -> str:
    """Plaintext API key of the sample account."""
    _, plaintext = ApiKeyRepository(db_session).issue(account.id, name="test")
    db_session.commit()
    return plaintext


@pytest.fixture
def auth_headers(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"}


@pytest.fixture
def service(db_session: Session) -> IngestionService:
    return IngestionService(db_session)


@pytest.fixture
def ingest(service: IngestionService, account: Account):
    """
    Helper that ingests a session with messages.

    Usage:
        session_id = ingest("s1", [("user", "hello"), ("assistant", "hi")])
    """

    def _ingest(
        external_id: str,
        messages: list[tuple[str, str]],
        account_id: uuid.UUID = None,
        title: str = None,
        model: str = "claude-sonnet-4",
        project_path: str = "/home/dev/app",
        timestamp: datetime = None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        cost: float = None,
    ) -> uuid.UUID:
        owner = account_id or account.id
        result = service.upsert_session(
            owner,
            SessionPayload(
                external_id=external_id,
                title=title or f"Session {external_id}",
                model=model,
                project_path=project_path,
                created_at=timestamp,
            ),
        )
        for index, (role, text) in enumerate(messages):
            service.append_message(
                owner,
                MessagePayload(
                    session_external_id=external_id,
                    external_id=f"{external_id}-m{index}",
                    role=role,
                    text_content=text,
                    model=model,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    cost=cost,
                    created_at=timestamp,
                ),
            )
        return result.session_id

    return _ingest


@pytest.fixture
def embedding_worker(db_session: Session, fake_provider: FakeEmbeddingProvider):
    """Embedding worker sharing the test session."""
    from opensync.embeddings.worker import EmbeddingWorker

    return EmbeddingWorker(
        provider=fake_provider,
        session_scope=lambda: nullcontext(db_session),
        poll_interval=0.01,
        batch_size=16,
    )


@pytest.fixture
def api_client(db_session: Session, fake_provider: FakeEmbeddingProvider):
    """Create a test client for FastAPI with database dependency override."""
    from unittest.mock import patch

    from fastapi.testclient import TestClient

    from opensync.api.app import app
    from opensync.api.routes.search import get_search_provider
    from opensync.db.connection import get_db

    # Override the get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_search_provider] = lambda: fake_provider
    previous_log_session = app.state.access_log_session
    app.state.access_log_session = lambda: nullcontext(db_session)

    # Disable lifespan startup checks for testing
    with patch("opensync.api.app.run_all_startup_checks"):
        client = TestClient(app)
        yield client

    app.dependency_overrides.clear()
    app.state.access_log_session = previous_log_session
