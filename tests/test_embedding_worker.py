"""
Tests for the embedding worker.
"""

from contextlib import nullcontext
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy.exc import IntegrityError

from opensync.embeddings.vector_index import VectorIndex
from opensync.embeddings.worker import EmbeddingWorker, get_worker_stats
from opensync.models.db import EmbeddingJob, Message, MessageEmbedding
from opensync.utils.time import utc_now


class TestProcessBatch:
    """Tests for EmbeddingWorker.process_batch."""

    def test_indexes_pending_messages(self, db_session, account, ingest, embedding_worker):
        ingest("s", [("user", "login fails"), ("assistant", "check the password hash")])

        processed = embedding_worker.process_batch()

        assert processed == 2
        assert VectorIndex(db_session).count(account.id) == 2
        statuses = {job.status for job in db_session.query(EmbeddingJob).all()}
        assert statuses == {"indexed"}

    def test_vector_metadata(self, db_session, ingest, embedding_worker, fake_provider):
        ingest("s", [("user", "postgres schema")])

        embedding_worker.process_batch()
        row = db_session.query(MessageEmbedding).one()

        assert row.model == "fake-concepts"
        assert row.dimensions == fake_provider.dimensions
        assert len(row.vector) == fake_provider.dimensions

    def test_empty_queue(self, embedding_worker):
        assert embedding_worker.process_batch() == 0

    def test_batches_provider_calls(self, ingest, embedding_worker, fake_provider):
        ingest("s", [("user", f"message {i}") for i in range(5)])

        embedding_worker.process_batch()

        assert fake_provider.calls == 1

    def test_drain(self, db_session, account, ingest, fake_provider):
        ingest("s", [("user", f"message {i}") for i in range(5)])
        worker = EmbeddingWorker(
            provider=fake_provider,
            session_scope=lambda: nullcontext(db_session),
            batch_size=2,
        )

        assert worker.drain() == 5
        assert fake_provider.calls == 3
        assert VectorIndex(db_session).count(account.id) == 5

    def test_provider_failure_schedules_retry(self, db_session, ingest, failing_provider):
        ingest("s", [("user", "retry me")])
        worker = EmbeddingWorker(
            provider=failing_provider, session_scope=lambda: nullcontext(db_session)
        )

        assert worker.process_batch() == 1
        job = db_session.query(EmbeddingJob).one()

        assert job.status == "failed"
        assert job.attempts == 1
        assert "fake provider is down" in job.last_error
        assert db_session.query(MessageEmbedding).count() == 0
        # Not claimable again until the backoff has elapsed
        assert worker.process_batch() == 0

    def test_recovers_after_backoff(self, db_session, account, ingest, failing_provider):
        ingest("s", [("user", "retry me")])
        worker = EmbeddingWorker(
            provider=failing_provider, session_scope=lambda: nullcontext(db_session)
        )
        worker.process_batch()

        job = db_session.query(EmbeddingJob).one()
        job.next_attempt_at = utc_now() - timedelta(seconds=1)
        db_session.flush()
        failing_provider.fail = False

        assert worker.process_batch() == 1
        db_session.expire_all()
        assert db_session.query(EmbeddingJob).one().status == "indexed"
        assert VectorIndex(db_session).count(account.id) == 1

    def test_job_dead_after_max_attempts(self, db_session, ingest, failing_provider):
        ingest("s", [("user", "never works")])
        job = db_session.query(EmbeddingJob).one()
        job.max_attempts = 1
        db_session.flush()
        worker = EmbeddingWorker(
            provider=failing_provider, session_scope=lambda: nullcontext(db_session)
        )

        worker.process_batch()

        db_session.expire_all()
        assert db_session.query(EmbeddingJob).one().status == "dead"

    def test_deleted_message_is_skipped(self, db_session, ingest, embedding_worker, fake_provider):
        ingest("s", [("user", "soon gone")])
        db_session.delete(db_session.query(Message).one())
        db_session.flush()

        assert embedding_worker.process_batch() == 1

        db_session.expire_all()
        assert db_session.query(EmbeddingJob).one().status == "indexed"
        assert db_session.query(MessageEmbedding).count() == 0
        assert fake_provider.calls == 0

    def test_message_deleted_during_batch(self, db_session, ingest, embedding_worker):
        """A vector insert that loses its message only drops that vector."""
        ingest("s", [("user", "first"), ("user", "second")])
        gone = db_session.query(Message).filter_by(ordinal=1).one().id
        original_upsert = VectorIndex.upsert

        def upsert(index, **kwargs):
            if kwargs["message_id"] == gone:
                raise IntegrityError(
                    "INSERT INTO message_embeddings", {}, Exception("foreign key violation")
                )
            return original_upsert(index, **kwargs)

        with patch.object(VectorIndex, "upsert", autospec=True, side_effect=upsert):
            assert embedding_worker.process_batch() == 2

        db_session.expire_all()
        assert {job.status for job in db_session.query(EmbeddingJob).all()} == {"indexed"}
        rows = db_session.query(MessageEmbedding).all()
        assert len(rows) == 1
        assert rows[0].message_id != gone

    def test_no_provider_is_idle(self, db_session, ingest, monkeypatch):
        ingest("s", [("user", "hello")])
        monkeypatch.setattr(
            "opensync.embeddings.worker.get_embedding_provider", lambda: None
        )
        worker = EmbeddingWorker(session_scope=lambda: nullcontext(db_session))

        assert worker.process_batch() == 0
        assert db_session.query(EmbeddingJob).one().status == "pending"


class TestWorkerLifecycle:
    def test_stats_without_worker(self):
        assert get_worker_stats() == {"running": False}

    def test_stop_ends_run_loop(self, db_session, fake_provider):
        worker = EmbeddingWorker(
            provider=fake_provider,
            session_scope=lambda: nullcontext(db_session),
            poll_interval=0.01,
            cleanup_interval=3600.0,
        )
        worker.stop()

        worker.run()

        assert worker.is_running is False
