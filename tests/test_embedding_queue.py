"""
Tests for the embedding job queue.
"""

import uuid
from datetime import timedelta

import pytest

from opensync.config import settings
from opensync.embeddings.queue import EmbeddingJobQueue, backoff_seconds, text_hash
from opensync.exceptions import EmbeddingQueueFullError
from opensync.models.db import EmbeddingJob
from opensync.utils.time import utc_now


@pytest.fixture
def queue(db_session) -> EmbeddingJobQueue:
    return EmbeddingJobQueue(db_session)


def _enqueue(queue: EmbeddingJobQueue, text: str = "hello", message_id=None) -> uuid.UUID:
    return queue.enqueue(uuid.uuid4(), uuid.uuid4(), message_id or uuid.uuid4(), text)


class TestEnqueue:
    """Tests for enqueueing and backpressure."""

    def test_enqueue_creates_pending_job(self, db_session, queue):
        job_id = _enqueue(queue, "some text")
        job = db_session.get(EmbeddingJob, job_id)

        assert job.status == "pending"
        assert job.attempts == 0
        assert job.max_attempts == settings.embedding_max_attempts
        assert job.text_hash == text_hash("some text")

    def test_active_job_per_message_is_reused(self, queue):
        message_id = uuid.uuid4()

        first = _enqueue(queue, message_id=message_id)
        second = _enqueue(queue, message_id=message_id)

        assert first == second
        assert queue.depth() == 1

    def test_rejects_when_full(self, queue, monkeypatch):
        monkeypatch.setattr(settings, "embedding_queue_max_depth", 2)
        _enqueue(queue)
        _enqueue(queue)

        with pytest.raises(EmbeddingQueueFullError) as exc_info:
            _enqueue(queue)

        assert exc_info.value.depth == 2
        assert exc_info.value.status_code == 503
        assert exc_info.value.retry_after_seconds > 0

    def test_finished_jobs_free_capacity(self, queue, monkeypatch):
        monkeypatch.setattr(settings, "embedding_queue_max_depth", 1)
        job_id = _enqueue(queue)
        queue.claim_next()
        queue.complete(job_id, success=True)

        _enqueue(queue)

        assert queue.depth() == 1


class TestLifecycle:
    """Tests for the pending -> in_flight -> indexed/failed/dead lifecycle."""

    def test_claim_marks_in_flight(self, queue):
        job_id = _enqueue(queue)

        job = queue.claim_next()

        assert job.id == job_id
        assert job.status == "in_flight"
        assert job.attempts == 1
        assert job.started_at is not None
        assert queue.claim_next() is None

    def test_claim_batch(self, queue):
        for _ in range(5):
            _enqueue(queue)

        jobs = queue.claim_batch(3)

        assert len(jobs) == 3
        assert len({job.id for job in jobs}) == 3
        assert queue.get_stats().pending == 2

    def test_success(self, queue):
        job_id = _enqueue(queue)
        queue.claim_next()

        job = queue.complete(job_id, success=True)

        assert job.status == "indexed"
        assert job.completed_at is not None

    def test_failure_schedules_retry_with_backoff(self, queue):
        job_id = _enqueue(queue)
        queue.claim_next()

        before = utc_now()
        job = queue.complete(job_id, success=False, error="rate limited")

        assert job.status == "failed"
        assert job.last_error == "rate limited"
        assert job.next_attempt_at >= before + timedelta(seconds=backoff_seconds(1)) - timedelta(seconds=1)
        assert queue.claim_next() is None

    def test_due_retries_return_to_pending(self, queue):
        job_id = _enqueue(queue)
        queue.claim_next()
        queue.complete(job_id, success=False, error="timeout")

        assert queue.release_due_retries(now=utc_now()) == 0
        released = queue.release_due_retries(now=utc_now() + timedelta(hours=1))

        assert released == 1
        job = queue.claim_next()
        assert job.id == job_id
        assert job.attempts == 2

    def test_dead_after_max_attempts(self, db_session, queue):
        job_id = _enqueue(queue)
        db_session.get(EmbeddingJob, job_id).max_attempts = 2
        later = utc_now() + timedelta(hours=1)

        for _ in range(2):
            queue.release_due_retries(now=later)
            queue.claim_next()
            job = queue.complete(job_id, success=False, error="bad input")

        assert job.status == "dead"
        assert job.next_attempt_at is None
        assert queue.release_due_retries(now=later) == 0
        assert queue.get_stats().dead == 1

    def test_complete_unknown_job(self, queue):
        assert queue.complete(uuid.uuid4(), success=True) is None


class TestMaintenance:
    """Tests for stale-job recovery and purging."""

    def test_stale_in_flight_jobs_are_reset(self, db_session, queue):
        job_id = _enqueue(queue)
        job = queue.claim_next()
        job.started_at = utc_now() - timedelta(hours=2)
        db_session.flush()

        assert queue.cleanup_stale_jobs(timeout_minutes=15) == 1
        db_session.expire_all()
        assert db_session.get(EmbeddingJob, job_id).status == "pending"

    def test_purge_keeps_dead_jobs(self, db_session, queue):
        indexed_id = _enqueue(queue)
        dead_id = _enqueue(queue)
        for job_id, status in ((indexed_id, "indexed"), (dead_id, "dead")):
            job = db_session.get(EmbeddingJob, job_id)
            job.status = status
            job.completed_at = utc_now() - timedelta(days=30)
        db_session.flush()

        assert queue.purge_completed(days=7) == 1
        db_session.expire_all()
        assert db_session.get(EmbeddingJob, dead_id) is not None

    def test_remove_session(self, queue):
        session_id = uuid.uuid4()
        queue.enqueue(uuid.uuid4(), session_id, uuid.uuid4(), "a")
        queue.enqueue(uuid.uuid4(), session_id, uuid.uuid4(), "b")
        _enqueue(queue)

        assert queue.remove_session(session_id) == 2
        assert queue.depth() == 1


class TestBackfill:
    """Tests for queueing messages ingested without a provider."""

    @pytest.fixture
    def unqueued(self, db_session, account):
        """Three messages (one without text) stored while embeddings were off."""
        from opensync.models.ingest import MessagePayload
        from opensync.services.ingestion_service import IngestionService

        service = IngestionService(db_session, embeddings_enabled=False)
        for text in ("first", "second", None):
            service.append_message(
                account.id,
                MessagePayload(session_external_id="s", role="user", text_content=text),
            )
        return account

    def test_queues_messages_without_vectors(self, db_session, queue, unqueued):
        assert queue.backfill() == 2
        jobs = db_session.query(EmbeddingJob).all()
        assert sorted(job.text for job in jobs) == ["first", "second"]
        assert {job.account_id for job in jobs} == {unqueued.id}

    def test_active_jobs_are_not_duplicated(self, queue, unqueued):
        queue.backfill()
        assert queue.backfill() == 0

    def test_indexed_messages_are_skipped(self, queue, unqueued, embedding_worker):
        queue.backfill()
        embedding_worker.drain()

        assert queue.backfill() == 0

    def test_stops_at_capacity(self, queue, unqueued, monkeypatch):
        monkeypatch.setattr(settings, "embedding_queue_max_depth", 1)

        assert queue.backfill() == 1
        assert queue.depth() == 1

    def test_scoped_to_account(self, queue, unqueued, other_account):
        assert queue.backfill(other_account.id) == 0
        assert queue.backfill(unqueued.id) == 2


class TestStats:
    def test_stats_per_account(self, queue):
        account_id = uuid.uuid4()
        queue.enqueue(account_id, uuid.uuid4(), uuid.uuid4(), "a")
        queue.enqueue(account_id, uuid.uuid4(), uuid.uuid4(), "b")
        _enqueue(queue)

        stats = queue.get_stats(account_id)

        assert stats.pending == 2
        assert stats.total == 2
        assert stats.to_dict()["active"] == 2
        assert queue.get_stats().total == 3


class TestBackoff:
    def test_exponential_and_capped(self, monkeypatch):
        monkeypatch.setattr(settings, "embedding_backoff_base_seconds", 2.0)
        monkeypatch.setattr(settings, "embedding_backoff_max_seconds", 60.0)

        assert [backoff_seconds(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]
        assert backoff_seconds(10) == 60.0
