"""
Embedding job queue.

Durable, database-backed queue that decouples vector indexing from the
ingest request. Jobs move through::

    pending -> in_flight -> indexed
                         -> failed -> pending (after backoff) ... -> dead

Claiming uses SELECT FOR UPDATE SKIP LOCKED so several workers can share
the queue. The queue is bounded: ``enqueue`` refuses new work once the
number of active jobs reaches ``settings.embedding_queue_max_depth``.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from opensync.config import settings
from opensync.exceptions import EmbeddingQueueFullError
from opensync.formatting.text import message_search_text
from opensync.models.db import (
    EmbeddingJob,
    EmbeddingJobStatus,
    Message,
    MessageEmbedding,
    Session as SessionModel,
)
from opensync.utils.time import utc_now

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [
    EmbeddingJobStatus.PENDING.value,
    EmbeddingJobStatus.IN_FLIGHT.value,
    EmbeddingJobStatus.FAILED.value,
]


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def backoff_seconds(attempts: int) -> float:
    """Delay before retry number ``attempts`` (1-based), capped."""
    delay = settings.embedding_backoff_base_seconds * (2 ** max(attempts - 1, 0))
    return min(delay, settings.embedding_backoff_max_seconds)


@dataclass
class QueueStats:
    """Statistics about the embedding job queue."""

    pending: int = 0
    in_flight: int = 0
    indexed: int = 0
    failed: int = 0
    dead: int = 0
    total: int = 0

    @property
    def active(self) -> int:
        """Jobs still counted against the queue bound."""
        return self.pending + self.in_flight + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "in_flight": self.in_flight,
            "indexed": self.indexed,
            "failed": self.failed,
            "dead": self.dead,
            "total": self.total,
            "active": self.active,
        }


class EmbeddingJobQueue:
    """Database-backed job queue for asynchronous embedding."""

    def __init__(self, session: Session):
        self.session = session

    def depth(self) -> int:
        """Number of active (pending, in-flight, retrying) jobs."""
        return (
            self.session.query(func.count(EmbeddingJob.id))
            .filter(EmbeddingJob.status.in_(ACTIVE_STATUSES))
            .scalar()
            or 0
        )

    def enqueue(
        self,
        account_id: uuid.UUID,
        session_id: uuid.UUID,
        message_id: uuid.UUID,
        text: str,
    ) -> uuid.UUID:
        """
        Add a message to the embedding queue.

        Runs in the caller's transaction; nothing is committed here.

        Args:
            account_id: Owner account
            session_id: Session UUID
            message_id: Message UUID
            text: Redacted text to embed

        Returns:
            UUID of the job (existing active job for the message if any)

        Raises:
            EmbeddingQueueFullError: If the queue is at capacity
        """
        existing = (
            self.session.query(EmbeddingJob)
            .filter(
                EmbeddingJob.message_id == message_id,
                EmbeddingJob.status.in_(ACTIVE_STATUSES),
            )
            .first()
        )
        if existing:
            logger.debug(f"Embedding job already queued for message {message_id}")
            return existing.id

        depth = self.depth()
        if depth >= settings.embedding_queue_max_depth:
            logger.warning(
                f"Embedding queue full ({depth}/{settings.embedding_queue_max_depth}), "
                f"rejecting message {message_id}"
            )
            raise EmbeddingQueueFullError(depth, settings.embedding_queue_max_depth)

        job = EmbeddingJob(
            account_id=account_id,
            session_id=session_id,
            message_id=message_id,
            text=text,
            text_hash=text_hash(text),
            status=EmbeddingJobStatus.PENDING.value,
            attempts=0,
            max_attempts=settings.embedding_max_attempts,
        )
        self.session.add(job)
        self.session.flush()

        logger.debug(f"Enqueued embedding job {job.id} for message {message_id}")
        return job.id

    def claim_next(self) -> Optional[EmbeddingJob]:
        """
        Atomically claim the oldest pending job.

        Returns:
            EmbeddingJob marked in_flight, or None if the queue is empty
        """
        job = (
            self.session.query(EmbeddingJob)
            .filter(EmbeddingJob.status == EmbeddingJobStatus.PENDING.value)
            .order_by(EmbeddingJob.created_at, EmbeddingJob.id)
            .with_for_update(skip_locked=True)
            .first()
        )
        if not job:
            return None

        job.status = EmbeddingJobStatus.IN_FLIGHT.value
        job.started_at = utc_now()
        job.attempts += 1
        self.session.flush()

        logger.debug(
            f"Claimed embedding job {job.id} (attempt {job.attempts}/{job.max_attempts})"
        )
        return job

    def claim_batch(self, limit: int) -> list[EmbeddingJob]:
        """Claim up to ``limit`` pending jobs."""
        jobs = []
        for _ in range(limit):
            job = self.claim_next()
            if job is None:
                break
            jobs.append(job)
        return jobs

    def complete(
        self,
        job_id: uuid.UUID,
        success: bool,
        error: Optional[str] = None,
    ) -> Optional[EmbeddingJob]:
        """
        Record the outcome of an attempt.

        Success moves the job to indexed. Failure moves it to failed with a
        capped exponential ``next_attempt_at``, or to dead once the attempt
        budget is spent.

        Args:
            job_id: ID of the job
            success: Whether the vector was written
            error: Error message if failed

        Returns:
            The updated job, or None if it no longer exists
        """
        job = self.session.get(EmbeddingJob, job_id)
        if not job:
            logger.warning(f"Embedding job {job_id} not found when trying to complete")
            return None

        now = utc_now()
        if success:
            job.status = EmbeddingJobStatus.INDEXED.value
            job.last_error = None
            job.next_attempt_at = None
            job.completed_at = now
        else:
            job.last_error = (error or "unknown error")[:2000]
            if job.attempts >= job.max_attempts:
                job.status = EmbeddingJobStatus.DEAD.value
                job.next_attempt_at = None
                job.completed_at = now
                logger.error(
                    f"Embedding job {job_id} dead after {job.attempts} attempts: {error}"
                )
            else:
                delay = backoff_seconds(job.attempts)
                job.status = EmbeddingJobStatus.FAILED.value
                job.next_attempt_at = now + timedelta(seconds=delay)
                job.started_at = None
                logger.info(
                    f"Embedding job {job_id} failed, retrying in {delay:.1f}s "
                    f"(attempt {job.attempts}/{job.max_attempts}): {error}"
                )

        self.session.flush()
        return job

    def release_due_retries(self, now: Optional[datetime] = None) -> int:
        """
        Move failed jobs whose backoff has elapsed back to pending.

        Returns:
            Number of jobs released
        """
        now = now or utc_now()
        result = (
            self.session.query(EmbeddingJob)
            .filter(
                EmbeddingJob.status == EmbeddingJobStatus.FAILED.value,
                EmbeddingJob.next_attempt_at <= now,
            )
            .update(
                {EmbeddingJob.status: EmbeddingJobStatus.PENDING.value},
                synchronize_session=False,
            )
        )
        if result:
            logger.debug(f"Released {result} embedding jobs for retry")
        return result

    def cleanup_stale_jobs(self, timeout_minutes: Optional[int] = None) -> int:
        """
        Reset jobs that have been in flight for too long (worker crashed).

        Returns:
            Number of jobs reset
        """
        timeout_minutes = timeout_minutes or settings.embedding_stale_job_minutes
        threshold = utc_now() - timedelta(minutes=timeout_minutes)
        result = (
            self.session.query(EmbeddingJob)
            .filter(
                EmbeddingJob.status == EmbeddingJobStatus.IN_FLIGHT.value,
                EmbeddingJob.started_at < threshold,
            )
            .update(
                {
                    EmbeddingJob.status: EmbeddingJobStatus.PENDING.value,
                    EmbeddingJob.started_at: None,
                },
                synchronize_session=False,
            )
        )
        if result > 0:
            logger.warning(f"Reset {result} stale embedding jobs")
        return result

    def purge_completed(self, days: Optional[int] = None) -> int:
        """
        Delete indexed jobs older than ``days``. Dead jobs are kept for audit.

        Returns:
            Number of jobs deleted
        """
        days = days or settings.embedding_purge_days
        threshold = utc_now() - timedelta(days=days)
        result = (
            self.session.query(EmbeddingJob)
            .filter(
                EmbeddingJob.status == EmbeddingJobStatus.INDEXED.value,
                EmbeddingJob.completed_at < threshold,
            )
            .delete(synchronize_session=False)
        )
        if result > 0:
            logger.info(f"Purged {result} indexed embedding jobs older than {days} days")
        return result

    def backfill(self, account_id: Optional[uuid.UUID] = None) -> int:
        """
        Enqueue messages that have neither a vector nor an active job.

        Used after an embedding provider is configured on a server that
        ingested without one. Stops quietly once the queue is full; running
        it again after the worker drains picks up where it left off.

        Returns:
            Number of jobs enqueued
        """
        has_vector = self.session.query(MessageEmbedding.id).filter(
            MessageEmbedding.message_id == Message.id
        )
        has_job = self.session.query(EmbeddingJob.id).filter(
            EmbeddingJob.message_id == Message.id,
            EmbeddingJob.status.in_(ACTIVE_STATUSES),
        )
        query = (
            self.session.query(Message, SessionModel.account_id)
            .join(SessionModel, SessionModel.id == Message.session_id)
            .filter(~has_vector.exists(), ~has_job.exists())
        )
        if account_id is not None:
            query = query.filter(SessionModel.account_id == account_id)

        enqueued = 0
        for message, owner_id in query.order_by(Message.timestamp).all():
            text = message_search_text(message)
            if not text.strip():
                continue
            try:
                self.enqueue(
                    owner_id,
                    message.session_id,
                    message.id,
                    text[: settings.embedding_max_input_chars],
                )
            except EmbeddingQueueFullError:
                logger.info(f"Embedding backfill paused at queue capacity after {enqueued} jobs")
                break
            enqueued += 1
        return enqueued

    def remove_session(self, session_id: uuid.UUID) -> int:
        """Drop all jobs of a deleted session."""
        return (
            self.session.query(EmbeddingJob)
            .filter(EmbeddingJob.session_id == session_id)
            .delete(synchronize_session=False)
        )

    def get_stats(self, account_id: Optional[uuid.UUID] = None) -> QueueStats:
        """
        Get queue statistics, optionally for one account.

        Returns:
            QueueStats with counts by status
        """
        query = self.session.query(EmbeddingJob.status, func.count(EmbeddingJob.id))
        if account_id is not None:
            query = query.filter(EmbeddingJob.account_id == account_id)
        results = query.group_by(EmbeddingJob.status).all()

        stats = QueueStats()
        for status, count in results:
            if status == EmbeddingJobStatus.PENDING.value:
                stats.pending = count
            elif status == EmbeddingJobStatus.IN_FLIGHT.value:
                stats.in_flight = count
            elif status == EmbeddingJobStatus.INDEXED.value:
                stats.indexed = count
            elif status == EmbeddingJobStatus.FAILED.value:
                stats.failed = count
            elif status == EmbeddingJobStatus.DEAD.value:
                stats.dead = count
            stats.total += count
        return stats
