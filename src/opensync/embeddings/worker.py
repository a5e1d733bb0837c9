"""
Background worker for the embedding pipeline.

Polls the embedding job queue, embeds claimed messages in batches and
writes their vectors. Delivery is at-least-once: a job is only marked
indexed after its vector is stored, and a crashed worker's in-flight jobs
are reset by ``cleanup_stale_jobs``.
"""

import logging
import threading
import time
from contextlib import AbstractContextManager
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from opensync.config import settings
from opensync.db.connection import background_session
from opensync.db.repositories.message import MessageRepository
from opensync.embeddings.base import EmbeddingProvider
from opensync.embeddings.openai import get_embedding_provider
from opensync.embeddings.queue import EmbeddingJobQueue
from opensync.embeddings.vector_index import VectorIndex
from opensync.exceptions import UpstreamProviderError

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractContextManager[Session]]


class EmbeddingWorker:
    """
    Background worker that processes embedding jobs from the queue.

    Features:
    - Batched provider calls
    - Capped exponential backoff per job, dead-lettering after max attempts
    - Graceful shutdown support
    - Stale job cleanup
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        session_scope: SessionScope = background_session,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        cleanup_interval: float = 300.0,
    ):
        """
        Initialize the embedding worker.

        Args:
            provider: Embedding provider (built from settings if None)
            session_scope: Context manager factory yielding a DB session
            poll_interval: Seconds between queue polls when idle
            batch_size: Jobs claimed per provider call
            cleanup_interval: Seconds between stale-job/purge sweeps
        """
        self._provider = provider
        self.session_scope = session_scope
        self.poll_interval = poll_interval or settings.embedding_poll_interval
        self.batch_size = batch_size or settings.embedding_batch_size
        self.cleanup_interval = cleanup_interval
        self._running = False
        self._stop_event = threading.Event()
        self._last_cleanup = 0.0
        self._jobs_processed = 0
        self._jobs_succeeded = 0
        self._jobs_failed = 0
        self._last_job_time: Optional[float] = None

    def _get_provider(self) -> Optional[EmbeddingProvider]:
        """Get or create the embedding provider (lazy initialization)."""
        if self._provider is None:
            self._provider = get_embedding_provider()
            if self._provider is None:
                logger.warning("OpenAI API key not configured - embedding worker idle")
        return self._provider

    def run(self) -> None:
        """
        Main worker loop.

        Polls the job queue and processes batches until stopped.
        """
        logger.info("Embedding worker starting")
        self._running = True

        while not self._stop_event.is_set():
            try:
                if time.monotonic() - self._last_cleanup >= self.cleanup_interval:
                    self._cleanup()
                processed = self.process_batch()
                if not processed:
                    self._stop_event.wait(self.poll_interval)
            except OperationalError as e:
                logger.warning(f"Embedding worker DB unavailable: {e}")
                self._stop_event.wait(5.0)
            except Exception as e:
                logger.error(f"Error in embedding worker loop: {e}", exc_info=True)
                self._stop_event.wait(1.0)

        logger.info(
            f"Embedding worker stopped. "
            f"Processed: {self._jobs_processed}, "
            f"Succeeded: {self._jobs_succeeded}, "
            f"Failed: {self._jobs_failed}"
        )
        self._running = False

    def stop(self) -> None:
        """Signal the worker to stop gracefully."""
        logger.info("Embedding worker stop requested")
        self._stop_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    def process_batch(self) -> int:
        """
        Claim and process one batch of jobs.

        Returns:
            Number of jobs claimed (0 when the queue is empty or no
            provider is configured)
        """
        provider = self._get_provider()
        if provider is None:
            return 0

        with self.session_scope() as session:
            queue = EmbeddingJobQueue(session)
            queue.release_due_retries()
            jobs = queue.claim_batch(self.batch_size)
            if not jobs:
                session.commit()
                return 0

            # Persist claim state before calling the provider so attempts
            # survive a crash mid-batch.
            session.commit()
            self._jobs_processed += len(jobs)

            message_repo = MessageRepository(session)
            live = [job for job in jobs if message_repo.exists(job.message_id)]
            for job in jobs:
                if job not in live:
                    # Message deleted while queued, nothing to index
                    logger.debug(f"Skipping embedding job {job.id}, message is gone")
                    queue.complete(job.id, success=True)

            if live:
                try:
                    vectors = provider.embed_batch([job.text for job in live])
                except UpstreamProviderError as e:
                    for job in live:
                        queue.complete(job.id, success=False, error=str(e))
                    self._jobs_failed += len(live)
                    logger.warning(f"Embedding batch of {len(live)} jobs failed: {e}")
                else:
                    index = VectorIndex(session)
                    for job, vector in zip(live, vectors):
                        try:
                            with session.begin_nested():
                                index.upsert(
                                    account_id=job.account_id,
                                    session_id=job.session_id,
                                    message_id=job.message_id,
                                    vector=vector,
                                    model=provider.model_name,
                                    text_hash=job.text_hash,
                                )
                        except IntegrityError:
                            # Message deleted after the liveness check
                            logger.debug(f"Dropping vector for job {job.id}, message is gone")
                        queue.complete(job.id, success=True)
                    self._jobs_succeeded += len(live)
                    self._last_job_time = time.time()
                    logger.info(f"Indexed {len(live)} message embeddings")

            session.commit()
            return len(jobs)

    def drain(self, max_batches: int = 1000) -> int:
        """Process batches until the queue has nothing claimable."""
        total = 0
        for _ in range(max_batches):
            processed = self.process_batch()
            if not processed:
                break
            total += processed
        return total

    def _cleanup(self) -> None:
        """Perform periodic cleanup tasks."""
        self._last_cleanup = time.monotonic()
        try:
            with self.session_scope() as session:
                queue = EmbeddingJobQueue(session)
                queue.cleanup_stale_jobs()
                queue.purge_completed()
                session.commit()
        except OperationalError as e:
            logger.warning(f"Embedding worker cleanup skipped (DB unavailable): {e}")


# Singleton worker instance for app lifecycle management
_worker: Optional[EmbeddingWorker] = None
_worker_thread: Optional[threading.Thread] = None


def start_worker(provider: Optional[EmbeddingProvider] = None) -> None:
    """Start the global embedding worker in a background thread."""
    global _worker, _worker_thread

    if _worker is not None and _worker.is_running:
        logger.warning("Embedding worker is already running")
        return

    _worker = EmbeddingWorker(provider=provider)
    _worker_thread = threading.Thread(
        target=_worker.run,
        daemon=True,
        name="embedding-worker",
    )
    _worker_thread.start()
    logger.info("Started embedding worker background thread")


def stop_worker(timeout: float = 10.0) -> None:
    """Stop the global embedding worker gracefully."""
    global _worker, _worker_thread

    if _worker is None:
        return

    _worker.stop()

    if _worker_thread is not None and _worker_thread.is_alive():
        _worker_thread.join(timeout=timeout)
        if _worker_thread.is_alive():
            logger.warning(
                f"Embedding worker thread did not stop within {timeout}s timeout"
            )

    _worker = None
    _worker_thread = None
    logger.info("Stopped embedding worker")


def get_worker_stats() -> dict[str, object]:
    """Get statistics from the embedding worker."""
    if _worker is None:
        return {"running": False}

    return {
        "running": _worker.is_running,
        "jobs_processed": _worker._jobs_processed,
        "jobs_succeeded": _worker._jobs_succeeded,
        "jobs_failed": _worker._jobs_failed,
        "last_job_time": _worker._last_job_time,
    }
