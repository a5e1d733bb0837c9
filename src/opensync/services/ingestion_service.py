"""
Ingestion service: the single write path for sessions and messages.

Every mutation of a session runs under the per-session lock and commits
before the lock is released. One commit covers the redacted message and
its parts, the full-text postings, the analytics rollup deltas, the session
counters and the embedding job, so either all of them are stored or none.

Contention (unique-constraint races between processes, deadlocks) is
retried with exponential backoff and surfaces as ``ConflictError`` once the
attempt budget is spent.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from opensync.analytics.aggregator import AnalyticsAggregator, UsageDelta, compute_cost
from opensync.config import settings
from opensync.db.repositories.api_log import ApiLogRepository
from opensync.db.repositories.message import MessageRepository
from opensync.db.repositories.session import SessionRepository
from opensync.embeddings.queue import EmbeddingJobQueue
from opensync.embeddings.vector_index import VectorIndex
from opensync.exceptions import ConflictError, NotFoundError, OpenSyncError
from opensync.formatting.text import message_search_text
from opensync.indexing.fulltext import FullTextIndexer
from opensync.models.db import Message, Part, Session as SessionModel, SessionSource
from opensync.models.ingest import BatchPayload, MessagePayload, SessionPayload
from opensync.redaction import Redactor
from opensync.services.locks import SessionLockRegistry, session_locks
from opensync.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_deadlock_error(exc: BaseException) -> bool:
    """Check whether a database error is a deadlock or serialization failure."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    pgcode = getattr(orig, "pgcode", None)
    if pgcode in {"40P01", "40001"}:  # deadlock detected / serialization failure
        return True
    return orig.__class__.__name__ in {"DeadlockDetected", "SerializationFailure"}


def _first_error(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


@dataclass
class SessionResult:
    session_id: uuid.UUID
    created: bool


@dataclass
class MessageResult:
    message_id: uuid.UUID
    session_id: uuid.UUID
    created: bool
    redactions: int = 0


@dataclass
class BatchResult:
    sessions: int = 0
    messages: int = 0
    errors: list[str] = field(default_factory=list)


class IngestionService:
    """Writes sessions and messages and keeps every derived index in step."""

    def __init__(
        self,
        session: Session,
        redactor: Optional[Redactor] = None,
        locks: Optional[SessionLockRegistry] = None,
        embeddings_enabled: Optional[bool] = None,
    ):
        self.session = session
        # Without a provider nothing would drain the queue; `opensync reindex
        # --embeddings` backfills once one is configured.
        self.embeddings_enabled = (
            settings.embeddings_configured if embeddings_enabled is None else embeddings_enabled
        )
        self.redactor = redactor or Redactor()
        self.locks = locks or session_locks
        self.sessions = SessionRepository(session)
        self.messages = MessageRepository(session)
        self.indexer = FullTextIndexer(session)
        self.aggregator = AnalyticsAggregator(session)
        self.queue = EmbeddingJobQueue(session)
        self.vectors = VectorIndex(session)

    # -- transaction + lock handling -----------------------------------------

    def _run_locked(
        self, account_id: uuid.UUID, external_id: str, operation: Callable[[], T]
    ) -> T:
        """
        Run ``operation`` under the session lock and commit.

        Raises:
            ConflictError: Contention persisted through every attempt
        """
        max_attempts = max(settings.ingest_max_attempts, 1)
        for attempt in range(max_attempts):
            with self.locks.hold(account_id, external_id):
                try:
                    result = operation()
                    self.session.commit()
                    return result
                except DBAPIError as e:
                    self.session.rollback()
                    if not (isinstance(e, IntegrityError) or _is_deadlock_error(e)):
                        raise
                    if attempt >= max_attempts - 1:
                        logger.error(
                            f"Session {external_id} write still conflicting after "
                            f"{max_attempts} attempts: {e}"
                        )
                        raise ConflictError(
                            f"Concurrent writes to session {external_id}, retry later"
                        ) from e
                    backoff = settings.ingest_backoff_seconds * (2**attempt)
                    logger.warning(
                        "Write conflict on session %s (attempt %s/%s), retrying in %.2fs",
                        external_id,
                        attempt + 1,
                        max_attempts,
                        backoff,
                    )
                except Exception:
                    self.session.rollback()
                    raise
            time.sleep(backoff)
        raise ConflictError(f"Concurrent writes to session {external_id}, retry later")

    # -- helpers --------------------------------------------------------------

    def _get_or_create_session(
        self,
        account_id: uuid.UUID,
        external_id: str,
        source: Optional[str] = None,
        model: Optional[str] = None,
        started_at=None,
    ) -> tuple[SessionModel, bool]:
        row = self.sessions.get_by_external_id(account_id, external_id, for_update=True)
        if row is not None:
            return row, False

        row = SessionModel(
            account_id=account_id,
            external_id=external_id,
            source=SessionSource.normalize(source).value,
            model=model,
            started_at=ensure_utc(started_at) or utc_now(),
            prompt_tokens=0,
            completion_tokens=0,
            total_tokens=0,
            cost=0.0,
            message_count=0,
            usage_reported=False,
            needs_audit=False,
            eval_ready=False,
            eval_tags=[],
        )
        self.session.add(row)
        self.session.flush()
        logger.info(f"Created session {row.id} (external id {external_id})")
        return row, True

    @staticmethod
    def _add_to_session(row: SessionModel, delta: UsageDelta) -> None:
        row.message_count += delta.message_count
        row.prompt_tokens += delta.prompt_tokens
        row.completion_tokens += delta.completion_tokens
        row.total_tokens += delta.total_tokens
        row.cost += delta.cost

    def _apply_reported_usage(self, row: SessionModel, payload: SessionPayload) -> None:
        """Make reported session totals authoritative via a signed adjustment."""
        prompt = payload.prompt_tokens or row.prompt_tokens
        completion = payload.completion_tokens or row.completion_tokens
        if payload.total_tokens:
            total = payload.total_tokens
        elif payload.prompt_tokens or payload.completion_tokens:
            total = prompt + completion
        else:
            total = row.total_tokens

        if payload.cost is not None:
            cost = payload.cost
        else:
            cost = row.cost + compute_cost(
                row.model, prompt - row.prompt_tokens, completion - row.completion_tokens
            )

        delta = UsageDelta(
            prompt_tokens=prompt - row.prompt_tokens,
            completion_tokens=completion - row.completion_tokens,
            total_tokens=total - row.total_tokens,
            cost=cost - row.cost,
        )
        row.usage_reported = True
        if delta.is_zero():
            return
        self._add_to_session(row, delta)
        self.aggregator.on_session_adjusted(row, delta)
        logger.debug(f"Adjusted session {row.id} usage by {delta}")

    def _require_session(self, account_id: uuid.UUID, session_id: uuid.UUID) -> SessionModel:
        row = self.sessions.get_for_account(session_id, account_id)
        if row is None:
            raise NotFoundError("Session", session_id)
        return row

    # -- operations -----------------------------------------------------------

    def upsert_session(self, account_id: uuid.UUID, payload: SessionPayload) -> SessionResult:
        """
        Create a session or update its metadata.

        Idempotent: sending the same payload twice leaves one session with
        the same state.

        Args:
            account_id: Owner account
            payload: Session metadata from the plugin

        Returns:
            SessionResult with the session id and whether it was created
        """

        def _upsert() -> SessionResult:
            started_at = ensure_utc(payload.created_at)
            row, created = self._get_or_create_session(
                account_id,
                payload.external_id,
                source=payload.source,
                model=payload.model,
                started_at=started_at,
            )

            if payload.title is not None:
                row.title, _, title_audit = self.redactor.redact_safe(payload.title)
                row.needs_audit = row.needs_audit or title_audit
            for name in ("project_path", "project_name", "git_branch", "model", "provider"):
                value = getattr(payload, name)
                if value is not None:
                    setattr(row, name, value)
            if payload.source:
                row.source = SessionSource.normalize(payload.source).value
            if started_at is not None and started_at < ensure_utc(row.started_at):
                row.started_at = started_at
            if payload.ended_at is not None:
                row.ended_at = ensure_utc(payload.ended_at)
            previous_duration = row.duration_ms or 0
            if payload.duration_ms is not None:
                row.duration_ms = payload.duration_ms
            self.session.flush()

            if created:
                self.aggregator.on_session_created(row)
            if (row.duration_ms or 0) != previous_duration:
                self.aggregator.on_session_adjusted(
                    row, UsageDelta(duration_ms=(row.duration_ms or 0) - previous_duration)
                )
            if payload.reports_usage:
                self._apply_reported_usage(row, payload)

            row.updated_at = utc_now()
            self.session.flush()
            return SessionResult(session_id=row.id, created=created)

        return self._run_locked(account_id, payload.external_id, _upsert)

    def append_message(self, account_id: uuid.UUID, payload: MessagePayload) -> MessageResult:
        """
        Append a message to a session (auto-creating the session).

        Re-sending a message with an external id that is already stored
        returns the existing message id and changes nothing.

        Args:
            account_id: Owner account
            payload: Message from the plugin

        Returns:
            MessageResult

        Raises:
            EmbeddingQueueFullError: Embedding queue at capacity (nothing stored)
            ConflictError: Persistent write contention
        """

        def _append() -> MessageResult:
            timestamp = ensure_utc(payload.created_at) or utc_now()
            row, created = self._get_or_create_session(
                account_id,
                payload.session_external_id,
                source=payload.source,
                model=payload.model,
                started_at=timestamp,
            )
            if created:
                self.aggregator.on_session_created(row)

            if payload.external_id:
                existing = self.messages.get_by_external_id(row.id, payload.external_id)
                if existing is not None:
                    logger.debug(f"Message {payload.external_id} already stored, skipping")
                    return MessageResult(
                        message_id=existing.id, session_id=row.id, created=False
                    )

            redactions = 0
            parts = []
            for order, part_payload in enumerate(payload.parts):
                redacted, count = self.redactor.redact(part_payload.to_raw_part())
                redactions += count
                parts.append(
                    Part(
                        order=order,
                        type=redacted.type,
                        content=redacted.content,
                        payload=redacted.payload,
                        redaction_count=redacted.redaction_count,
                        needs_audit=redacted.needs_audit,
                    )
                )

            text, text_redactions, text_audit = self.redactor.redact_safe(payload.text_content)
            redactions += text_redactions
            if not text:
                text = "\n".join(p.content for p in parts if p.type == "text" and p.content) or None

            model = payload.model or row.model
            cost = (
                payload.cost
                if payload.cost is not None
                else compute_cost(model, payload.prompt_tokens, payload.completion_tokens)
            )
            message = Message(
                session_id=row.id,
                external_id=payload.external_id or uuid.uuid4().hex,
                role=payload.role,
                ordinal=self.messages.next_ordinal(row.id),
                text_content=text,
                model=payload.model,
                prompt_tokens=payload.prompt_tokens,
                completion_tokens=payload.completion_tokens,
                cost=cost,
                duration_ms=payload.duration_ms,
                needs_audit=text_audit,
                timestamp=timestamp,
                parts=parts,
            )
            self.session.add(message)
            self.session.flush()

            search_text = message_search_text(message)
            self.indexer.index(account_id, row.id, message.id, search_text, timestamp)

            delta = self.aggregator.on_message_ingested(row, message)
            self._add_to_session(row, delta)
            if row.ended_at is None or timestamp > ensure_utc(row.ended_at):
                row.ended_at = timestamp
            row.updated_at = utc_now()

            if self.embeddings_enabled and search_text.strip():
                self.queue.enqueue(
                    account_id,
                    row.id,
                    message.id,
                    search_text[: settings.embedding_max_input_chars],
                )

            self.session.flush()
            if redactions:
                logger.info(f"Redacted {redactions} secret(s) from message {message.id}")
            return MessageResult(
                message_id=message.id,
                session_id=row.id,
                created=True,
                redactions=redactions,
            )

        return self._run_locked(account_id, payload.session_external_id, _append)

    def ingest_batch(self, account_id: uuid.UUID, batch: BatchPayload) -> BatchResult:
        """
        Ingest many sessions and messages.

        Items are committed one at a time; invalid items are reported in
        ``errors`` and skipped. Backpressure and persistent contention abort
        the batch so the (idempotent) request can be retried as a whole.

        Returns:
            BatchResult with counts and per-item errors
        """
        result = BatchResult()

        def _record(kind: str, index: int, exc: Exception) -> None:
            if isinstance(exc, PydanticValidationError):
                message = _first_error(exc)
            elif isinstance(exc, OpenSyncError):
                message = exc.message
            else:
                message = str(exc)
            result.errors.append(f"{kind}[{index}]: {message}")

        for index, raw in enumerate(batch.sessions):
            try:
                self.upsert_session(account_id, SessionPayload.model_validate(raw))
                result.sessions += 1
            except ConflictError:
                raise
            except (PydanticValidationError, OpenSyncError) as e:
                _record("sessions", index, e)

        for index, raw in enumerate(batch.messages):
            try:
                self.append_message(account_id, MessagePayload.model_validate(raw))
                result.messages += 1
            except ConflictError:
                raise
            except (PydanticValidationError, OpenSyncError) as e:
                _record("messages", index, e)

        logger.info(
            f"Batch ingest: {result.sessions} sessions, {result.messages} messages, "
            f"{len(result.errors)} errors"
        )
        return result

    def set_eval_ready(
        self,
        account_id: uuid.UUID,
        session_id: uuid.UUID,
        eval_ready: bool,
        notes: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> SessionModel:
        """
        Flag or unflag a session for eval export.

        Raises:
            NotFoundError: Unknown session for this account
        """
        external_id = self._require_session(account_id, session_id).external_id

        def _flag() -> SessionModel:
            row = self.sessions.get_by_external_id(account_id, external_id, for_update=True)
            if row is None:
                raise NotFoundError("Session", session_id)
            row.eval_ready = eval_ready
            row.reviewed_at = utc_now() if eval_ready else None
            if notes is not None:
                row.eval_notes, _, notes_audit = self.redactor.redact_safe(notes)
                row.needs_audit = row.needs_audit or notes_audit
            if tags is not None:
                row.eval_tags = list(tags)
            row.updated_at = utc_now()
            self.session.flush()
            return row

        return self._run_locked(account_id, external_id, _flag)

    def delete_session(self, account_id: uuid.UUID, session_id: uuid.UUID) -> dict[str, Any]:
        """
        Delete a session and everything derived from it.

        Messages, parts, postings, vectors and queued embedding jobs go in
        the same transaction that subtracts the session's rollup
        contributions.

        Raises:
            NotFoundError: Unknown session for this account
        """
        external_id = self._require_session(account_id, session_id).external_id

        def _delete() -> dict[str, Any]:
            row = self.sessions.get_by_external_id(account_id, external_id, for_update=True)
            if row is None:
                raise NotFoundError("Session", session_id)
            removed = self.aggregator.on_session_deleted(row)
            postings = self.indexer.remove_session(row.id)
            vectors = self.vectors.remove_session(row.id)
            jobs = self.queue.remove_session(row.id)
            message_count = row.message_count
            self.session.delete(row)
            self.session.flush()
            logger.info(
                f"Deleted session {row.id}: {message_count} messages, {postings} postings, "
                f"{vectors} vectors, {jobs} embedding jobs, {removed.total_tokens} tokens"
            )
            return {
                "deleted": True,
                "session_id": str(session_id),
                "messages": message_count,
            }

        return self._run_locked(account_id, external_id, _delete)

    def delete_all_data(self, account_id: uuid.UUID) -> dict[str, int]:
        """Delete every session and access log of an account."""
        session_ids = [row.id for row in self.sessions.list_for_account(account_id)]
        messages = 0
        for session_id in session_ids:
            messages += self.delete_session(account_id, session_id)["messages"]
        logs = ApiLogRepository(self.session).delete_for_account(account_id)
        self.session.commit()
        return {"sessions": len(session_ids), "messages": messages, "api_logs": logs}

    def list_external_ids(self, account_id: uuid.UUID) -> list[str]:
        """External ids of every stored session (plugins resume from this)."""
        return self.sessions.list_external_ids(account_id)
