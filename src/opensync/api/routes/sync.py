"""
Plugin sync API routes.

The CLI plugins push sessions and messages here:
- POST /sync/session        - create or update a session
- POST /sync/message        - append a message (auto-creates the session)
- POST /sync/batch          - many sessions and messages at once
- GET  /sync/sessions/list  - external ids already stored (resume support)

Every write is idempotent, so a plugin can retry any request that failed
with a retryable error (HTTP 503).
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from opensync.api.auth import AuthContext, get_auth_context
from opensync.api.schemas import envelope
from opensync.db.connection import get_db
from opensync.models.ingest import BatchPayload, MessagePayload, SessionPayload
from opensync.services.ingestion_service import IngestionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/session")
def sync_session(
    payload: SessionPayload,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Create or update a session."""
    result = IngestionService(session).upsert_session(auth.account_id, payload)
    return envelope({"session_id": str(result.session_id), "created": result.created})


@router.post("/message")
def sync_message(
    payload: MessagePayload,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Append a message to a session."""
    result = IngestionService(session).append_message(auth.account_id, payload)
    return envelope(
        {
            "message_id": str(result.message_id),
            "session_id": str(result.session_id),
            "created": result.created,
        }
    )


@router.post("/batch")
def sync_batch(
    payload: BatchPayload,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Ingest a batch; invalid items are reported in ``errors`` and skipped."""
    result = IngestionService(session).ingest_batch(auth.account_id, payload)
    return envelope(
        {"sessions": result.sessions, "messages": result.messages, "errors": result.errors}
    )


@router.get("/sessions/list")
def list_session_ids(
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """External ids of every stored session."""
    ids = IngestionService(session).list_external_ids(auth.account_id)
    return envelope({"session_ids": ids})
