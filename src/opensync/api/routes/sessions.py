"""
Session API routes.

Endpoints for listing, reading, deleting and flagging sessions.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from opensync.api.auth import AuthContext, get_auth_context
from opensync.api.schemas import EvalReadyRequest, SessionDetail, SessionSummary, envelope
from opensync.db.connection import get_db
from opensync.db.repositories import SessionRepository
from opensync.exceptions import NotFoundError
from opensync.models.db import SessionSource
from opensync.services.ingestion_service import IngestionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.get("")
def list_sessions(
    limit: int = Query(50, ge=1, le=500, description="Maximum sessions to return"),
    offset: int = Query(0, ge=0),
    source: Optional[str] = Query(None, description="Filter by CLI source"),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """
    List sessions, most recently updated first.

    Args:
        limit: Maximum number of sessions
        offset: Number of sessions to skip
        source: Optional source filter (``opencode``, ``claude-code``...)
    """
    if source:
        source = SessionSource.normalize(source).value
    rows = SessionRepository(session).list_for_account(
        auth.account_id, limit=limit, offset=offset, source=source
    )
    return envelope(
        {
            "sessions": [SessionSummary.model_validate(row).model_dump(mode="json") for row in rows],
            "count": len(rows),
        }
    )


@router.get("/get")
def get_session(
    id: UUID = Query(..., description="Session UUID"),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Get one session with its messages and parts in ordinal order."""
    row = SessionRepository(session).get_with_messages(id, auth.account_id)
    if row is None:
        raise NotFoundError("Session", id)
    return envelope(SessionDetail.model_validate(row).model_dump(mode="json"))


@router.delete("")
def delete_session(
    id: UUID = Query(..., description="Session UUID"),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Delete a session with its messages, index entries and analytics contributions."""
    result = IngestionService(session).delete_session(auth.account_id, id)
    return envelope(result)


@router.post("/eval-ready")
def set_eval_ready(
    request: EvalReadyRequest,
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Flag or unflag a session for eval export, with optional notes and tags."""
    row = IngestionService(session).set_eval_ready(
        auth.account_id,
        request.id,
        request.eval_ready,
        notes=request.notes,
        tags=request.tags,
    )
    return envelope(SessionSummary.model_validate(row).model_dump(mode="json"))
