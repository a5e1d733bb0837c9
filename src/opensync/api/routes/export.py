"""
Export API routes.

- GET /api/export       - one session as json, markdown or jsonl
- GET /api/export/evals - eval-ready sessions as a dataset
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from opensync.api.auth import AuthContext, get_auth_context
from opensync.api.schemas import envelope
from opensync.db.connection import get_db
from opensync.db.repositories import SessionRepository
from opensync.exceptions import NotFoundError
from opensync.formatting.export import ExportResult, export_eval_sessions, export_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/export", tags=["export"])


def _download(result: ExportResult) -> Response:
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@router.get("")
def export(
    id: UUID = Query(..., description="Session UUID"),
    format: str = Query("json", description="json, markdown or jsonl"),
    download: bool = Query(False, description="Return the raw file as an attachment"),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
):
    """Export one session."""
    row = SessionRepository(session).get_with_messages(id, auth.account_id)
    if row is None:
        raise NotFoundError("Session", id)

    result = export_session(row, list(row.messages), format=format)
    if download:
        return _download(result)
    return envelope(
        {
            "format": format,
            "filename": result.filename,
            "content": result.data if result.data is not None else result.content,
        }
    )


@router.get("/evals")
def export_evals(
    format: str = Query("jsonl", description="jsonl, openai or deepeval"),
    include_system_prompts: bool = Query(False, alias="includeSystemPrompts"),
    include_context: bool = Query(False, alias="includeContext"),
    anonymize: bool = Query(False, alias="anonymizePaths"),
    download: bool = Query(False),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
):
    """Export every eval-ready session of the account."""
    sessions = SessionRepository(session).list_eval_ready(auth.account_id)
    result = export_eval_sessions(
        sessions,
        format=format,
        include_system_prompts=include_system_prompts,
        include_context=include_context,
        anonymize=anonymize,
    )
    logger.info(
        f"Eval export ({format}) for account {auth.account_id}: "
        f"{result.stats['sessions']} sessions, {result.stats['test_cases']} test cases"
    )
    if download:
        return _download(result)
    return envelope(
        {
            "format": format,
            "filename": result.filename,
            "stats": result.stats,
            "content": result.content,
        }
    )
