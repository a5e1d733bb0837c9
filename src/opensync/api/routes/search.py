"""
Search and RAG context API routes.

- GET /api/search  - full-text, semantic or hybrid search over messages
- GET /api/context - search results rendered for LLM context injection
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from opensync.api.auth import AuthContext, get_auth_context
from opensync.api.schemas import envelope
from opensync.config import settings
from opensync.db.connection import get_db
from opensync.embeddings.base import EmbeddingProvider
from opensync.formatting.context import format_context
from opensync.search.engine import SearchEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["search"])

# Lazy-initialized query embedding provider (None when not configured)
_search_provider: Optional[EmbeddingProvider] = None
_search_provider_loaded = False


def get_search_provider() -> Optional[EmbeddingProvider]:
    """Get or create the provider used to embed queries (lazy initialization)."""
    global _search_provider, _search_provider_loaded
    if not _search_provider_loaded:
        from opensync.embeddings.openai import get_embedding_provider

        _search_provider = get_embedding_provider()
        _search_provider_loaded = True
        if _search_provider is None:
            logger.info("No embedding provider configured, search runs full-text only")
    return _search_provider


@router.get("/search")
def search(
    q: Optional[str] = Query(None, description="Search query"),
    type: str = Query("hybrid", description="fulltext, semantic or hybrid"),
    limit: Optional[int] = Query(None, ge=1, description="Maximum results"),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
    provider: Optional[EmbeddingProvider] = Depends(get_search_provider),
) -> dict:
    """
    Search messages.

    Semantic and hybrid searches fall back to full-text results with
    ``degraded: true`` when the embedding provider is unavailable.
    """
    response = SearchEngine(session, provider=provider).search(
        auth.account_id, q or "", mode=type, limit=limit
    )
    return envelope(response.to_dict())


@router.get("/context")
def context(
    q: Optional[str] = Query(None, description="What the context should be relevant to"),
    format: str = Query("text", description="text or messages"),
    limit: Optional[int] = Query(None, ge=1, le=50, description="Maximum sessions"),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
    provider: Optional[EmbeddingProvider] = Depends(get_search_provider),
) -> dict:
    """
    Build RAG context from the most relevant sessions.

    Hybrid search runs deep enough to fill ``limit`` sessions; the hits are
    grouped per session and rendered as text or chat messages.
    """
    sessions = limit or settings.context_default_limit
    response = SearchEngine(session, provider=provider).search(
        auth.account_id,
        q or "",
        mode="hybrid",
        limit=min(sessions * 4, settings.search_max_limit),
    )
    rendered = format_context(response, format=format, limit=sessions)
    return envelope({"query": response.query, "format": format, **rendered})
