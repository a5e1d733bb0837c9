"""
Embedding pipeline status route.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from opensync.api.auth import AuthContext, get_auth_context
from opensync.api.schemas import envelope
from opensync.config import settings
from opensync.db.connection import get_db
from opensync.embeddings.queue import EmbeddingJobQueue
from opensync.embeddings.vector_index import VectorIndex
from opensync.embeddings.worker import get_worker_stats
from opensync.search import engine as search_engine

router = APIRouter(prefix="/api/embeddings", tags=["embeddings"])


@router.get("/status")
def embeddings_status(
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_db),
) -> dict:
    """Queue depth per state, stored vectors, worker and circuit state."""
    stats = EmbeddingJobQueue(session).get_stats(auth.account_id)
    return envelope(
        {
            "configured": settings.embeddings_configured,
            "model": settings.embedding_model,
            "queue": stats.to_dict(),
            "vectors": VectorIndex(session).count(auth.account_id),
            "worker": get_worker_stats(),
            "query_circuit": search_engine.query_circuit.stats(),
        }
    )
