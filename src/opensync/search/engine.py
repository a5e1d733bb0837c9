"""
Search engine over the full-text and vector indexes.

Three modes:

- ``fulltext``: term-frequency ranking from the postings table.
- ``semantic``: the query is embedded with the configured provider and
  compared against stored message vectors by cosine similarity.
- ``hybrid``: both lists are fused with Reciprocal Rank Fusion. Full-text
  and cosine scores live on incomparable scales; RRF only looks at ranks.

Semantic and hybrid never fail because of the provider: when it is
unconfigured, failing, or its circuit is open, the response carries the
full-text results and ``degraded=True``.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Hashable, Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from opensync.config import settings
from opensync.db.repositories.message import MessageRepository
from opensync.db.repositories.session import SessionRepository
from opensync.embeddings.base import EmbeddingProvider
from opensync.embeddings.resilience import CircuitBreaker
from opensync.embeddings.vector_index import VectorHit, VectorIndex
from opensync.exceptions import UpstreamProviderError, ValidationError
from opensync.formatting.text import make_snippet, message_display_text
from opensync.indexing.fulltext import FullTextHit, FullTextIndexer, query_terms
from opensync.models.db import Message, Session as SessionModel

logger = logging.getLogger(__name__)

SEARCH_MODES = ("fulltext", "semantic", "hybrid")

# Shared across requests so repeated provider failures open the circuit
query_circuit = CircuitBreaker(
    failure_threshold=settings.embedding_circuit_failure_threshold,
    reset_timeout=settings.embedding_circuit_reset_seconds,
)


def reciprocal_rank_fusion(
    ranked_lists: Sequence[Sequence[Hashable]], k: Optional[int] = None
) -> dict[Hashable, float]:
    """
    Fuse ranked lists with Reciprocal Rank Fusion.

    Each item scores ``sum(1 / (k + rank))`` over the lists it appears in,
    with 1-based ranks. Items present in only one list get that list's
    contribution alone.

    Args:
        ranked_lists: Lists of item keys, best first
        k: Smoothing constant (``settings.rrf_k`` if None)

    Returns:
        Mapping of item key to fused score
    """
    k = settings.rrf_k if k is None else k
    fused: dict[Hashable, float] = {}
    for ranked in ranked_lists:
        for rank, key in enumerate(ranked, start=1):
            fused[key] = fused.get(key, 0.0) + 1.0 / (k + rank)
    return fused


@dataclass
class SearchHit:
    """One matched message with its session context and per-mode ranks."""

    session_id: uuid.UUID
    message_id: uuid.UUID
    score: float
    role: str = ""
    ordinal: int = 0
    timestamp: Optional[datetime] = None
    snippet: str = ""
    content: str = ""
    session_title: Optional[str] = None
    project_path: Optional[str] = None
    model: Optional[str] = None
    source: Optional[str] = None
    fulltext_score: Optional[float] = None
    fulltext_rank: Optional[int] = None
    semantic_score: Optional[float] = None
    semantic_rank: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "session_id": str(self.session_id),
            "message_id": str(self.message_id),
            "score": self.score,
            "role": self.role,
            "ordinal": self.ordinal,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "snippet": self.snippet,
            "session": {
                "title": self.session_title,
                "project_path": self.project_path,
                "model": self.model,
                "source": self.source,
            },
            "fulltext": {"score": self.fulltext_score, "rank": self.fulltext_rank},
            "semantic": {"score": self.semantic_score, "rank": self.semantic_rank},
        }


@dataclass
class SessionGroup:
    """Hits of one session, in hit order."""

    session_id: uuid.UUID
    title: Optional[str]
    project_path: Optional[str]
    model: Optional[str]
    source: Optional[str]
    hits: list[SearchHit] = field(default_factory=list)

    @property
    def best_score(self) -> float:
        return max((hit.score for hit in self.hits), default=0.0)


@dataclass
class SearchResponse:
    """Result of a search call."""

    query: str
    mode: str
    hits: list[SearchHit]
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "type": self.mode,
            "degraded": self.degraded,
            "count": len(self.hits),
            "results": [hit.to_dict() for hit in self.hits],
        }


def group_by_session(hits: Iterable[SearchHit]) -> list[SessionGroup]:
    """Group hits by session, sessions ordered by their best hit."""
    groups: dict[uuid.UUID, SessionGroup] = {}
    for hit in hits:
        group = groups.get(hit.session_id)
        if group is None:
            group = SessionGroup(
                session_id=hit.session_id,
                title=hit.session_title,
                project_path=hit.project_path,
                model=hit.model,
                source=hit.source,
            )
            groups[hit.session_id] = group
        group.hits.append(hit)
    return list(groups.values())


class SearchEngine:
    """Read-only query engine. Holds no locks and writes nothing."""

    def __init__(
        self,
        session: Session,
        provider: Optional[EmbeddingProvider] = None,
        circuit: Optional[CircuitBreaker] = None,
        rrf_k: Optional[int] = None,
    ):
        self.session = session
        self.provider = provider
        self.circuit = circuit or query_circuit
        self.rrf_k = settings.rrf_k if rrf_k is None else rrf_k
        self.fulltext_index = FullTextIndexer(session)
        self.vector_index = VectorIndex(session)

    # -- candidate generation -------------------------------------------------

    def _fulltext_candidates(
        self, account_id: uuid.UUID, query: str, depth: int
    ) -> list[FullTextHit]:
        return self.fulltext_index.query(account_id, query_terms(query), depth)

    def _semantic_candidates(
        self, account_id: uuid.UUID, query: str, depth: int
    ) -> list[VectorHit]:
        """
        Nearest vectors for the query text.

        Raises:
            UpstreamProviderError: Provider missing, failing, or circuit open
        """
        if self.provider is None:
            raise UpstreamProviderError("No embedding provider configured")
        vector = self.circuit.call(self.provider.embed_text, query)
        hits = self.vector_index.nearest(account_id, vector, depth)
        return [hit for hit in hits if hit.similarity > settings.semantic_min_similarity]

    # -- hydration ------------------------------------------------------------

    def _hydrate(
        self,
        account_id: uuid.UUID,
        keys: list[tuple[uuid.UUID, uuid.UUID]],
        terms: list[str],
    ) -> dict[uuid.UUID, SearchHit]:
        """Build hits (without scores) for message keys that still exist."""
        messages = MessageRepository(self.session).get_many([m for _, m in keys])
        sessions = SessionRepository(self.session).get_many(
            list({s for s, _ in keys}), account_id
        )
        hits: dict[uuid.UUID, SearchHit] = {}
        for session_id, message_id in keys:
            message: Optional[Message] = messages.get(message_id)
            owner: Optional[SessionModel] = sessions.get(session_id)
            if message is None or owner is None:
                continue
            content = message_display_text(message)
            hits[message_id] = SearchHit(
                session_id=session_id,
                message_id=message_id,
                score=0.0,
                role=message.role,
                ordinal=message.ordinal,
                timestamp=message.timestamp,
                snippet=make_snippet(content, terms, settings.snippet_chars),
                content=content,
                session_title=owner.title,
                project_path=owner.project_path,
                model=message.model or owner.model,
                source=owner.source,
            )
        return hits

    # -- modes ----------------------------------------------------------------

    def fulltext(self, account_id: uuid.UUID, query: str, limit: int) -> list[SearchHit]:
        """Full-text hits ranked by term frequency, then recency."""
        candidates = self._fulltext_candidates(account_id, query, limit)
        hits = self._hydrate(
            account_id,
            [(c.session_id, c.message_id) for c in candidates],
            query_terms(query),
        )
        results = []
        for rank, candidate in enumerate(candidates, start=1):
            hit = hits.get(candidate.message_id)
            if hit is None:
                continue
            hit.score = candidate.score
            hit.fulltext_score = candidate.score
            hit.fulltext_rank = rank
            results.append(hit)
        return results

    def semantic(self, account_id: uuid.UUID, query: str, limit: int) -> list[SearchHit]:
        """
        Hits ranked by cosine similarity.

        Raises:
            UpstreamProviderError: When the provider cannot embed the query
        """
        candidates = self._semantic_candidates(account_id, query, limit)
        hits = self._hydrate(
            account_id,
            [(c.session_id, c.message_id) for c in candidates],
            query_terms(query),
        )
        results = []
        for rank, candidate in enumerate(candidates, start=1):
            hit = hits.get(candidate.message_id)
            if hit is None:
                continue
            hit.score = candidate.similarity
            hit.semantic_score = candidate.similarity
            hit.semantic_rank = rank
            results.append(hit)
        return results

    def hybrid(self, account_id: uuid.UUID, query: str, limit: int) -> list[SearchHit]:
        """
        Full-text and semantic candidates fused with RRF.

        Raises:
            UpstreamProviderError: When the provider cannot embed the query
        """
        depth = limit * settings.search_candidate_multiplier
        text_candidates = self._fulltext_candidates(account_id, query, depth)
        vector_candidates = self._semantic_candidates(account_id, query, depth)

        text_keys = [c.message_id for c in text_candidates]
        vector_keys = [c.message_id for c in vector_candidates]
        fused = reciprocal_rank_fusion([text_keys, vector_keys], self.rrf_k)

        sessions_by_message = {c.message_id: c.session_id for c in text_candidates}
        sessions_by_message.update({c.message_id: c.session_id for c in vector_candidates})
        hits = self._hydrate(
            account_id,
            [(sessions_by_message[m], m) for m in fused],
            query_terms(query),
        )

        for rank, candidate in enumerate(text_candidates, start=1):
            hit = hits.get(candidate.message_id)
            if hit is not None:
                hit.fulltext_score = candidate.score
                hit.fulltext_rank = rank
        for rank, candidate in enumerate(vector_candidates, start=1):
            hit = hits.get(candidate.message_id)
            if hit is not None:
                hit.semantic_score = candidate.similarity
                hit.semantic_rank = rank

        for message_id, hit in hits.items():
            hit.score = fused[message_id]

        ordered = sorted(
            hits.values(),
            key=lambda h: (
                h.score,
                h.fulltext_score or 0.0,
                h.timestamp.timestamp() if h.timestamp else 0.0,
            ),
            reverse=True,
        )
        return ordered[:limit]

    def search(
        self,
        account_id: uuid.UUID,
        query: str,
        mode: str = "hybrid",
        limit: Optional[int] = None,
    ) -> SearchResponse:
        """
        Run a query in the requested mode.

        Args:
            account_id: Account to search
            query: Free-text query
            mode: fulltext, semantic or hybrid
            limit: Maximum hits (clamped to ``settings.search_max_limit``)

        Returns:
            SearchResponse (``degraded`` set when semantic ranking was skipped)

        Raises:
            ValidationError: Empty query or unknown mode
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("Query parameter 'q' is required")
        if mode not in SEARCH_MODES:
            raise ValidationError(
                f"Invalid search type '{mode}', expected one of {', '.join(SEARCH_MODES)}"
            )
        limit = min(max(limit or settings.search_default_limit, 1), settings.search_max_limit)

        if mode == "fulltext":
            return SearchResponse(query, mode, self.fulltext(account_id, query, limit))

        try:
            if mode == "semantic":
                hits = self.semantic(account_id, query, limit)
            else:
                hits = self.hybrid(account_id, query, limit)
            return SearchResponse(query, mode, hits)
        except UpstreamProviderError as e:
            logger.warning(f"{mode} search degraded to full-text: {e}")
            return SearchResponse(
                query, mode, self.fulltext(account_id, query, limit), degraded=True
            )
