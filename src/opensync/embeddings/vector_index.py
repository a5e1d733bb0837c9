"""
Vector index over message embeddings.

Vectors live in the ``message_embeddings`` table as JSON arrays and are
searched brute-force with numpy cosine similarity, scoped to one account.
The index is derived data: it may lag the session store and can be rebuilt
by re-enqueueing messages.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import numpy as np
from sqlalchemy.orm import Session

from opensync.models.db import MessageEmbedding

logger = logging.getLogger(__name__)


@dataclass
class VectorHit:
    """One nearest-neighbour match."""

    session_id: uuid.UUID
    message_id: uuid.UUID
    similarity: float


class VectorIndex:
    """Stores and queries message vectors."""

    def __init__(self, session: Session):
        self.session = session

    def upsert(
        self,
        account_id: uuid.UUID,
        session_id: uuid.UUID,
        message_id: uuid.UUID,
        vector: list[float],
        model: str,
        text_hash: str,
    ) -> MessageEmbedding:
        """Insert or replace the vector of a message."""
        row = (
            self.session.query(MessageEmbedding)
            .filter(MessageEmbedding.message_id == message_id)
            .first()
        )
        if row is None:
            row = MessageEmbedding(
                account_id=account_id,
                session_id=session_id,
                message_id=message_id,
            )
            self.session.add(row)
        row.vector = [float(v) for v in vector]
        row.dimensions = len(vector)
        row.model = model
        row.text_hash = text_hash
        self.session.flush()
        return row

    def remove_session(self, session_id: uuid.UUID) -> int:
        return (
            self.session.query(MessageEmbedding)
            .filter(MessageEmbedding.session_id == session_id)
            .delete(synchronize_session=False)
        )

    def count(self, account_id: Optional[uuid.UUID] = None) -> int:
        query = self.session.query(MessageEmbedding)
        if account_id is not None:
            query = query.filter(MessageEmbedding.account_id == account_id)
        return query.count()

    def nearest(
        self, account_id: uuid.UUID, vector: list[float], top_k: int
    ) -> list[VectorHit]:
        """
        Most similar messages of an account.

        Vectors whose dimensionality differs from the query (e.g. written by
        a previously configured model) are skipped.

        Args:
            account_id: Account to search
            vector: Query embedding
            top_k: Maximum number of hits

        Returns:
            Hits sorted by cosine similarity desc
        """
        if top_k <= 0:
            return []

        rows = (
            self.session.query(
                MessageEmbedding.session_id,
                MessageEmbedding.message_id,
                MessageEmbedding.vector,
            )
            .filter(
                MessageEmbedding.account_id == account_id,
                MessageEmbedding.dimensions == len(vector),
            )
            .all()
        )
        if not rows:
            return []

        query_np = np.asarray(vector, dtype=np.float32)
        query_norm = np.linalg.norm(query_np)
        if query_norm == 0:
            return []

        matrix = np.asarray([row.vector for row in rows], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = np.inf
        similarities = matrix @ query_np / (norms * query_norm)

        order = np.argsort(-similarities, kind="stable")[:top_k]
        return [
            VectorHit(
                session_id=rows[i].session_id,
                message_id=rows[i].message_id,
                similarity=float(similarities[i]),
            )
            for i in order
        ]
