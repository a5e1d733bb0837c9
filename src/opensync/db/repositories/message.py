"""
Message repository.
"""

import uuid
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from opensync.db.repositories.base import BaseRepository
from opensync.models.db import Message


class MessageRepository(BaseRepository[Message]):
    """Repository for Message model."""

    def __init__(self, session: Session):
        super().__init__(Message, session)

    def get_by_external_id(
        self, session_id: uuid.UUID, external_id: str
    ) -> Optional[Message]:
        """Get a message by its plugin-provided id within a session."""
        return (
            self.session.query(Message)
            .filter(Message.session_id == session_id, Message.external_id == external_id)
            .first()
        )

    def next_ordinal(self, session_id: uuid.UUID) -> int:
        """
        Next ordinal for a session.

        Must be called under the per-session lock; the unique
        (session_id, ordinal) constraint rejects any race that slips through.
        """
        current = (
            self.session.query(func.max(Message.ordinal))
            .filter(Message.session_id == session_id)
            .scalar()
        )
        return (current or 0) + 1

    def get_by_session(self, session_id: uuid.UUID) -> List[Message]:
        """All messages of a session in ordinal order, parts loaded."""
        return (
            self.session.query(Message)
            .options(selectinload(Message.parts))
            .filter(Message.session_id == session_id)
            .order_by(Message.ordinal.asc())
            .all()
        )

    def get_many(self, ids: List[uuid.UUID]) -> dict[uuid.UUID, Message]:
        """Load messages (with parts) by id into a mapping."""
        if not ids:
            return {}
        rows = (
            self.session.query(Message)
            .options(selectinload(Message.parts))
            .filter(Message.id.in_(ids))
            .all()
        )
        return {row.id: row for row in rows}

    def exists(self, id: uuid.UUID) -> bool:
        return (
            self.session.query(Message.id).filter(Message.id == id).first() is not None
        )
